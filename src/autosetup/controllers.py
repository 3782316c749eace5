"""Controllers for autosetup CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from autosetup.config import Settings
from autosetup.engine.exit_codes import (
    ExitCodeTable,
    driver_apply_table,
    driver_scan_table,
    driver_tool_profile,
    installer_table,
    policy_refresh_table,
)
from autosetup.engine.models import (
    ProgressSink,
    RunSummary,
    TaskProgressEvent,
    TaskStatus,
)
from autosetup.engine.orchestrator import RunContext, TaskOrchestrator, TaskSelection
from autosetup.engine.process import ProcessRunner
from autosetup.engine.resilience import ResilienceManager
from autosetup.engine.retry import RetryPolicyEngine
from autosetup.engine.sleep_guard import SleepPreventionGuard
from autosetup.engine.state import ExecutionState, ExecutionStateStore, detect_recovery
from autosetup.tasks import (
    AgentActionsTask,
    ComplianceTask,
    DriverUpdateTask,
    InventoryTask,
    PolicyRefreshTask,
    TaskHandler,
)
from autosetup.tasks.providers import CommandAgentActionTrigger, SystemInventoryProvider

logger = logging.getLogger(__name__)

CLASSIFY_TOOLS = ("policy", "dcu-scan", "dcu-apply", "installer")

HandlerFactory = Callable[[Settings], list[TaskHandler]]


@dataclass(slots=True)
class SetupRunCommand:
    """CLI input for a full setup run."""

    argv: tuple[str, ...]
    skip_policy: bool = False
    skip_agent_actions: bool = False
    skip_driver_update: bool = False
    skip_compliance: bool = False
    no_relaunch: bool = False


@dataclass(slots=True)
class SetupRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool
    relaunched: bool = False


@dataclass(slots=True)
class ClassifyCommand:
    """CLI input for exit-code classification."""

    tool: str
    code: int


def build_handlers(settings: Settings) -> list[TaskHandler]:
    """Default pipeline handlers backed by the real system."""

    runner = ProcessRunner()
    engine = RetryPolicyEngine()
    provider = SystemInventoryProvider(runner=runner)
    return [
        InventoryTask(provider),
        PolicyRefreshTask(settings.policy_refresh, runner=runner, engine=engine),
        AgentActionsTask(
            settings.agent_actions,
            trigger=CommandAgentActionTrigger(settings.agent_actions.command_template, runner=runner),
        ),
        DriverUpdateTask(
            settings.driver_update,
            runner=runner,
            engine=engine,
            inventory=provider,
            work_dir=settings.resilience.local_cache_dir,
        ),
        ComplianceTask(settings.compliance, provider=provider),
    ]


class SetupCliController:
    """Coordinates the setup run and state inspection CLI operations."""

    def __init__(
        self,
        *,
        echo: Callable[[str], None] | None = None,
        handler_factory: HandlerFactory = build_handlers,
        resilience_factory: Callable[[Settings], ResilienceManager] | None = None,
        guard_factory: Callable[[], SleepPreventionGuard] = SleepPreventionGuard,
    ) -> None:
        self._echo = echo
        self._handler_factory = handler_factory
        self._resilience_factory = resilience_factory or (
            lambda settings: ResilienceManager(settings.resilience)
        )
        self._guard_factory = guard_factory

    def run(self, command: SetupRunCommand) -> SetupRunResult:
        settings = _load_settings()
        if command.no_relaunch:
            settings.resilience.relaunch_enabled = False

        # Phase 1: nothing else may be initialised before the relocation check.
        resilience = self._resilience_factory(settings)
        if resilience.ensure_running_locally(command.argv):
            return SetupRunResult(
                lines=[f"Relaunched from local cache: {resilience.cache_dir}"],
                success=True,
                relaunched=True,
            )

        # Phase 2.
        store = ExecutionStateStore(settings.resilience.state_path)
        recovered = detect_recovery(
            store,
            window=timedelta(seconds=settings.run.recovery_window_seconds),
        )
        context = RunContext(
            settings=settings,
            recovered_state=recovered,
            launched_from_cache=resilience.is_running_from_cache(),
        )
        orchestrator = TaskOrchestrator(
            context,
            self._handler_factory(settings),
            store=store,
            sink=self._sink(),
            guard=self._guard_factory(),
        )
        selection = TaskSelection(
            policy_refresh=not command.skip_policy,
            agent_actions=not command.skip_agent_actions,
            driver_update=not command.skip_driver_update,
            compliance=not command.skip_compliance,
        )
        with _signal_handlers(context.cancel):
            summary = orchestrator.run_all(selection, context.cancel)

        if context.launched_from_cache:
            resilience.schedule_cleanup(store)
        return SetupRunResult(
            lines=render_summary_lines(summary),
            success=summary.overall_success and not summary.cancelled,
        )

    def show_state(self) -> list[str]:
        settings = _load_settings()
        store = ExecutionStateStore(settings.resilience.state_path)
        state = store.load()
        if state is None:
            return [f"No saved state at {store.path}"]
        lines = [f"State file: {store.path}", *render_state_lines(state)]
        pending_since = store.recovery_pending_since()
        if pending_since is not None:
            lines.append(f"Recovery pending since: {pending_since.isoformat()}")
        return lines

    def clear_state(self) -> list[str]:
        settings = _load_settings()
        store = ExecutionStateStore(settings.resilience.state_path)
        store.clear()
        return [f"State cleared: {store.path}"]

    def classify(self, command: ClassifyCommand) -> list[str]:
        settings = _load_settings()
        table = _exit_code_table(settings, command.tool)
        return [table.describe(command.code)]

    def _sink(self) -> ProgressSink:
        echo = self._echo
        if echo is None:
            return ProgressSink()

        def on_task(event: TaskProgressEvent) -> None:
            if event.status == TaskStatus.RUNNING:
                echo(f"==> {event.task_name}")
                return
            echo(f"    [{event.status.value}] {event.message}")

        return ProgressSink(on_task=on_task)


def render_summary_lines(summary: RunSummary) -> list[str]:
    lines = list(summary.headline())
    if summary.recovered:
        lines.append("Resumed an interrupted run.")
    for outcome in summary.outcomes:
        line = f"{outcome.task_name}: {outcome.status.value} - {outcome.message}"
        if outcome.status not in (TaskStatus.SKIPPED, TaskStatus.PENDING):
            line += f" ({outcome.duration_formatted})"
        lines.append(line)
        lines.extend(
            f"  - {sub.name}: {sub.status.value} {sub.message}".rstrip() for sub in outcome.sub_tasks
        )
    return lines


def render_state_lines(state: ExecutionState) -> list[str]:
    selected = ", ".join(name for name, flag in state.selected_tasks.items() if flag) or "none"
    completed = ", ".join(name for name, flag in state.completed_tasks.items() if flag) or "none"
    progress = state.driver_update
    lines = [
        f"Started: {state.start_time.isoformat()}",
        f"Last update: {state.last_update_time.isoformat()}",
        f"Running: {state.is_running} Complete: {state.is_complete}",
        f"Selected tasks: {selected}",
        f"Completed tasks: {completed}",
        f"Requires restart: {state.requires_restart}",
    ]
    if progress.phase:
        lines.append(
            f"Driver update: phase={progress.phase} "
            f"completed={progress.completed_updates}/{progress.total_updates} "
            f"worker_pid={progress.worker_pid}",
        )
    if state.error_message:
        lines.append(f"Error: {state.error_message}")
    if state.log_messages:
        lines.append("Recent log:")
        lines.extend(f"  {message}" for message in state.log_messages[-10:])
    return lines


def _load_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _exit_code_table(settings: Settings, tool: str) -> ExitCodeTable:
    if tool == "policy":
        return policy_refresh_table(retryable=settings.policy_refresh.retryable_codes)
    if tool == "installer":
        return installer_table(tool)
    driver = settings.driver_update
    profile = driver_tool_profile(driver.tool_version, noop_override=driver.noop_exit_code)
    if tool == "dcu-scan":
        return driver_scan_table(profile, retryable=driver.scan_retryable_codes)
    if tool == "dcu-apply":
        return driver_apply_table(profile)
    raise ValueError(f"Unsupported tool: {tool!r}. Expected one of: {', '.join(CLASSIFY_TOOLS)}")


@contextmanager
def _signal_handlers(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the running pipeline."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; cancelling after the current operation", name)
        cancel.set()

    installed = True
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
