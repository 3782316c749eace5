from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from autosetup.config import Settings
from autosetup.engine.errors import CancellationRequested
from autosetup.engine.models import (
    PIPELINE_ORDER,
    ProgressEvent,
    ProgressSink,
    TaskId,
    TaskOutcome,
    TaskProgressEvent,
    TaskStatus,
    started_outcome,
)
from autosetup.engine.orchestrator import (
    RunContext,
    RunPhase,
    TaskOrchestrator,
    TaskSelection,
)
from autosetup.engine.sleep_guard import SleepPreventionGuard
from autosetup.engine.state import ExecutionState, ExecutionStateStore
from autosetup.tasks.base import TaskContext

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Task Orchestration"),
]


class FakeTask:
    def __init__(  # noqa: PLR0913
        self,
        task_id: TaskId,
        *,
        status: TaskStatus = TaskStatus.SUCCESS,
        message: str = "done",
        requires_restart: bool = False,
        error: Exception | None = None,
        on_run: Callable[[TaskContext], None] | None = None,
    ) -> None:
        self.task_id = task_id
        self.task_name = task_id.value.replace("_", " ").title()
        self.status = status
        self.message = message
        self.requires_restart = requires_restart
        self.error = error
        self.on_run = on_run
        self.contexts: list[TaskContext] = []

    @property
    def calls(self) -> int:
        return len(self.contexts)

    def run(self, context: TaskContext) -> TaskOutcome:
        self.contexts.append(context)
        if self.on_run is not None:
            self.on_run(context)
        if self.error is not None:
            raise self.error
        return started_outcome(self.task_id.value, self.task_name).finished(
            status=self.status,
            message=self.message,
            requires_restart=self.requires_restart,
        )


class FakeBackend:
    name = "fake"

    def __init__(self) -> None:
        self.calls: list[str] = []

    def inhibit(self) -> None:
        self.calls.append("inhibit")

    def allow(self) -> None:
        self.calls.append("allow")


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class CountingStore(ExecutionStateStore):
    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.saves = 0

    def save(self, state: ExecutionState) -> bool:
        self.saves += 1
        return super().save(state)


def _handlers(**overrides: FakeTask) -> dict[TaskId, FakeTask]:
    handlers = {task_id: FakeTask(task_id) for task_id in PIPELINE_ORDER}
    for name, handler in overrides.items():
        handlers[TaskId(name)] = handler
    return handlers


def _orchestrator(
    settings: Settings,
    store: ExecutionStateStore,
    handlers: dict[TaskId, FakeTask],
    **kwargs,
) -> TaskOrchestrator:
    context = kwargs.pop("context", None) or RunContext(settings=settings)
    return TaskOrchestrator(context, list(handlers.values()), store=store, **kwargs)


def test_selected_tasks_run_in_order_and_summary_aggregates(settings, store) -> None:
    handlers = _handlers(
        agent_actions=FakeTask(TaskId.AGENT_ACTIONS, status=TaskStatus.WARNING, message="4/5"),
        driver_update=FakeTask(TaskId.DRIVER_UPDATE, requires_restart=True),
    )
    orchestrator = _orchestrator(settings, store, handlers)

    summary = orchestrator.run_all(TaskSelection(inventory=False))

    assert [outcome.task_id for outcome in summary.outcomes] == [task.value for task in PIPELINE_ORDER]
    assert [outcome.status for outcome in summary.outcomes] == [
        TaskStatus.SKIPPED,
        TaskStatus.SUCCESS,
        TaskStatus.WARNING,
        TaskStatus.SUCCESS,
        TaskStatus.SUCCESS,
    ]
    assert summary.overall_success is True
    assert summary.requires_restart is True
    assert summary.headline()[0] == "RESTART REQUIRED to complete setup."
    assert orchestrator.phase == RunPhase.COMPLETED
    assert not store.path.exists()


def test_deselected_tasks_are_skipped_and_never_run(settings, store) -> None:
    handlers = _handlers()
    orchestrator = _orchestrator(settings, store, handlers)

    summary = orchestrator.run_all(TaskSelection(agent_actions=False, driver_update=False))

    assert handlers[TaskId.AGENT_ACTIONS].calls == 0
    assert handlers[TaskId.DRIVER_UPDATE].calls == 0
    skipped = {o.task_id: o.message for o in summary.outcomes if o.status == TaskStatus.SKIPPED}
    assert skipped == {"agent_actions": "Not selected", "driver_update": "Not selected"}


def test_handler_exception_becomes_error_and_pipeline_continues(settings, store, caplog) -> None:
    handlers = _handlers(
        policy_refresh=FakeTask(TaskId.POLICY_REFRESH, error=RuntimeError("registry locked")),
    )
    orchestrator = _orchestrator(settings, store, handlers)

    with caplog.at_level(logging.ERROR, logger="autosetup.engine.orchestrator"):
        summary = orchestrator.run_all()

    failed = summary.outcomes[1]
    assert failed.status == TaskStatus.ERROR
    assert failed.message == "registry locked"
    assert failed.end_time is not None
    assert handlers[TaskId.COMPLIANCE].calls == 1
    assert summary.overall_success is False
    assert "Traceback" in caplog.text


def test_cancellation_requested_by_handler_is_reported_as_cancelled(settings, store) -> None:
    handlers = _handlers(
        driver_update=FakeTask(TaskId.DRIVER_UPDATE, error=CancellationRequested("stop")),
    )

    summary = _orchestrator(settings, store, handlers).run_all()

    assert summary.outcomes[3].status == TaskStatus.ERROR
    assert summary.outcomes[3].message == "cancelled"


def test_cancel_skips_remaining_tasks_and_clears_state(settings, store, cancel) -> None:
    handlers = _handlers(
        policy_refresh=FakeTask(TaskId.POLICY_REFRESH, on_run=lambda context: context.cancel.set()),
    )
    context = RunContext(settings=settings, cancel=cancel)
    orchestrator = _orchestrator(settings, store, handlers, context=context)

    summary = orchestrator.run_all(cancel=cancel)

    assert summary.cancelled is True
    assert orchestrator.phase == RunPhase.ABORTED
    assert [o.message for o in summary.outcomes[2:]] == ["cancelled"] * 3
    assert all(o.status == TaskStatus.SKIPPED for o in summary.outcomes[2:])
    assert handlers[TaskId.AGENT_ACTIONS].calls == 0
    assert not store.path.exists()
    assert "Setup was cancelled before all tasks ran." in summary.headline()


def test_recovered_run_skips_completed_tasks_and_restores_selection(settings, store) -> None:
    recovered = ExecutionState(
        is_running=True,
        selected_tasks={
            "inventory": True,
            "policy_refresh": True,
            "agent_actions": True,
            "driver_update": True,
            "compliance": False,
        },
        completed_tasks={"inventory": True, "policy_refresh": True},
    )
    handlers = _handlers()
    context = RunContext(settings=settings, recovered_state=recovered)
    orchestrator = _orchestrator(settings, store, handlers, context=context)

    summary = orchestrator.run_all(TaskSelection())

    messages = [outcome.message for outcome in summary.outcomes]
    assert messages[:2] == ["completed before restart", "completed before restart"]
    assert messages[4] == "Not selected"
    assert handlers[TaskId.INVENTORY].calls == 0
    assert handlers[TaskId.POLICY_REFRESH].calls == 0
    assert handlers[TaskId.DRIVER_UPDATE].calls == 1
    assert handlers[TaskId.DRIVER_UPDATE].contexts[0].recovered is True
    assert handlers[TaskId.DRIVER_UPDATE].contexts[0].state is recovered
    assert summary.recovered is True


def test_recovered_run_keeps_restart_notice_from_before_interruption(settings, store) -> None:
    recovered = ExecutionState(
        is_running=True,
        selected_tasks={task_id.value: True for task_id in PIPELINE_ORDER},
        completed_tasks={
            "inventory": True,
            "policy_refresh": True,
            "agent_actions": True,
            "driver_update": True,
        },
        requires_restart=True,
    )
    handlers = _handlers()
    context = RunContext(settings=settings, recovered_state=recovered)

    summary = _orchestrator(settings, store, handlers, context=context).run_all()

    assert [outcome.status for outcome in summary.outcomes] == [TaskStatus.SKIPPED] * 4 + [TaskStatus.SUCCESS]
    assert handlers[TaskId.DRIVER_UPDATE].calls == 0
    assert summary.requires_restart is True
    assert summary.headline() == [
        "RESTART REQUIRED to complete setup.",
        "All tasks completed successfully.",
    ]


def test_fresh_run_without_restarting_tasks_needs_no_restart(settings, store) -> None:
    summary = _orchestrator(settings, store, _handlers()).run_all()

    assert summary.requires_restart is False
    assert summary.restart_carried_over is False


def test_state_is_saved_on_each_transition(settings, store) -> None:
    snapshots: list[ExecutionState | None] = []

    def inspect(context: TaskContext) -> None:
        snapshots.append(store.load())

    handlers = _handlers(agent_actions=FakeTask(TaskId.AGENT_ACTIONS, on_run=inspect))
    _orchestrator(settings, store, handlers).run_all()

    saved = snapshots[0]
    assert saved is not None
    assert saved.is_running is True
    assert saved.is_complete is False
    assert saved.completed_tasks == {"inventory": True, "policy_refresh": True}
    assert saved.selected_tasks["driver_update"] is True
    assert store.recovery_pending_since() is None


def test_heartbeat_is_throttled(settings, tmp_path) -> None:
    store = CountingStore(tmp_path / "task_state.json")
    monotonic = FakeMonotonic()
    observed: list[int] = []

    def beat(context: TaskContext) -> None:
        before = store.saves
        context.heartbeat()
        context.heartbeat()
        observed.append(store.saves - before)
        monotonic.now += settings.run.heartbeat_seconds
        context.heartbeat()
        context.heartbeat()
        observed.append(store.saves - before)

    handlers = _handlers(driver_update=FakeTask(TaskId.DRIVER_UPDATE, on_run=beat))
    _orchestrator(settings, store, handlers, monotonic=monotonic).run_all()

    assert observed == [0, 1]


def test_progress_events_and_log_buffer(settings, store) -> None:
    progress: list[ProgressEvent] = []
    task_events: list[TaskProgressEvent] = []
    statuses: list[str] = []
    sink = ProgressSink(on_progress=progress.append, on_status=statuses.append, on_task=task_events.append)
    settings.run.log_buffer_size = 4
    orchestrator = _orchestrator(settings, store, _handlers(), sink=sink)

    orchestrator.run_all(TaskSelection(compliance=False))

    assert [event.percentage for event in progress] == [20, 40, 60, 80, 100]
    inventory_events = [event.status for event in task_events if event.task_id == "inventory"]
    assert inventory_events == [TaskStatus.RUNNING, TaskStatus.SUCCESS]
    compliance_events = [event.status for event in task_events if event.task_id == "compliance"]
    assert compliance_events == [TaskStatus.SKIPPED]
    assert statuses[0] == "Starting setup..."
    assert len(orchestrator.state.log_messages) == 4
    assert orchestrator.state.log_messages[-1].endswith(statuses[-1])


def test_sleep_guard_held_for_the_run_only(settings, store) -> None:
    backend = FakeBackend()
    guard = SleepPreventionGuard(backend)
    seen: list[bool] = []
    handlers = _handlers(
        compliance=FakeTask(TaskId.COMPLIANCE, on_run=lambda context: seen.append(guard.active)),
    )

    _orchestrator(settings, store, handlers, guard=guard).run_all()

    assert seen == [True]
    assert guard.active is False
    assert backend.calls == ["inhibit", "allow"]


def test_run_all_can_only_be_called_once(settings, store) -> None:
    orchestrator = _orchestrator(settings, store, _handlers())
    orchestrator.run_all()

    with pytest.raises(RuntimeError, match="only be started once"):
        orchestrator.run_all()


def test_missing_handler_is_reported_as_skipped(settings, store) -> None:
    handlers = _handlers()
    del handlers[TaskId.AGENT_ACTIONS]

    summary = _orchestrator(settings, store, handlers).run_all()

    assert summary.outcomes[2].task_id == "agent_actions"
    assert summary.outcomes[2].status == TaskStatus.SKIPPED
