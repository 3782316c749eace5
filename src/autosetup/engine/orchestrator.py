"""Sequential task orchestrator with recovery, heartbeat and a single error boundary."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING

from autosetup.engine.clock import utc_now
from autosetup.engine.errors import CancellationRequested
from autosetup.engine.models import (
    PIPELINE_ORDER,
    ProgressSink,
    RunSummary,
    TaskId,
    TaskOutcome,
    TaskProgressEvent,
    TaskStatus,
    skipped_outcome,
    started_outcome,
)
from autosetup.engine.retry import CANCELLED_MESSAGE
from autosetup.engine.sleep_guard import SleepPreventionGuard
from autosetup.engine.state import ExecutionState, ExecutionStateStore
from autosetup.tasks.base import TaskContext, TaskHandler

if TYPE_CHECKING:
    from autosetup.config import Settings

logger = logging.getLogger(__name__)

RECOVERED_MESSAGE = "completed before restart"
NOT_SELECTED_MESSAGE = "Not selected"


class RunPhase(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(slots=True)
class TaskSelection:
    """Which pipeline tasks a run includes."""

    inventory: bool = True
    policy_refresh: bool = True
    agent_actions: bool = True
    driver_update: bool = True
    compliance: bool = True

    def is_selected(self, task_id: TaskId) -> bool:
        return bool(getattr(self, task_id.value))

    def as_flags(self) -> dict[str, bool]:
        return {item.name: bool(getattr(self, item.name)) for item in fields(self)}

    @classmethod
    def from_flags(cls, flags: Mapping[str, bool]) -> TaskSelection:
        known = {item.name for item in fields(cls)}
        return cls(**{name: bool(value) for name, value in flags.items() if name in known})


@dataclass(slots=True)
class RunContext:
    """Everything a run needs that is decided before the pipeline starts."""

    settings: Settings
    cancel: threading.Event = field(default_factory=threading.Event)
    recovered_state: ExecutionState | None = None
    launched_from_cache: bool = False

    @property
    def recovered(self) -> bool:
        return self.recovered_state is not None


class TaskOrchestrator:
    """Runs the fixed pipeline once: ``not_started -> running -> completed | aborted``."""

    def __init__(  # noqa: PLR0913
        self,
        context: RunContext,
        handlers: Sequence[TaskHandler],
        *,
        store: ExecutionStateStore,
        sink: ProgressSink | None = None,
        guard: SleepPreventionGuard | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.store = store
        self.sink = sink or ProgressSink()
        self._handlers = {TaskId(handler.task_id): handler for handler in handlers}
        self._guard = guard
        self._monotonic = monotonic
        self._phase = RunPhase.NOT_STARTED
        self._task_index: int | None = None
        self._state = ExecutionState()
        self._last_save = 0.0
        self._cancel = context.cancel

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def task_index(self) -> int | None:
        """Index into the pipeline of the task being run, while running."""

        return self._task_index

    @property
    def state(self) -> ExecutionState:
        return self._state

    def run_all(
        self,
        selection: TaskSelection | None = None,
        cancel: threading.Event | None = None,
    ) -> RunSummary:
        if self._phase != RunPhase.NOT_STARTED:
            raise RuntimeError("A run can only be started once.")

        cancel = cancel or self.context.cancel
        self._cancel = cancel
        recovered = self.context.recovered_state
        if recovered is not None:
            selection = TaskSelection.from_flags(recovered.selected_tasks)
            state = recovered
            state.is_running = True
            state.is_complete = False
        else:
            selection = selection or TaskSelection()
            state = ExecutionState(is_running=True, selected_tasks=selection.as_flags())
        self._state = state

        summary = RunSummary(
            recovered=recovered is not None,
            restart_carried_over=recovered is not None and recovered.requires_restart,
        )
        self._phase = RunPhase.RUNNING
        self._status("Resuming interrupted setup..." if recovered else "Starting setup...")
        self.store.mark_recovery_pending()
        self._save()

        guard = self._guard if self._guard is not None else nullcontext()
        with guard:
            total = len(PIPELINE_ORDER)
            for index, task_id in enumerate(PIPELINE_ORDER):
                self._task_index = index
                outcome = self._run_step(task_id, selection, cancel)
                summary.outcomes.append(outcome)
                self._record(outcome)
                self.sink.progress(f"{outcome.task_name}: {outcome.status.value}", (index + 1) * 100 // total)
            self._task_index = None

        summary.cancelled = cancel.is_set()
        summary.end_time = utc_now()
        return self._finish(summary)

    def _run_step(
        self,
        task_id: TaskId,
        selection: TaskSelection,
        cancel: threading.Event,
    ) -> TaskOutcome:
        handler = self._handlers.get(task_id)
        task_name = handler.task_name if handler is not None else task_id.value
        if cancel.is_set():
            return skipped_outcome(task_id.value, task_name, CANCELLED_MESSAGE)
        if handler is None or not selection.is_selected(task_id):
            return skipped_outcome(task_id.value, task_name, NOT_SELECTED_MESSAGE)
        if self.context.recovered and self._state.is_task_complete(task_id.value):
            self._status(f"{task_name}: {RECOVERED_MESSAGE}")
            return skipped_outcome(task_id.value, task_name, RECOVERED_MESSAGE)
        return self._run_handler(handler)

    def _run_handler(self, handler: TaskHandler) -> TaskOutcome:
        task_id = TaskId(handler.task_id).value
        self.sink.task(
            TaskProgressEvent(
                task_id=task_id,
                task_name=handler.task_name,
                status=TaskStatus.RUNNING,
                message="Started",
            ),
        )
        self._status(f"Starting {handler.task_name}...")
        self._save()

        context = TaskContext(
            cancel=self._cancel,
            state=self._state,
            status=self._status,
            heartbeat=self.heartbeat,
            checkpoint=self._save,
            recovered=self.context.recovered,
        )
        try:
            return handler.run(context)
        except CancellationRequested as error:
            logger.warning("%s cancelled: %s", handler.task_name, error)
            return started_outcome(task_id, handler.task_name).finished(
                status=TaskStatus.ERROR,
                message=CANCELLED_MESSAGE,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s failed with an unexpected error", handler.task_name)
            return started_outcome(task_id, handler.task_name).finished(
                status=TaskStatus.ERROR,
                message=str(error) or type(error).__name__,
            )

    def heartbeat(self) -> None:
        """Save state when the last save is older than the heartbeat interval."""

        interval = self.context.settings.run.heartbeat_seconds
        if self._monotonic() - self._last_save >= interval:
            self._save()

    def _record(self, outcome: TaskOutcome) -> None:
        if outcome.status in (TaskStatus.SUCCESS, TaskStatus.WARNING):
            self._state.mark_task_complete(outcome.task_id)
        if outcome.requires_restart:
            self._state.requires_restart = True
        if outcome.status == TaskStatus.ERROR:
            self._state.error_message = outcome.message
        self._status(f"{outcome.task_name}: {outcome.status.value} - {outcome.message}")
        self.sink.task(
            TaskProgressEvent(
                task_id=outcome.task_id,
                task_name=outcome.task_name,
                status=outcome.status,
                message=outcome.message,
                duration=outcome.duration,
            ),
        )
        self._save()

    def _finish(self, summary: RunSummary) -> RunSummary:
        if summary.cancelled:
            self._phase = RunPhase.ABORTED
            self._state.is_running = False
            self._state.error_message = CANCELLED_MESSAGE
            self._status("Setup cancelled")
        else:
            self._phase = RunPhase.COMPLETED
            self._state.mark_finished()
            self._save()
            self._status("Setup finished")
        for line in summary.headline():
            self._status(line)
        self.store.clear()
        return summary

    def _status(self, message: str) -> None:
        logger.info("%s", message)
        stamp = utc_now().strftime("%H:%M:%S")
        self._state.append_log(f"[{stamp}] {message}", limit=self.context.settings.run.log_buffer_size)
        self.sink.status(message)

    def _save(self) -> None:
        self.store.save(self._state)
        self._last_save = self._monotonic()
