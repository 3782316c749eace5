"""Domain models for task execution, outcomes and progress events."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from autosetup.engine.clock import utc_now


class TaskStatus(str, Enum):
    """Lifecycle states of one pipeline task or sub-task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskStatus.PENDING, TaskStatus.RUNNING)


class ExitCodeClass(str, Enum):
    """Normalized classification of one external tool exit code."""

    SUCCESS = "success"
    SUCCESS_REBOOT_REQUIRED = "success_reboot_required"
    NOOP_SUCCESS = "noop_success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class TaskId(str, Enum):
    """Fixed pipeline tasks in execution order."""

    INVENTORY = "inventory"
    POLICY_REFRESH = "policy_refresh"
    AGENT_ACTIONS = "agent_actions"
    DRIVER_UPDATE = "driver_update"
    COMPLIANCE = "compliance"


PIPELINE_ORDER: tuple[TaskId, ...] = (
    TaskId.INVENTORY,
    TaskId.POLICY_REFRESH,
    TaskId.AGENT_ACTIONS,
    TaskId.DRIVER_UPDATE,
    TaskId.COMPLIANCE,
)


@dataclass(slots=True)
class RetryPolicy:
    """Retry/backoff settings attached to one external-operation type."""

    max_retries: int = 0
    initial_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    timeout_seconds: float = 120.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def next_delay(self, delay: float) -> float:
        """Return the delay to use after waiting ``delay`` seconds."""

        return min(delay * self.backoff_multiplier, self.max_delay_seconds)


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one external process invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        if not self.stderr:
            return self.stdout
        return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr


@dataclass(frozen=True, slots=True)
class SubTaskOutcome:
    """Result of one sub-action of a composite task."""

    name: str
    status: TaskStatus
    message: str = ""
    completed_at: datetime | None = None
    return_code: int | None = None


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Result of one pipeline task; immutable once finalized."""

    task_id: str
    task_name: str
    status: TaskStatus
    message: str = ""
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None
    exit_code: int | None = None
    requires_restart: bool = False
    sub_tasks: tuple[SubTaskOutcome, ...] = ()
    attempts: int = 0
    detailed_output: str = ""

    @property
    def duration(self) -> timedelta | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def duration_formatted(self) -> str:
        duration = self.duration
        if duration is None:
            return "--"
        total = int(duration.total_seconds())
        return f"{total // 60}m {total % 60}s"

    def finished(self, *, status: TaskStatus, message: str, **changes: Any) -> TaskOutcome:
        """Return a finalized copy with ``end_time`` stamped."""

        changes.setdefault("end_time", utc_now())
        return replace(self, status=status, message=message, **changes)


def started_outcome(task_id: str, task_name: str) -> TaskOutcome:
    return TaskOutcome(task_id=task_id, task_name=task_name, status=TaskStatus.RUNNING)


def skipped_outcome(task_id: str, task_name: str, message: str) -> TaskOutcome:
    now = utc_now()
    return TaskOutcome(
        task_id=task_id,
        task_name=task_name,
        status=TaskStatus.SKIPPED,
        message=message,
        start_time=now,
        end_time=now,
    )


@dataclass(slots=True)
class RunSummary:
    """Aggregate result of one run."""

    outcomes: list[TaskOutcome] = field(default_factory=list)
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None
    cancelled: bool = False
    recovered: bool = False
    restart_carried_over: bool = False

    @property
    def overall_success(self) -> bool:
        return all(outcome.status != TaskStatus.ERROR for outcome in self.outcomes)

    @property
    def requires_restart(self) -> bool:
        return self.restart_carried_over or any(outcome.requires_restart for outcome in self.outcomes)

    @property
    def has_warnings(self) -> bool:
        return any(outcome.status == TaskStatus.WARNING for outcome in self.outcomes)

    def headline(self) -> list[str]:
        """User-facing summary lines; the restart notice always comes first."""

        lines: list[str] = []
        if self.requires_restart:
            lines.append("RESTART REQUIRED to complete setup.")
        if self.cancelled:
            lines.append("Setup was cancelled before all tasks ran.")
        elif self.overall_success and not self.has_warnings:
            lines.append("All tasks completed successfully.")
        else:
            lines.append("Setup completed with warnings or errors.")
        return lines


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Overall run progress."""

    message: str
    percentage: int


@dataclass(frozen=True, slots=True)
class TaskProgressEvent:
    """Per-task transition event."""

    task_id: str
    task_name: str
    status: TaskStatus
    message: str = ""
    duration: timedelta | None = None


@dataclass(slots=True)
class ProgressSink:
    """Callbacks through which a run reports to its single consumer."""

    on_progress: Callable[[ProgressEvent], None] | None = None
    on_status: Callable[[str], None] | None = None
    on_task: Callable[[TaskProgressEvent], None] | None = None

    def progress(self, message: str, percentage: int) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(message=message, percentage=percentage))

    def status(self, message: str) -> None:
        if self.on_status is not None:
            self.on_status(message)

    def task(self, event: TaskProgressEvent) -> None:
        if self.on_task is not None:
            self.on_task(event)
