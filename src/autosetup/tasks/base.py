"""Task handler contract shared by the fixed pipeline tasks."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from autosetup.engine.models import TaskId, TaskOutcome
from autosetup.engine.state import ExecutionState


def _noop() -> None:
    return None


def _ignore(_message: str) -> None:
    return None


@dataclass(slots=True)
class TaskContext:
    """What a handler may touch while it runs.

    ``heartbeat`` is throttled by the orchestrator and safe to call from
    process poll loops; ``checkpoint`` saves the state unconditionally.
    """

    cancel: threading.Event
    state: ExecutionState = field(default_factory=ExecutionState)
    status: Callable[[str], None] = _ignore
    heartbeat: Callable[[], None] = _noop
    checkpoint: Callable[[], None] = _noop
    recovered: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class TaskHandler(Protocol):
    """One pipeline task; returns an outcome instead of raising for expected failures."""

    task_id: TaskId
    task_name: str

    def run(self, context: TaskContext) -> TaskOutcome:
        """Execute the task and return its finalized outcome."""
        raise NotImplementedError
