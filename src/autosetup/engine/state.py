"""Persisted execution state used to recognise and resume interrupted runs."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from autosetup.engine.clock import from_iso, utc_now
from autosetup.engine.errors import PersistenceFailure

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "task_state.json"
RECOVERY_MARKER_NAME = ".recovery_pending"
DEFAULT_LOG_BUFFER_SIZE = 200


@dataclass(slots=True)
class DriverUpdateProgress:
    """Progress of the driver update task, the one most likely to be interrupted."""

    phase: str = ""
    total_updates: int = 0
    completed_updates: int = 0
    completed_update_names: list[str] = field(default_factory=list)
    worker_pid: int | None = None
    worker_image: str | None = None

    def clear_worker(self) -> None:
        self.worker_pid = None
        self.worker_image = None

    def record_completed(self, name: str) -> None:
        if name in self.completed_update_names:
            return
        self.completed_update_names.append(name)
        self.completed_updates = len(self.completed_update_names)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DriverUpdateProgress:
        names = raw.get("completed_update_names", [])
        if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
            raise TypeError("driver_update.completed_update_names must be a list of strings")
        worker_pid = raw.get("worker_pid")
        if worker_pid is not None and not isinstance(worker_pid, int):
            raise TypeError("driver_update.worker_pid must be an integer when provided")
        worker_image = raw.get("worker_image")
        if worker_image is not None and not isinstance(worker_image, str):
            raise TypeError("driver_update.worker_image must be a string when provided")
        return cls(
            phase=_require(raw, "phase", str),
            total_updates=_require(raw, "total_updates", int),
            completed_updates=_require(raw, "completed_updates", int),
            completed_update_names=list(names),
            worker_pid=worker_pid,
            worker_image=worker_image,
        )


@dataclass(slots=True)
class ExecutionState:
    """Snapshot of one run.

    Selection and completion flags are keyed by task id. ``is_complete``
    implies ``not is_running``.
    """

    start_time: datetime = field(default_factory=utc_now)
    last_update_time: datetime = field(default_factory=utc_now)
    is_running: bool = False
    is_complete: bool = False
    selected_tasks: dict[str, bool] = field(default_factory=dict)
    completed_tasks: dict[str, bool] = field(default_factory=dict)
    driver_update: DriverUpdateProgress = field(default_factory=DriverUpdateProgress)
    log_messages: list[str] = field(default_factory=list)
    requires_restart: bool = False
    error_message: str | None = None

    def is_selected(self, task_id: str) -> bool:
        return self.selected_tasks.get(task_id, False)

    def is_task_complete(self, task_id: str) -> bool:
        return self.completed_tasks.get(task_id, False)

    def mark_task_complete(self, task_id: str) -> None:
        self.completed_tasks[task_id] = True

    def mark_finished(self) -> None:
        self.is_running = False
        self.is_complete = True

    def append_log(self, message: str, *, limit: int = DEFAULT_LOG_BUFFER_SIZE) -> None:
        """Append to the rolling log buffer, keeping the last ``limit`` messages."""

        self.log_messages.append(message)
        overflow = len(self.log_messages) - max(limit, 0)
        if overflow > 0:
            del self.log_messages[:overflow]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = self.start_time.isoformat()
        payload["last_update_time"] = self.last_update_time.isoformat()
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ExecutionState:
        """Validate a decoded state document.

        Raises ``TypeError``/``ValueError``/``KeyError`` on a torn or partial
        document; the store treats any of those as "no state".
        """

        is_running = _require(raw, "is_running", bool)
        is_complete = _require(raw, "is_complete", bool)
        if is_complete and is_running:
            raise ValueError("state cannot be both running and complete")

        driver_raw = raw.get("driver_update", {})
        if not isinstance(driver_raw, dict):
            raise TypeError("driver_update must be an object")
        log_messages = raw.get("log_messages", [])
        if not isinstance(log_messages, list) or not all(
            isinstance(message, str) for message in log_messages
        ):
            raise TypeError("log_messages must be a list of strings")
        error_message = raw.get("error_message")
        if error_message is not None and not isinstance(error_message, str):
            raise TypeError("error_message must be a string when provided")

        return cls(
            start_time=from_iso(_require(raw, "start_time", str)),
            last_update_time=from_iso(_require(raw, "last_update_time", str)),
            is_running=is_running,
            is_complete=is_complete,
            selected_tasks=_flag_map(raw, "selected_tasks"),
            completed_tasks=_flag_map(raw, "completed_tasks"),
            driver_update=DriverUpdateProgress.from_dict(driver_raw),
            log_messages=list(log_messages),
            requires_restart=bool(raw.get("requires_restart", False)),
            error_message=error_message,
        )


class ExecutionStateStore:
    """Best-effort JSON persistence of one ``ExecutionState`` per machine."""

    def __init__(
        self,
        path: Path,
        *,
        marker_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = path
        self.marker_path = marker_path or path.with_name(RECOVERY_MARKER_NAME)
        self._clock = clock

    def save(self, state: ExecutionState) -> bool:
        """Write ``state``; return False instead of raising when it cannot be written.

        ``last_update_time`` is advanced on the passed object and never moves
        backwards.
        """

        state.last_update_time = max(state.last_update_time, self._clock())
        try:
            self._write(state)
        except PersistenceFailure as error:
            logger.warning("%s", error)
            return False
        return True

    def _write(self, state: ExecutionState) -> None:
        temp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            document = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(document, "utf-8")
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError) as error:
            _unlink_quietly(temp_path)
            raise PersistenceFailure(
                f"Failed to save execution state to {self.path}: {error}",
            ) from error

    def load(self) -> ExecutionState | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text("utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable execution state %s: %s", self.path, error)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring execution state %s: expected JSON object", self.path)
            return None
        try:
            return ExecutionState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring invalid execution state %s: %s", self.path, error)
            return None

    def clear(self) -> None:
        """Delete the state document and the recovery marker."""

        for path in (self.path, self.marker_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as error:
                logger.warning("Failed to delete %s: %s", path, error)

    def has_active_run(self) -> bool:
        state = self.load()
        return state is not None and state.is_running and not state.is_complete

    def mark_recovery_pending(self) -> None:
        try:
            self.marker_path.parent.mkdir(parents=True, exist_ok=True)
            self.marker_path.write_text(self._clock().isoformat(), "utf-8")
        except OSError as error:
            logger.warning("Failed to write recovery marker %s: %s", self.marker_path, error)

    def recovery_pending_since(self) -> datetime | None:
        """Timestamp written by ``mark_recovery_pending``, if the marker is readable."""

        try:
            return from_iso(self.marker_path.read_text("utf-8").strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as error:
            logger.warning("Ignoring unreadable recovery marker %s: %s", self.marker_path, error)
            return None


def is_recoverable(state: ExecutionState, *, now: datetime, window: timedelta) -> bool:
    """A run is recoverable while it is unfinished and its heartbeat is fresh."""

    if not state.is_running or state.is_complete:
        return False
    return now - state.last_update_time <= window


def detect_recovery(
    store: ExecutionStateStore,
    *,
    window: timedelta,
    now: datetime | None = None,
) -> ExecutionState | None:
    """Return the persisted state when it describes a recoverable run.

    Stale and finished documents are cleared so they never trigger recovery
    later.
    """

    state = store.load()
    if state is None:
        return None
    current = now or utc_now()
    if is_recoverable(state, now=current, window=window):
        logger.info(
            "Recovering run started at %s (last update %s)",
            state.start_time.isoformat(),
            state.last_update_time.isoformat(),
        )
        return state

    age = current - state.last_update_time
    logger.info(
        "Discarding previous run state (running=%s, complete=%s, age=%.0fs)",
        state.is_running,
        state.is_complete,
        age.total_seconds(),
    )
    store.clear()
    return None


def _require(raw: Mapping[str, Any], key: str, expected: type) -> Any:
    value = raw[key]
    # bool is an int subclass; counters must not accept true/false.
    if expected is int and isinstance(value, bool):
        raise TypeError(f"{key} must be an integer")
    if not isinstance(value, expected):
        raise TypeError(f"{key} must be {expected.__name__}")
    return value


def _flag_map(raw: Mapping[str, Any], key: str) -> dict[str, bool]:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise TypeError(f"{key} must be an object")
    flags: dict[str, bool] = {}
    for task_id, flag in value.items():
        if not isinstance(flag, bool):
            raise TypeError(f"{key}.{task_id} must be a boolean")
        flags[str(task_id)] = flag
    return flags


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not remove temporary state file %s", path)
