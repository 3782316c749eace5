"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from autosetup.config import ResilienceSettings, RunSettings, Settings
from autosetup.engine.models import ProcessResult
from autosetup.engine.state import ExecutionStateStore
from autosetup.tasks.base import TaskContext
from autosetup.tasks.providers import BitLockerStatus, HardwareIdentity


class ScriptedRunner:
    """ProcessRunner stand-in that replays queued results and records commands."""

    def __init__(self, results: list[ProcessResult | Exception] | None = None, *, pid: int = 4242):
        self.results = list(results or [])
        self.commands: list[object] = []
        self.timeouts: list[float] = []
        self.pid = pid

    def run(  # noqa: PLR0913
        self,
        command,
        *,
        work_dir=None,
        timeout_seconds: float,
        env=None,
        on_poll=None,
        on_start=None,
    ) -> ProcessResult:
        self.commands.append(command)
        self.timeouts.append(timeout_seconds)
        if on_start is not None:
            on_start(self.pid)
        if on_poll is not None:
            on_poll()
        if not self.results:
            return ProcessResult(exit_code=0)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingWait:
    """Cancel-aware wait replacement that never sleeps."""

    def __init__(self, *, interrupt_after: int | None = None) -> None:
        self.delays: list[float] = []
        self.interrupt_after = interrupt_after

    def __call__(self, cancel: threading.Event, seconds: float) -> bool:
        self.delays.append(seconds)
        if self.interrupt_after is not None and len(self.delays) >= self.interrupt_after:
            cancel.set()
        return cancel.is_set()


@dataclass(slots=True)
class FakeInventory:
    manufacturer: str = "Dell Inc."
    activated: bool | None = True
    domain: str | None = "lab.appstate.edu"
    free_bytes: int = 100 * 1024**3
    reachable: bool = True
    reboot_pending: bool = False
    agent: bool | None = True
    bitlocker: BitLockerStatus | None = BitLockerStatus(enabled=True, detail="On - FullyEncrypted")
    failing: set[str] = field(default_factory=set)

    def _maybe_fail(self, query: str) -> None:
        if query in self.failing:
            raise OSError(f"{query} unavailable")

    def hardware_identity(self) -> HardwareIdentity:
        self._maybe_fail("hardware_identity")
        return HardwareIdentity(
            computer_name="LAB-PC-01",
            manufacturer=self.manufacturer,
            model="Latitude 7440",
            serial_number="ABC1234",
        )

    def os_activated(self) -> bool | None:
        self._maybe_fail("os_activated")
        return self.activated

    def domain_name(self) -> str | None:
        self._maybe_fail("domain")
        return self.domain

    def free_disk_bytes(self) -> int:
        self._maybe_fail("free_disk_bytes")
        return self.free_bytes

    def network_reachable(self, url: str, *, timeout_seconds: float) -> bool:
        self._maybe_fail("network")
        return self.reachable

    def pending_reboot(self) -> bool:
        self._maybe_fail("pending_reboot")
        return self.reboot_pending

    def agent_healthy(self) -> bool | None:
        self._maybe_fail("agent_healthy")
        return self.agent

    def bitlocker_status(self) -> BitLockerStatus | None:
        self._maybe_fail("bitlocker")
        return self.bitlocker


@pytest.fixture()
def cancel() -> threading.Event:
    return threading.Event()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        resilience=ResilienceSettings(local_cache_dir=tmp_path / "cache"),
        run=RunSettings(heartbeat_seconds=5.0, recovery_window_seconds=1_800, log_buffer_size=50),
    )


@pytest.fixture()
def store(settings: Settings) -> ExecutionStateStore:
    return ExecutionStateStore(settings.resilience.state_path)


@pytest.fixture()
def make_runner() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner


@pytest.fixture()
def recording_wait() -> RecordingWait:
    return RecordingWait()


@pytest.fixture()
def make_wait() -> Callable[..., RecordingWait]:
    return RecordingWait


@pytest.fixture()
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture()
def task_context(cancel: threading.Event) -> TaskContext:
    return TaskContext(cancel=cancel)


@pytest.fixture()
def autosetup_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Isolate ``AUTOSETUP_*`` configuration and point the cache at ``tmp_path``."""

    for name in list(os.environ):
        if name.startswith("AUTOSETUP_"):
            monkeypatch.delenv(name, raising=False)
    cache_dir = tmp_path / "cache"
    monkeypatch.setenv("AUTOSETUP_LOCAL_CACHE_DIR", str(cache_dir))
    yield cache_dir
