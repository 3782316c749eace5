"""Keep the machine awake while a run is in progress."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from types import TracebackType
from typing import Protocol

logger = logging.getLogger(__name__)

_ES_CONTINUOUS = 0x80000000
_ES_SYSTEM_REQUIRED = 0x00000001
_ES_DISPLAY_REQUIRED = 0x00000002


class SleepBackend(Protocol):
    name: str

    def inhibit(self) -> None: ...

    def allow(self) -> None: ...


class WindowsExecutionStateBackend:
    name = "SetThreadExecutionState"

    def inhibit(self) -> None:
        import ctypes  # noqa: PLC0415

        flags = _ES_CONTINUOUS | _ES_SYSTEM_REQUIRED | _ES_DISPLAY_REQUIRED
        if not ctypes.windll.kernel32.SetThreadExecutionState(flags):  # type: ignore[attr-defined]
            raise OSError("SetThreadExecutionState rejected the request")

    def allow(self) -> None:
        import ctypes  # noqa: PLC0415

        ctypes.windll.kernel32.SetThreadExecutionState(_ES_CONTINUOUS)  # type: ignore[attr-defined]


class InhibitorProcessBackend:
    """Holds a helper process (``caffeinate``/``systemd-inhibit``) open while inhibited."""

    def __init__(self, name: str, command: list[str]) -> None:
        self.name = name
        self.command = command
        self._process: subprocess.Popen[bytes] | None = None

    def inhibit(self) -> None:
        self._process = subprocess.Popen(  # noqa: S603
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    def allow(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=5)


class NullBackend:
    name = "none"

    def inhibit(self) -> None:
        logger.info("Sleep prevention is not available on this platform")

    def allow(self) -> None:
        return None


def default_backend() -> SleepBackend:
    if os.name == "nt":
        return WindowsExecutionStateBackend()
    if sys.platform == "darwin" and shutil.which("caffeinate"):
        return InhibitorProcessBackend(
            "caffeinate",
            ["caffeinate", "-dims", "-w", str(os.getpid())],
        )
    inhibit = shutil.which("systemd-inhibit")
    if inhibit and shutil.which("sleep"):
        return InhibitorProcessBackend(
            "systemd-inhibit",
            [
                inhibit,
                "--what=sleep:idle",
                "--who=autosetup",
                "--why=Workstation setup in progress",
                "--mode=block",
                "sleep",
                "infinity",
            ],
        )
    return NullBackend()


class SleepPreventionGuard:
    """Scoped sleep inhibition; ``acquire``/``release`` are idempotent.

    Backend failures are logged and never propagate.
    """

    def __init__(self, backend: SleepBackend | None = None) -> None:
        self._backend = backend or default_backend()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def acquire(self) -> None:
        if self._active:
            return
        try:
            self._backend.inhibit()
        except (OSError, AttributeError) as error:
            logger.warning("Failed to prevent sleep via %s: %s", self._backend.name, error)
            return
        self._active = True
        logger.info("Sleep prevention enabled (%s)", self._backend.name)

    def release(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            self._backend.allow()
        except (OSError, AttributeError, subprocess.SubprocessError) as error:
            logger.warning("Failed to restore sleep settings via %s: %s", self._backend.name, error)
            return
        logger.info("Sleep prevention disabled")

    def __enter__(self) -> SleepPreventionGuard:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()
