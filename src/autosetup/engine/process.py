"""Subprocess runner for wrapped external tools."""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
import tempfile
import time
from collections.abc import Callable, Mapping
from pathlib import Path, PureWindowsPath
from typing import IO

from autosetup.engine.errors import ProcessLaunchError
from autosetup.engine.models import ProcessResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
POLL_INTERVAL_SECONDS = 0.1

_DETACHED_PROCESS = 0x00000008
_CREATE_NEW_PROCESS_GROUP = 0x00000200
_CREATE_NO_WINDOW = 0x08000000
_PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
_MAX_IMAGE_PATH = 32_768

CommandLine = str | list[str]


class ProcessRunner:
    """Run external commands with a hard timeout and captured output."""

    def __init__(self, *, poll_interval_seconds: float = POLL_INTERVAL_SECONDS) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(  # noqa: PLR0913
        self,
        command: CommandLine,
        *,
        work_dir: Path | None = None,
        timeout_seconds: float,
        env: Mapping[str, str] | None = None,
        on_poll: Callable[[], None] | None = None,
        on_start: Callable[[int], None] | None = None,
    ) -> ProcessResult:
        """Run ``command`` to completion or until ``timeout_seconds`` elapse.

        ``on_poll`` is called from the waiting loop, so callers can keep
        heartbeats flowing while a long operation runs. Cancellation is not
        checked here: a dispatched operation finishes or times out on its own.
        """

        head = _command_head(command)
        logger.debug("Starting process: %s", command)
        with (
            tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stdout_handle,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    command,
                    cwd=str(work_dir) if work_dir is not None else None,
                    env=dict(env) if env is not None else None,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    stdin=subprocess.DEVNULL,
                    text=True,
                )
            except FileNotFoundError as error:
                raise ProcessLaunchError(f"Command not found: {head}", transient=False) from error
            except OSError as error:
                raise ProcessLaunchError(
                    f"Failed to start {head}: {error}",
                    transient=True,
                ) from error

            if on_start is not None:
                on_start(process.pid)
            exit_code, timed_out = self._wait(
                process,
                timeout_seconds=timeout_seconds,
                on_poll=on_poll,
            )
            stdout = _read_back(stdout_handle)
            stderr = _read_back(stderr_handle)

        if timed_out:
            logger.warning("Process timed out after %.0fs: %s", timeout_seconds, head)
        else:
            logger.debug("Process completed: %s with exit code %s", head, exit_code)
        return ProcessResult(exit_code=exit_code, stdout=stdout, stderr=stderr, timed_out=timed_out)

    def launch_detached(
        self,
        command: CommandLine,
        *,
        work_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> int:
        """Start a helper that outlives this process; return its pid."""

        kwargs: dict[str, object] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
            "cwd": str(work_dir) if work_dir is not None else None,
            "env": dict(env) if env is not None else None,
        }
        if os.name == "nt":
            kwargs["creationflags"] = (
                _DETACHED_PROCESS | _CREATE_NEW_PROCESS_GROUP | _CREATE_NO_WINDOW
            )
        else:
            kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(command, **kwargs)  # noqa: S603
        except FileNotFoundError as error:
            raise ProcessLaunchError(
                f"Command not found: {_command_head(command)}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessLaunchError(
                f"Failed to start {_command_head(command)}: {error}",
                transient=True,
            ) from error
        logger.debug("Launched detached process %s: %s", process.pid, command)
        return process.pid

    def _wait(
        self,
        process: subprocess.Popen[str],
        *,
        timeout_seconds: float,
        on_poll: Callable[[], None] | None,
    ) -> tuple[int, bool]:
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False

            if time.monotonic() - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

            if on_poll is not None:
                on_poll()
            time.sleep(self.poll_interval_seconds)


def build_command(executable: str, arguments: str = "", *, os_name: str | None = None) -> CommandLine:
    """Combine an executable path with a configured argument string."""

    current_os_name = os_name or os.name
    stripped = arguments.strip()
    if current_os_name == "nt":
        head = subprocess.list2cmdline([executable])
        return f"{head} {stripped}" if stripped else head
    return [executable, *shlex.split(stripped)]


def render_command_template(
    template: str,
    values: Mapping[str, str],
    *,
    os_name: str | None = None,
) -> CommandLine:
    """Render a configured command template with quoted placeholder values."""

    stripped = template.strip()
    if not stripped:
        raise ProcessLaunchError("Command template is empty.", transient=False)

    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(template=stripped, values=values).strip()
            if not rendered:
                raise ProcessLaunchError("Command template rendered empty command.", transient=False)
            return rendered
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise ProcessLaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessLaunchError("Command template rendered empty command.", transient=False)
    return argv


def process_image_name(pid: int) -> str | None:
    """File name of the executable running as ``pid``; None when it cannot be read."""

    if pid <= 0:
        return None
    if os.name == "nt":
        return _windows_image_name(pid)
    try:
        return Path(os.readlink(f"/proc/{pid}/exe")).name or None
    except OSError:
        return None


def _windows_image_name(pid: int) -> str | None:
    import ctypes  # noqa: PLC0415
    from ctypes import wintypes  # noqa: PLC0415

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(_PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return None
    try:
        size = wintypes.DWORD(_MAX_IMAGE_PATH)
        buffer = ctypes.create_unicode_buffer(_MAX_IMAGE_PATH)
        if not kernel32.QueryFullProcessImageNameW(handle, 0, buffer, ctypes.byref(size)):
            return None
        return PureWindowsPath(buffer.value).name or None
    finally:
        kernel32.CloseHandle(handle)


def _command_head(command: CommandLine) -> str:
    if isinstance(command, str):
        parts = command.strip().split(maxsplit=1)
        return parts[0] if parts else ""
    return command[0] if command else ""


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _render_windows_command_template(*, template: str, values: Mapping[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, _format_spec, _conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        value_text = str(values[field_name])
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue

        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

