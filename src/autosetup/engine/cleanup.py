"""Deferred removal of the local application cache.

This module is copied verbatim to the temp directory and run detached by
``ResilienceManager.schedule_cleanup``, so it must only import the standard
library. It waits for the parent process to exit, deletes the cache directory
with bounded retries, removes the parent directory when it is left empty and
finally deletes its own script.
"""

from __future__ import annotations

import argparse
import os
import shutil
import sys
import time
from pathlib import Path

PARENT_WAIT_SECONDS = 600.0
PARENT_POLL_SECONDS = 1.0
_STILL_ACTIVE = 259
_SYNCHRONIZE = 0x00100000
_PROCESS_QUERY_LIMITED_INFORMATION = 0x1000


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        import ctypes  # noqa: PLC0415

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(_SYNCHRONIZE | _PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not handle:
            return False
        try:
            exit_code = ctypes.c_ulong()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
                return False
            return exit_code.value == _STILL_ACTIVE
        finally:
            kernel32.CloseHandle(handle)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def wait_for_exit(pid: int, *, timeout_seconds: float, poll_seconds: float) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while process_alive(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_seconds)
    return True


def remove_tree(target: Path, *, retries: int, delay_seconds: float) -> bool:
    """Delete ``target``; files still locked by an exiting process get retried."""

    for attempt in range(retries + 1):
        if not target.exists():
            return True
        shutil.rmtree(target, ignore_errors=True)
        if not target.exists():
            return True
        if attempt < retries:
            time.sleep(delay_seconds * (attempt + 1))
    return not target.exists()


def remove_if_empty(directory: Path) -> None:
    try:
        directory.rmdir()
    except OSError:
        return


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove the autosetup local cache after exit.")
    parser.add_argument("--pid", type=int, required=True)
    parser.add_argument("--target", type=Path, required=True)
    parser.add_argument("--retries", type=int, default=10)
    parser.add_argument("--delay", type=float, default=2.0)
    parser.add_argument("--keep-script", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    target = args.target.resolve()
    if not wait_for_exit(args.pid, timeout_seconds=PARENT_WAIT_SECONDS, poll_seconds=PARENT_POLL_SECONDS):
        return 1
    removed = remove_tree(target, retries=max(args.retries, 0), delay_seconds=max(args.delay, 0.0))
    if removed:
        remove_if_empty(target.parent)
    if not args.keep_script:
        Path(__file__).unlink(missing_ok=True)
    return 0 if removed else 1


if __name__ == "__main__":
    sys.exit(main())
