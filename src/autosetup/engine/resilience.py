"""Relocation to local storage and deferred self-cleanup.

A network driver update can take the launch share away mid-run, so before
anything else starts the application copies itself to a local cache directory
and relaunches from there. On a clean exit the cache is removed by a detached
helper once this process is gone.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import subprocess
import sys
import tempfile
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from autosetup.config import ResilienceSettings
from autosetup.engine import cleanup
from autosetup.engine.clock import utc_now
from autosetup.engine.errors import ProcessLaunchError
from autosetup.engine.process import ProcessRunner
from autosetup.engine.state import ExecutionStateStore

logger = logging.getLogger(__name__)

ORIGIN_MARKER_NAME = ".launched_from_network"
RELAUNCH_ENV = "AUTOSETUP_RELAUNCHED"
NETWORK_FS_TYPES = frozenset(
    {
        "nfs",
        "nfs4",
        "cifs",
        "smbfs",
        "smb3",
        "sshfs",
        "fuse.sshfs",
        "afpfs",
        "webdav",
        "davfs",
        "fuse.davfs2",
        "9p",
        "glusterfs",
        "ceph",
    },
)
REMOVABLE_ROOTS: tuple[str, ...] = ("/media", "/run/media", "/Volumes")

_DRIVE_REMOVABLE = 2
_DRIVE_REMOTE = 4
_SW_SHOWNORMAL = 1


@dataclass(frozen=True, slots=True)
class ApplicationLocation:
    """Where the running application lives and how to start it again."""

    root: Path
    frozen: bool = False
    executable: Path | None = None

    def relaunch_command(self, root: Path, argv: Sequence[str]) -> list[str]:
        """Command starting the copy of this application that lives under ``root``."""

        if self.frozen and self.executable is not None:
            return [str(root / self.executable.relative_to(self.root)), *argv]
        return [sys.executable, "-m", "autosetup", *argv]


def current_application() -> ApplicationLocation:
    if getattr(sys, "frozen", False):
        executable = Path(sys.executable).resolve()
        return ApplicationLocation(root=executable.parent, frozen=True, executable=executable)
    # src layout or site-packages: the directory that holds the package.
    return ApplicationLocation(root=Path(__file__).resolve().parents[2])


class ResilienceManager:
    """Phase-one bootstrap: make sure the run survives loss of its launch path."""

    def __init__(  # noqa: PLR0913
        self,
        settings: ResilienceSettings,
        *,
        application: ApplicationLocation | None = None,
        runner: ProcessRunner | None = None,
        environ: Mapping[str, str] | None = None,
        os_name: str | None = None,
        mounts_path: Path = Path("/proc/mounts"),
        drive_type: Callable[[str], int] | None = None,
    ) -> None:
        self.settings = settings
        self.application = application or current_application()
        self._runner = runner or ProcessRunner()
        self._environ = environ if environ is not None else os.environ
        self._os_name = os_name or os.name
        self._mounts_path = mounts_path
        self._drive_type = drive_type

    @property
    def cache_dir(self) -> Path:
        return self.settings.local_cache_dir

    def is_running_from_cache(self) -> bool:
        return _is_within(self.application.root, self.cache_dir)

    def is_relaunched(self) -> bool:
        return self._environ.get(RELAUNCH_ENV) == "1"

    def is_unstable_location(self, path: Path) -> bool:
        """Whether ``path`` is on network or removable storage."""

        if self._os_name == "nt":
            return self._is_unstable_windows_path(str(path))
        return self._is_unstable_posix_path(path)

    def ensure_running_locally(self, argv: Sequence[str]) -> bool:
        """Relaunch from the local cache when needed; True means the caller must exit."""

        if not self.settings.relaunch_enabled:
            return False
        if self.is_running_from_cache() or self.is_relaunched():
            logger.debug("Already running from local cache: %s", self.application.root)
            return False
        if not self.is_unstable_location(self.application.root):
            return False

        logger.info(
            "Running from unstable location %s; relocating to %s",
            self.application.root,
            self.cache_dir,
        )
        try:
            copied = copy_tree(
                self.application.root,
                self.cache_dir,
                allowed_hidden_dirs=self.settings.allowed_hidden_dirs,
            )
            self._write_origin_marker()
            self._relaunch(argv)
        except (OSError, ProcessLaunchError) as error:
            logger.warning(
                "Failed to relaunch from local cache, continuing from %s: %s",
                self.application.root,
                error,
            )
            return False
        logger.info("Relaunched from local cache (%d files copied)", copied)
        return True

    def schedule_cleanup(self, store: ExecutionStateStore) -> bool:
        """Launch the detached cache remover; False when cleanup is not safe or not needed."""

        if not self.is_running_from_cache():
            return False
        if store.has_active_run():
            logger.info("Skipping cache cleanup: an unfinished run may resume from it")
            return False
        if not self.cache_dir.exists():
            return False

        interpreter = Path(getattr(sys, "_base_executable", sys.executable) or sys.executable)
        if self.application.frozen or _is_within(interpreter, self.cache_dir):
            logger.warning("Skipping cache cleanup: no interpreter outside %s", self.cache_dir)
            return False

        script = Path(tempfile.gettempdir()) / f"autosetup_cleanup_{uuid.uuid4().hex}.py"
        try:
            shutil.copyfile(cleanup.__file__, script)
            self._runner.launch_detached(
                [
                    str(interpreter),
                    str(script),
                    "--pid",
                    str(os.getpid()),
                    "--target",
                    str(self.cache_dir),
                    "--retries",
                    str(self.settings.cleanup_retries),
                    "--delay",
                    str(self.settings.cleanup_retry_delay_seconds),
                ],
                work_dir=Path(tempfile.gettempdir()),
            )
        except (OSError, ProcessLaunchError) as error:
            logger.warning("Failed to schedule cache cleanup: %s", error)
            script.unlink(missing_ok=True)
            return False
        logger.info("Scheduled cleanup of %s via %s", self.cache_dir, script)
        return True

    def _write_origin_marker(self) -> None:
        marker = self.cache_dir / ORIGIN_MARKER_NAME
        payload = {"source": str(self.application.root), "launched_at": utc_now().isoformat()}
        marker.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")

    def _relaunch(self, argv: Sequence[str]) -> None:
        command = self.application.relaunch_command(self.cache_dir, argv)
        env = dict(self._environ)
        env[RELAUNCH_ENV] = "1"
        if not self.application.frozen:
            existing = env.get("PYTHONPATH")
            env["PYTHONPATH"] = (
                os.pathsep.join((str(self.cache_dir), existing)) if existing else str(self.cache_dir)
            )

        if os.name == "nt" and is_elevated():
            _shell_execute_elevated(command, cwd=self.cache_dir, env=env)
            return
        self._runner.launch_detached(command, work_dir=self.cache_dir, env=env)

    def _is_unstable_windows_path(self, raw_path: str) -> bool:
        if raw_path.startswith(("\\\\", "//")):
            return True
        drive = PureWindowsPath(raw_path).drive
        if len(drive) != 2 or drive[1] != ":":
            return False
        drive_type = self._drive_type or _windows_drive_type
        try:
            return drive_type(f"{drive}\\") in (_DRIVE_REMOVABLE, _DRIVE_REMOTE)
        except OSError as error:
            logger.debug("Could not determine drive type of %s: %s", drive, error)
            return False

    def _is_unstable_posix_path(self, path: Path) -> bool:
        resolved = path.resolve()
        if any(_is_within(resolved, Path(root)) for root in REMOVABLE_ROOTS):
            return True
        fs_type = self._mount_fs_type(resolved)
        return fs_type is not None and fs_type.lower() in NETWORK_FS_TYPES

    def _mount_fs_type(self, path: Path) -> str | None:
        """Filesystem type of the longest mount point containing ``path``."""

        try:
            lines = self._mounts_path.read_text("utf-8").splitlines()
        except OSError:
            return None

        best_point: Path | None = None
        best_type: str | None = None
        for line in lines:
            fields = line.split()
            if len(fields) < 3:
                continue
            mount_point = Path(fields[1].replace("\\040", " "))
            if not _is_within(path, mount_point):
                continue
            if best_point is None or len(mount_point.parts) > len(best_point.parts):
                best_point = mount_point
                best_type = fields[2]
        return best_type


def copy_tree(source: Path, destination: Path, *, allowed_hidden_dirs: Sequence[str]) -> int:
    """Copy ``source`` into ``destination``; return the number of files copied.

    Hidden directories are skipped unless allow-listed. Files and directories
    that cannot be read (locked, permission denied) are skipped individually.
    """

    allowed = {name.lstrip(".").lower() for name in allowed_hidden_dirs}
    destination.mkdir(parents=True, exist_ok=True)
    skip_root = destination.resolve()
    copied = 0
    for entry in sorted(source.iterdir()):
        target = destination / entry.name
        try:
            if not entry.is_dir():
                shutil.copy2(entry, target)
                copied += 1
            elif entry.resolve() != skip_root and _should_copy_dir(entry, allowed):
                copied += copy_tree(entry, target, allowed_hidden_dirs=allowed_hidden_dirs)
        except OSError as error:
            logger.warning("Skipping %s: %s", entry, error)
    return copied


def _should_copy_dir(path: Path, allowed: set[str]) -> bool:
    return not _is_hidden(path) or path.name.lstrip(".").lower() in allowed


def _is_hidden(path: Path) -> bool:
    if path.name.startswith("."):
        return True
    attributes = getattr(path.stat(), "st_file_attributes", 0)
    return bool(attributes & stat.FILE_ATTRIBUTE_HIDDEN) if attributes else False


def is_elevated() -> bool:
    if os.name == "nt":
        import ctypes  # noqa: PLC0415

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def _is_within(path: Path, parent: Path) -> bool:
    try:
        return path.resolve().is_relative_to(parent.resolve())
    except OSError:
        return False


def _windows_drive_type(root: str) -> int:
    import ctypes  # noqa: PLC0415

    return int(ctypes.windll.kernel32.GetDriveTypeW(root))  # type: ignore[attr-defined]


def _shell_execute_elevated(command: Sequence[str], *, cwd: Path, env: Mapping[str, str]) -> None:
    """Start ``command`` with the ``runas`` verb so it keeps administrator rights.

    ``ShellExecuteW`` takes no environment block; the child inherits ours.
    """

    import ctypes  # noqa: PLC0415

    os.environ.update(env)
    executable, *arguments = command
    result = ctypes.windll.shell32.ShellExecuteW(  # type: ignore[attr-defined]
        None,
        "runas",
        executable,
        subprocess.list2cmdline(arguments),
        str(cwd),
        _SW_SHOWNORMAL,
    )
    # Values above 32 mean success.
    if int(result) <= 32:
        raise OSError(f"ShellExecuteW failed with code {result}")
