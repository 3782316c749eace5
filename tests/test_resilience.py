from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import allure
import pytest

from autosetup.config import ResilienceSettings
from autosetup.engine.errors import ProcessLaunchError
from autosetup.engine.resilience import (
    ORIGIN_MARKER_NAME,
    RELAUNCH_ENV,
    ApplicationLocation,
    ResilienceManager,
    copy_tree,
)
from autosetup.engine.state import ExecutionState, ExecutionStateStore

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Local Relocation"),
]


class LaunchRecorder:
    """Records detached launches instead of starting processes."""

    def __init__(self, error: Exception | None = None) -> None:
        self.launches: list[dict[str, object]] = []
        self.error = error

    def launch_detached(self, command, *, work_dir=None, env=None) -> int:
        if self.error is not None:
            raise self.error
        self.launches.append({"command": list(command), "work_dir": work_dir, "env": env})
        return 9999


def _app_tree(root: Path) -> Path:
    (root / "autosetup").mkdir(parents=True)
    (root / "autosetup" / "__init__.py").write_text("", "utf-8")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref", "utf-8")
    (root / ".runtimes").mkdir()
    (root / ".runtimes" / "lib.dll").write_text("bin", "utf-8")
    (root / "README.txt").write_text("hi", "utf-8")
    return root


def _network_mounts(tmp_path: Path, share: Path) -> Path:
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "/dev/sda1 / ext4 rw 0 0\n" f"fileserver:/export {share} nfs4 rw,relatime 0 0\n",
        "utf-8",
    )
    return mounts


def _manager(tmp_path: Path, **kwargs) -> ResilienceManager:
    settings = kwargs.pop("settings", None) or ResilienceSettings(local_cache_dir=tmp_path / "cache")
    kwargs.setdefault("os_name", "posix")
    kwargs.setdefault("environ", {})
    return ResilienceManager(settings, **kwargs)


def test_copy_tree_skips_hidden_dirs_except_allowed(tmp_path: Path) -> None:
    source = _app_tree(tmp_path / "app")
    destination = tmp_path / "copy"

    copied = copy_tree(source, destination, allowed_hidden_dirs=("runtimes",))

    assert copied == 3
    assert (destination / "autosetup" / "__init__.py").exists()
    assert (destination / ".runtimes" / "lib.dll").read_text("utf-8") == "bin"
    assert not (destination / ".git").exists()


def test_copy_tree_skips_unreadable_directory_and_copies_the_rest(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog,
) -> None:
    source = _app_tree(tmp_path / "app")
    locked = source / "locked"
    locked.mkdir()
    (locked / "secret.txt").write_text("x", "utf-8")
    original_iterdir = Path.iterdir

    def iterdir(self: Path):
        if self.name == "locked":
            raise PermissionError(13, "Access is denied", str(self))
        return original_iterdir(self)

    monkeypatch.setattr(Path, "iterdir", iterdir)

    copied = copy_tree(source, tmp_path / "copy", allowed_hidden_dirs=())

    assert copied == 2
    assert (tmp_path / "copy" / "README.txt").exists()
    assert (tmp_path / "copy" / "autosetup" / "__init__.py").exists()
    assert not (tmp_path / "copy" / "locked" / "secret.txt").exists()
    assert "Access is denied" in caplog.text


def test_copy_tree_does_not_recurse_into_destination(tmp_path: Path) -> None:
    source = _app_tree(tmp_path / "app")
    destination = source / "cache"

    copy_tree(source, destination, allowed_hidden_dirs=())

    assert (destination / "README.txt").exists()
    assert not (destination / "cache").exists()


def test_posix_network_mount_is_unstable(tmp_path: Path) -> None:
    share = tmp_path / "share"
    (share / "app").mkdir(parents=True)
    manager = _manager(tmp_path, mounts_path=_network_mounts(tmp_path, share))

    assert manager.is_unstable_location(share / "app") is True
    assert manager.is_unstable_location(tmp_path / "local") is False


def test_posix_removable_media_is_unstable(tmp_path: Path) -> None:
    manager = _manager(tmp_path, mounts_path=tmp_path / "missing-mounts")

    assert manager.is_unstable_location(Path("/media/usb/app")) is True


def test_windows_unc_and_drive_types(tmp_path: Path) -> None:
    drive_types = {"Z:\\": 4, "E:\\": 2, "C:\\": 3}
    manager = _manager(tmp_path, os_name="nt", drive_type=drive_types.__getitem__)

    assert manager.is_unstable_location(Path(r"\\fileserver\deploy\autosetup")) is True
    assert manager.is_unstable_location(Path(r"Z:\deploy\autosetup")) is True
    assert manager.is_unstable_location(Path(r"E:\autosetup")) is True
    assert manager.is_unstable_location(Path(r"C:\Tools\autosetup")) is False


def test_windows_drive_type_failure_is_treated_as_local(tmp_path: Path) -> None:
    def broken(root: str) -> int:
        raise OSError("drive query failed")

    manager = _manager(tmp_path, os_name="nt", drive_type=broken)

    assert manager.is_unstable_location(Path(r"Z:\autosetup")) is False


def test_relaunch_from_network_share_copies_and_starts_local_copy(tmp_path: Path) -> None:
    share = tmp_path / "share"
    app_root = _app_tree(share / "app")
    runner = LaunchRecorder()
    manager = _manager(
        tmp_path,
        application=ApplicationLocation(root=app_root),
        runner=runner,
        environ={"PYTHONPATH": "/opt/extra"},
        mounts_path=_network_mounts(tmp_path, share),
    )

    assert manager.ensure_running_locally(["run", "--skip-compliance"]) is True

    cache_dir = tmp_path / "cache"
    assert (cache_dir / "autosetup" / "__init__.py").exists()
    marker = json.loads((cache_dir / ORIGIN_MARKER_NAME).read_text("utf-8"))
    assert marker["source"] == str(app_root)
    assert len(runner.launches) == 1
    launch = runner.launches[0]
    assert launch["command"][-4:] == ["-m", "autosetup", "run", "--skip-compliance"]
    assert launch["work_dir"] == cache_dir
    env = launch["env"]
    assert env[RELAUNCH_ENV] == "1"
    assert env["PYTHONPATH"] == os.pathsep.join((str(cache_dir), "/opt/extra"))


def test_local_launch_does_not_relaunch(tmp_path: Path) -> None:
    app_root = _app_tree(tmp_path / "local" / "app")
    runner = LaunchRecorder()
    manager = _manager(
        tmp_path,
        application=ApplicationLocation(root=app_root),
        runner=runner,
        mounts_path=tmp_path / "missing-mounts",
    )

    assert manager.ensure_running_locally(["run"]) is False
    assert runner.launches == []
    assert not (tmp_path / "cache").exists()


@pytest.mark.parametrize(
    ("relaunch_enabled", "environ"),
    [(False, {}), (True, {RELAUNCH_ENV: "1"})],
)
def test_relaunch_is_skipped_when_disabled_or_already_relaunched(
    tmp_path: Path,
    relaunch_enabled: bool,
    environ: dict[str, str],
) -> None:
    share = tmp_path / "share"
    runner = LaunchRecorder()
    manager = _manager(
        tmp_path,
        settings=ResilienceSettings(local_cache_dir=tmp_path / "cache", relaunch_enabled=relaunch_enabled),
        application=ApplicationLocation(root=_app_tree(share / "app")),
        runner=runner,
        environ=environ,
        mounts_path=_network_mounts(tmp_path, share),
    )

    assert manager.ensure_running_locally(["run"]) is False
    assert runner.launches == []


def test_relaunch_failure_continues_from_original_location(tmp_path: Path, caplog) -> None:
    share = tmp_path / "share"
    manager = _manager(
        tmp_path,
        application=ApplicationLocation(root=_app_tree(share / "app")),
        runner=LaunchRecorder(error=ProcessLaunchError("denied", transient=False)),
        mounts_path=_network_mounts(tmp_path, share),
    )

    assert manager.ensure_running_locally(["run"]) is False
    assert "Failed to relaunch from local cache" in caplog.text


def test_schedule_cleanup_launches_helper_from_cache(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    runner = LaunchRecorder()
    manager = _manager(tmp_path, application=ApplicationLocation(root=cache_dir), runner=runner)
    store = ExecutionStateStore(cache_dir / "task_state.json")

    assert manager.schedule_cleanup(store) is True

    command = runner.launches[0]["command"]
    script = Path(command[1])
    try:
        assert script.name.startswith("autosetup_cleanup_")
        assert "def remove_tree" in script.read_text("utf-8")
        assert command[command.index("--pid") + 1] == str(os.getpid())
        assert command[command.index("--target") + 1] == str(cache_dir)
    finally:
        script.unlink(missing_ok=True)


def test_schedule_cleanup_skipped_while_run_is_resumable(tmp_path: Path, caplog) -> None:
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    runner = LaunchRecorder()
    manager = _manager(tmp_path, application=ApplicationLocation(root=cache_dir), runner=runner)
    store = ExecutionStateStore(cache_dir / "task_state.json")
    store.save(ExecutionState(is_running=True))

    with caplog.at_level(logging.INFO, logger="autosetup.engine.resilience"):
        assert manager.schedule_cleanup(store) is False

    assert runner.launches == []
    assert "unfinished run" in caplog.text


def test_schedule_cleanup_skipped_outside_cache(tmp_path: Path) -> None:
    runner = LaunchRecorder()
    manager = _manager(
        tmp_path,
        application=ApplicationLocation(root=_app_tree(tmp_path / "app")),
        runner=runner,
    )

    assert manager.schedule_cleanup(ExecutionStateStore(tmp_path / "task_state.json")) is False
    assert runner.launches == []
