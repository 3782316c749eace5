"""Vendor driver/firmware update: install if missing, configure, scan, apply.

The apply step can run for an hour and survive a crash of this process, so
its pid and progress are kept in the execution state. A recovered run waits
for a still-running apply process and then rescans rather than applying again
blindly. The recorded executable name guards against a pid reused by an
unrelated process after a reboot.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from defusedxml import ElementTree

from autosetup.config import DriverUpdateSettings
from autosetup.engine.cleanup import process_alive
from autosetup.engine.clock import utc_now
from autosetup.engine.errors import (
    CancellationRequested,
    FatalExternalFailure,
    ProcessLaunchError,
    TransientExternalFailure,
)
from autosetup.engine.exit_codes import (
    DriverToolProfile,
    driver_apply_table,
    driver_scan_table,
    driver_tool_profile,
    installer_table,
)
from autosetup.engine.models import (
    ProcessResult,
    RetryPolicy,
    SubTaskOutcome,
    TaskId,
    TaskOutcome,
    TaskStatus,
    skipped_outcome,
    started_outcome,
)
from autosetup.engine.process import (
    ProcessRunner,
    build_command,
    process_image_name,
    render_command_template,
)
from autosetup.engine.retry import OutcomeMessages, RetryPolicyEngine, cancel_aware_wait
from autosetup.engine.state import DriverUpdateProgress
from autosetup.tasks.base import TaskContext
from autosetup.tasks.providers import InventoryProvider

logger = logging.getLogger(__name__)

PHASE_INSTALLING = "installing"
PHASE_CONFIGURING = "configuring"
PHASE_SCANNING = "scanning"
PHASE_APPLYING = "applying"
PHASE_COMPLETE = "complete"

REATTACH_POLL_SECONDS = 5.0


def parse_report_update_names(report: str) -> list[str]:
    """Update names listed in the scan report XML, in report order."""

    if not report.strip():
        return []
    try:
        root = ElementTree.fromstring(report)
    except ElementTree.ParseError as error:
        logger.warning("Could not parse driver update report: %s", error)
        return []

    names: list[str] = []
    for element in root.iter():
        if _local_name(element.tag) != "name":
            continue
        name = (element.text or "").strip()
        if name and name not in names:
            names.append(name)
    return names


class DriverUpdateTask:
    task_id = TaskId.DRIVER_UPDATE
    task_name = "Driver & Firmware Updates"

    def __init__(  # noqa: PLR0913
        self,
        settings: DriverUpdateSettings,
        *,
        runner: ProcessRunner,
        engine: RetryPolicyEngine,
        inventory: InventoryProvider | None = None,
        work_dir: Path | None = None,
        pid_alive: Callable[[int], bool] = process_alive,
        pid_image: Callable[[int], str | None] = process_image_name,
        wait: Callable[[threading.Event, float], bool] = cancel_aware_wait,
        reattach_poll_seconds: float = REATTACH_POLL_SECONDS,
    ) -> None:
        self.settings = settings
        self._runner = runner
        self._engine = engine
        self._inventory = inventory
        self._work_dir = work_dir or Path(tempfile.gettempdir())
        self._pid_alive = pid_alive
        self._pid_image = pid_image
        self._wait = wait
        self._reattach_poll_seconds = reattach_poll_seconds

    def locate_tool(self) -> Path | None:
        for candidate in self.settings.tool_paths:
            path = Path(candidate)
            if path.is_file():
                return path
        return None

    def run(self, context: TaskContext) -> TaskOutcome:
        progress = context.state.driver_update
        if context.recovered and progress.worker_pid is not None:
            self._reattach(context, progress)

        if not self._vendor_matches():
            return skipped_outcome(
                self.task_id.value,
                self.task_name,
                f"Not a {self.settings.vendor} system - skipping driver updates",
            )

        outcome = started_outcome(self.task_id.value, self.task_name)
        sub_tasks: list[SubTaskOutcome] = []
        tool = self.locate_tool()
        if tool is None:
            if not self.settings.install_enabled:
                logger.error("Driver update tool not found in %s", ", ".join(self.settings.tool_paths))
                return outcome.finished(status=TaskStatus.ERROR, message="Driver update tool not found")
            install = self._install(context, progress)
            sub_tasks.extend(install.sub_tasks)
            tool = self.locate_tool()
            if install.status != TaskStatus.SUCCESS or tool is None:
                return self._finish(
                    outcome,
                    progress,
                    context,
                    install,
                    message=f"Installation failed: {install.message}",
                    sub_tasks=sub_tasks,
                )
            outcome = replace(outcome, requires_restart=install.requires_restart)

        profile = driver_tool_profile(
            self.settings.tool_version,
            noop_override=self.settings.noop_exit_code,
        )
        sub_tasks.append(self._configure(tool, context, progress))

        scan, update_names = self._scan(tool, profile, context, progress)
        sub_tasks.append(_as_sub_task("Scan", scan))
        if scan.status != TaskStatus.SUCCESS:
            return self._finish(
                outcome,
                progress,
                context,
                scan,
                message=f"Scan failed: {scan.message}",
                sub_tasks=sub_tasks,
            )
        if scan.exit_code == profile.noop:
            return self._finish(
                outcome,
                progress,
                context,
                scan,
                message="No updates available",
                sub_tasks=sub_tasks,
            )
        if scan.requires_restart:
            return self._finish(
                outcome,
                progress,
                context,
                scan,
                message="Reboot required before scan can complete",
                sub_tasks=sub_tasks,
            )

        progress.phase = PHASE_APPLYING
        progress.total_updates = len(update_names)
        context.checkpoint()
        if update_names:
            shown = ", ".join(update_names[:3])
            more = "..." if len(update_names) > 3 else ""
            context.status(f"Found {len(update_names)} update(s): {shown}{more}")

        apply = self._apply(tool, profile, context, progress)
        sub_tasks.append(_as_sub_task("Apply", apply))
        if apply.status == TaskStatus.SUCCESS:
            for name in update_names:
                progress.record_completed(name)
        return self._finish(
            outcome,
            progress,
            context,
            apply,
            message=apply.message,
            sub_tasks=sub_tasks,
        )

    def _reattach(self, context: TaskContext, progress: DriverUpdateProgress) -> None:
        """Wait for an apply process left by the interrupted run."""

        pid = progress.worker_pid
        if pid is None or not self._pid_alive(pid):
            logger.info("Previous update process %s is gone; rescanning", pid)
            progress.clear_worker()
            return
        image = self._pid_image(pid)
        expected = progress.worker_image
        if expected and image and image.lower() != expected.lower():
            logger.warning(
                "Process %s is now %s, not the update tool %s; rescanning",
                pid,
                image,
                expected,
            )
            progress.clear_worker()
            return

        context.status(
            f"Reattached to running update process {pid} "
            f"({progress.completed_updates}/{progress.total_updates} updates done)",
        )
        while self._pid_alive(pid):
            context.heartbeat()
            if self._wait(context.cancel, self._reattach_poll_seconds):
                raise CancellationRequested(f"Cancelled while waiting for update process {pid}")
        logger.info("Update process %s finished; rescanning", pid)
        context.status("Previous update process finished; checking for remaining updates...")
        progress.clear_worker()
        context.checkpoint()

    def runtime_installed(self) -> bool:
        """Whether a runtime matching ``runtime_version_prefix`` is present."""

        prefix = self.settings.runtime_version_prefix
        for candidate in self.settings.runtime_dirs:
            try:
                versions = [child.name for child in Path(candidate).iterdir() if child.is_dir()]
            except OSError:
                continue
            if any(version.startswith(prefix) for version in versions):
                return True
        return False

    def _install(self, context: TaskContext, progress: DriverUpdateProgress) -> TaskOutcome:
        """Install the update tool, and its runtime prerequisite when that is missing."""

        progress.phase = PHASE_INSTALLING
        context.checkpoint()
        outcome = started_outcome(self.task_id.value, "Driver update tool installation")
        sub_tasks: list[SubTaskOutcome] = []
        requires_restart = False

        if self.settings.runtime_installer_path and not self.runtime_installed():
            logger.info("Runtime prerequisite not found, installing it first")
            runtime = self._run_installer(
                context,
                label="Runtime prerequisite",
                tool="runtime-installer",
                source=self.settings.runtime_installer_path,
                arguments=self.settings.runtime_installer_args,
                policy=self.settings.runtime_install_retry,
            )
            sub_tasks.append(_as_sub_task("Install runtime", runtime))
            if runtime.status != TaskStatus.SUCCESS:
                return outcome.finished(
                    status=TaskStatus.ERROR,
                    message=f"Failed to install runtime prerequisite: {runtime.message}",
                    exit_code=runtime.exit_code,
                    sub_tasks=tuple(sub_tasks),
                    attempts=runtime.attempts,
                    detailed_output=runtime.detailed_output,
                )
            if runtime.requires_restart:
                logger.warning("Runtime prerequisite requires a restart to complete")
                requires_restart = True

        install = self._run_installer(
            context,
            label="Driver update tool",
            tool="dcu-installer",
            source=self.settings.installer_path,
            arguments=self.settings.installer_args,
            policy=self.settings.install_retry,
        )
        if install.status == TaskStatus.SUCCESS and not self._wait_for_tool(context):
            install = install.finished(
                status=TaskStatus.ERROR,
                message="Driver update tool installation timed out",
            )
        sub_tasks.append(_as_sub_task("Install", install))
        return outcome.finished(
            status=install.status,
            message=install.message,
            exit_code=install.exit_code,
            requires_restart=requires_restart or install.requires_restart,
            sub_tasks=tuple(sub_tasks),
            attempts=install.attempts,
            detailed_output=install.detailed_output,
        )

    def _run_installer(  # noqa: PLR0913
        self,
        context: TaskContext,
        *,
        label: str,
        tool: str,
        source: str,
        arguments: str,
        policy: RetryPolicy,
    ) -> TaskOutcome:
        source_path = Path(source)
        local_path = self._work_dir / source.replace("\\", "/").rsplit("/", 1)[-1]
        command = build_command(str(local_path), arguments)

        def operation(timeout_seconds: float) -> ProcessResult:
            if not source_path.is_file():
                raise FatalExternalFailure(f"installer not found at {source}")
            try:
                local_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_path, local_path)
            except OSError as error:
                raise TransientExternalFailure(f"could not copy installer: {error}") from error
            try:
                return self._runner.run(
                    command,
                    timeout_seconds=timeout_seconds,
                    on_poll=context.heartbeat,
                )
            finally:
                _unlink_quietly(local_path)

        context.status(f"Installing {label.lower()}...")
        return self._engine.execute(
            operation,
            installer_table(tool),
            policy,
            context.cancel,
            task_id=self.task_id.value,
            task_name=f"{label} installation",
            messages=OutcomeMessages(
                success=f"{label} installed successfully",
                reboot_required=f"{label} installed successfully - RESTART REQUIRED",
            ),
        )

    def _wait_for_tool(self, context: TaskContext) -> bool:
        """Wait for the installer's background work to put the tool in place."""

        waited = 0.0
        while self.locate_tool() is None:
            if waited >= self.settings.install_wait_seconds:
                logger.error(
                    "Driver update tool did not appear within %.0fs of installation",
                    self.settings.install_wait_seconds,
                )
                return False
            context.heartbeat()
            context.status(f"Waiting for installation to complete... ({waited:.0f}s)")
            if self._wait(context.cancel, self.settings.install_poll_seconds):
                raise CancellationRequested("Cancelled while waiting for the update tool installation")
            waited += self.settings.install_poll_seconds
        return True

    def _vendor_matches(self) -> bool:
        if self._inventory is None or not self.settings.vendor:
            return True
        try:
            manufacturer = self._inventory.hardware_identity().manufacturer
        except (OSError, ProcessLaunchError) as error:
            logger.warning("Could not read manufacturer, attempting updates anyway: %s", error)
            return True
        if not manufacturer:
            return True
        return self.settings.vendor.lower() in manufacturer.lower()

    def _configure(
        self,
        tool: Path,
        context: TaskContext,
        progress: DriverUpdateProgress,
    ) -> SubTaskOutcome:
        progress.phase = PHASE_CONFIGURING
        context.status("Configuring driver update tool...")
        try:
            command = render_command_template(
                "{executable} " + self.settings.configure_args,
                {"executable": str(tool)},
            )
            result = self._runner.run(
                command,
                timeout_seconds=self.settings.configure_timeout_seconds,
                on_poll=context.heartbeat,
            )
        except ProcessLaunchError as error:
            logger.warning("Driver tool configuration failed, continuing anyway: %s", error)
            return SubTaskOutcome(
                name="Configure",
                status=TaskStatus.WARNING,
                message=str(error),
                completed_at=utc_now(),
            )
        if result.exit_code != 0:
            logger.warning(
                "Driver tool configuration exited with %s, continuing anyway",
                result.exit_code,
            )
            return SubTaskOutcome(
                name="Configure",
                status=TaskStatus.WARNING,
                message=f"Exit code {result.exit_code}",
                completed_at=utc_now(),
                return_code=result.exit_code,
            )
        return SubTaskOutcome(
            name="Configure",
            status=TaskStatus.SUCCESS,
            message="Configured",
            completed_at=utc_now(),
            return_code=0,
        )

    def _scan(
        self,
        tool: Path,
        profile: DriverToolProfile,
        context: TaskContext,
        progress: DriverUpdateProgress,
    ) -> tuple[TaskOutcome, list[str]]:
        progress.phase = PHASE_SCANNING
        context.checkpoint()
        stamp = _stamp(utc_now())
        log_path = self._work_dir / f"dcu_scan_{stamp}.log"
        report_path = self._work_dir / f"dcu_report_{stamp}.xml"
        command = render_command_template(
            "{executable} " + self.settings.scan_args,
            {"executable": str(tool), "log_path": str(log_path), "report_path": str(report_path)},
        )
        update_names: list[str] = []

        def operation(timeout_seconds: float) -> ProcessResult:
            result = self._runner.run(
                command,
                timeout_seconds=timeout_seconds,
                on_poll=context.heartbeat,
            )
            update_names[:] = parse_report_update_names(_read_optional(report_path))
            return result

        def on_attempt(attempt: int, max_attempts: int) -> None:
            if attempt == 1:
                context.status("Scanning for driver updates...")
            else:
                context.status(f"Retrying scan (attempt {attempt}/{max_attempts})...")

        scan = self._engine.execute(
            operation,
            driver_scan_table(profile, retryable=self.settings.scan_retryable_codes),
            self.settings.scan_retry,
            context.cancel,
            task_id=self.task_id.value,
            task_name="Driver update scan",
            messages=OutcomeMessages(
                success="Updates available",
                reboot_required="Reboot required before scan can complete",
                noop="No updates available",
            ),
            on_attempt=on_attempt,
        )
        count = len(update_names)
        if scan.status == TaskStatus.SUCCESS and count:
            logger.info("Found %d driver update(s): %s", count, ", ".join(update_names))
        return scan, list(update_names)

    def _apply(
        self,
        tool: Path,
        profile: DriverToolProfile,
        context: TaskContext,
        progress: DriverUpdateProgress,
    ) -> TaskOutcome:
        log_path = self._work_dir / f"dcu_update_{_stamp(utc_now())}.log"
        command = render_command_template(
            "{executable} " + self.settings.apply_args,
            {"executable": str(tool), "log_path": str(log_path)},
        )

        def on_start(pid: int) -> None:
            progress.worker_pid = pid
            progress.worker_image = tool.name
            context.checkpoint()

        def operation(timeout_seconds: float) -> ProcessResult:
            try:
                return self._runner.run(
                    command,
                    timeout_seconds=timeout_seconds,
                    on_poll=context.heartbeat,
                    on_start=on_start,
                )
            finally:
                progress.clear_worker()

        context.status("Applying driver updates (this may take 15-30 minutes)...")
        apply = self._engine.execute(
            operation,
            driver_apply_table(profile),
            self.settings.apply_retry,
            context.cancel,
            task_id=self.task_id.value,
            task_name="Driver update apply",
            messages=OutcomeMessages(
                success="All updates applied successfully",
                reboot_required="Updates applied successfully - RESTART REQUIRED to complete",
                noop="No updates needed",
            ),
        )
        log_text = _read_optional(log_path)
        if log_text:
            logger.info("Driver update log:\n%s", log_text)
            detailed = f"{apply.detailed_output}\n=== Update log ===\n{log_text}".strip()
            return apply.finished(status=apply.status, message=apply.message, detailed_output=detailed)
        return apply

    def _finish(  # noqa: PLR0913
        self,
        outcome: TaskOutcome,
        progress: DriverUpdateProgress,
        context: TaskContext,
        step: TaskOutcome,
        *,
        message: str,
        sub_tasks: list[SubTaskOutcome],
    ) -> TaskOutcome:
        progress.phase = PHASE_COMPLETE
        progress.clear_worker()
        context.checkpoint()
        return outcome.finished(
            status=step.status,
            message=message,
            exit_code=step.exit_code,
            requires_restart=step.requires_restart or outcome.requires_restart,
            sub_tasks=tuple(sub_tasks),
            attempts=step.attempts,
            detailed_output=step.detailed_output,
        )


def _as_sub_task(name: str, outcome: TaskOutcome) -> SubTaskOutcome:
    return SubTaskOutcome(
        name=name,
        status=outcome.status,
        message=outcome.message,
        completed_at=outcome.end_time,
        return_code=outcome.exit_code,
    )


def _local_name(tag: str) -> str:
    if "}" in tag:
        return tag.rsplit("}", 1)[1].lower()
    return tag.lower()


def _stamp(moment: datetime) -> str:
    return moment.strftime("%Y%m%d_%H%M%S")


def _read_optional(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as error:
        logger.debug("Could not remove %s: %s", path, error)
