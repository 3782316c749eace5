"""Compliance verification against the workstation baseline."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from autosetup.config import ComplianceSettings
from autosetup.engine.clock import utc_now
from autosetup.engine.errors import ProcessLaunchError
from autosetup.engine.models import (
    SubTaskOutcome,
    TaskId,
    TaskOutcome,
    TaskStatus,
    started_outcome,
)
from autosetup.tasks.base import TaskContext
from autosetup.tasks.providers import InventoryProvider

logger = logging.getLogger(__name__)

_BYTES_PER_GB = 1024**3


@dataclass(frozen=True, slots=True)
class ComplianceCheck:
    """One baseline check; ``passed`` is None when it does not apply to this machine."""

    name: str
    passed: bool | None
    detail: str
    requires_restart: bool = False


class ComplianceTask:
    task_id = TaskId.COMPLIANCE
    task_name = "Compliance Verification"

    def __init__(self, settings: ComplianceSettings, *, provider: InventoryProvider) -> None:
        self.settings = settings
        self._provider = provider

    def checks(self) -> tuple[tuple[str, Callable[[], ComplianceCheck]], ...]:
        return (
            ("OS Activation", self._check_activation),
            ("Domain Membership", self._check_domain),
            ("Management Agent", self._check_agent),
            ("Disk Space", self._check_disk_space),
            ("Network Connectivity", self._check_network),
            ("Pending Reboot", self._check_pending_reboot),
            ("BitLocker Encryption", self._check_bitlocker),
        )

    def run(self, context: TaskContext) -> TaskOutcome:
        outcome = started_outcome(self.task_id.value, self.task_name)
        results: list[ComplianceCheck] = []
        for name, check in self.checks():
            if context.cancelled:
                break
            context.status(f"Checking {name.lower()}...")
            try:
                result = check()
            except (OSError, ProcessLaunchError) as error:
                logger.warning("Error checking %s: %s", name, error)
                result = ComplianceCheck(name=name, passed=False, detail=f"Error checking: {error}")
            results.append(result)
            context.heartbeat()

        sub_tasks = tuple(_as_sub_task(result) for result in results)
        evaluated = [result for result in results if result.passed is not None]
        passed = sum(1 for result in evaluated if result.passed)
        requires_restart = any(result.requires_restart for result in results)
        summary = f"{passed}/{len(evaluated)} checks passed"
        logger.info("Compliance checks completed: %s", summary)

        if context.cancelled and len(results) < len(self.checks()):
            status = TaskStatus.ERROR
            summary = f"cancelled ({summary})"
        elif not evaluated:
            status = TaskStatus.WARNING
            summary = "No compliance checks apply to this machine"
        elif passed == len(evaluated):
            status = TaskStatus.SUCCESS
        elif passed == 0:
            status = TaskStatus.ERROR
        else:
            status = TaskStatus.WARNING
        return outcome.finished(
            status=status,
            message=summary,
            requires_restart=requires_restart,
            sub_tasks=sub_tasks,
            detailed_output="\n".join(f"{result.name}: {result.detail}" for result in results),
        )

    def _check_activation(self) -> ComplianceCheck:
        activated = self._provider.os_activated()
        if activated is None:
            return ComplianceCheck("OS Activation", None, "Activation state not available")
        detail = "OS is activated" if activated else "OS is not activated"
        return ComplianceCheck("OS Activation", activated, detail)

    def _check_domain(self) -> ComplianceCheck:
        domain = self._provider.domain_name()
        suffix = self.settings.required_domain_suffix.lower().lstrip(".")
        if not domain:
            return ComplianceCheck("Domain Membership", False, "Not joined to a domain")
        joined = not suffix or domain.lower() == suffix or domain.lower().endswith(f".{suffix}")
        detail = f"Joined to {domain}" if joined else f"Joined to {domain}, expected *.{suffix}"
        return ComplianceCheck("Domain Membership", joined, detail)

    def _check_agent(self) -> ComplianceCheck:
        healthy = self._provider.agent_healthy()
        if healthy is None:
            return ComplianceCheck("Management Agent", None, "Management agent not installed")
        detail = "Agent service is running" if healthy else "Agent service is not running"
        return ComplianceCheck("Management Agent", healthy, detail)

    def _check_disk_space(self) -> ComplianceCheck:
        free_gb = self._provider.free_disk_bytes() / _BYTES_PER_GB
        minimum = self.settings.min_free_disk_gb
        sufficient = free_gb >= minimum
        return ComplianceCheck(
            "Disk Space",
            sufficient,
            f"{free_gb:.1f} GB free (minimum {minimum:g} GB)",
        )

    def _check_network(self) -> ComplianceCheck:
        url = self.settings.reachability_url
        reachable = self._provider.network_reachable(
            url,
            timeout_seconds=self.settings.reachability_timeout_seconds,
        )
        detail = f"{url} is reachable" if reachable else f"{url} is not reachable"
        return ComplianceCheck("Network Connectivity", reachable, detail)

    def _check_pending_reboot(self) -> ComplianceCheck:
        pending = self._provider.pending_reboot()
        if pending:
            return ComplianceCheck(
                "Pending Reboot",
                False,
                "A reboot is pending",
                requires_restart=True,
            )
        return ComplianceCheck("Pending Reboot", True, "No reboot pending")

    def _check_bitlocker(self) -> ComplianceCheck:
        if not self.settings.bitlocker_required:
            return ComplianceCheck("BitLocker Encryption", None, "BitLocker not required")
        status = self._provider.bitlocker_status()
        if status is None:
            return ComplianceCheck("BitLocker Encryption", None, "BitLocker not available on this system")
        if status.enabled:
            return ComplianceCheck(
                "BitLocker Encryption",
                True,
                f"System drive is encrypted with BitLocker ({status.detail})",
            )
        return ComplianceCheck(
            "BitLocker Encryption",
            False,
            f"BitLocker is not enabled ({status.detail})",
        )


def _as_sub_task(result: ComplianceCheck) -> SubTaskOutcome:
    if result.passed is None:
        status = TaskStatus.SKIPPED
    else:
        status = TaskStatus.SUCCESS if result.passed else TaskStatus.ERROR
    return SubTaskOutcome(
        name=result.name,
        status=status,
        message=result.detail,
        completed_at=utc_now(),
    )
