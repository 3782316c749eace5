"""Collaborators consumed by the pipeline tasks: inventory queries and agent triggers."""

from __future__ import annotations

import logging
import os
import platform
import shutil
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import httpx

from autosetup.engine.errors import OperationTimeout, ProcessLaunchError
from autosetup.engine.process import ProcessRunner, render_command_template

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "autosetup/2.0 (+workstation-setup)"
QUERY_TIMEOUT_SECONDS = 60.0

_WINDOWS_REBOOT_KEYS: tuple[str, ...] = (
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending",
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired",
)
_SESSION_MANAGER_KEY = r"SYSTEM\CurrentControlSet\Control\Session Manager"
_BIOS_KEY = r"HARDWARE\DESCRIPTION\System\BIOS"
_LINUX_DMI_DIR = Path("/sys/class/dmi/id")
_LINUX_REBOOT_MARKER = Path("/var/run/reboot-required")
_ACTIVATION_QUERY = (
    "(Get-CimInstance SoftwareLicensingProduct "
    "-Filter \"PartialProductKey IS NOT NULL AND Name LIKE 'Windows%'\" "
    "| Select-Object -First 1).LicenseStatus"
)
_BITLOCKER_QUERY = (
    "$volume = Get-BitLockerVolume -MountPoint $env:SystemDrive -ErrorAction SilentlyContinue; "
    "if ($volume) { \"$($volume.ProtectionStatus):$($volume.VolumeStatus)\" } "
    "else { 'Off:NotAvailable' }"
)


@dataclass(slots=True)
class HardwareIdentity:
    computer_name: str
    manufacturer: str = ""
    model: str = ""
    serial_number: str = ""
    os_description: str = ""


@dataclass(frozen=True, slots=True)
class BitLockerStatus:
    """Drive encryption state of the system volume."""

    enabled: bool
    detail: str


@dataclass(slots=True)
class InventorySnapshot:
    """Baseline facts collected before any change is made."""

    hardware: HardwareIdentity
    domain: str | None = None
    os_activated: bool | None = None
    free_disk_bytes: int | None = None
    pending_reboot: bool = False
    agent_healthy: bool | None = None
    details: dict[str, str] = field(default_factory=dict)

    def summary_lines(self) -> list[str]:
        hardware = self.hardware
        lines = [
            f"Computer: {hardware.computer_name}",
            f"Hardware: {hardware.manufacturer} {hardware.model}".rstrip(),
        ]
        if hardware.serial_number:
            lines.append(f"Serial number: {hardware.serial_number}")
        if hardware.os_description:
            lines.append(f"OS: {hardware.os_description}")
        lines.append(f"Domain: {self.domain or 'not joined'}")
        if self.free_disk_bytes is not None:
            lines.append(f"Free disk: {self.free_disk_bytes / 1024**3:.1f} GB")
        if self.pending_reboot:
            lines.append("A reboot is pending")
        return lines


class InventoryProvider(Protocol):
    """Read-only machine facts; implementations must not change the system."""

    def hardware_identity(self) -> HardwareIdentity:
        """Return manufacturer, model, serial number and OS description."""
        raise NotImplementedError

    def os_activated(self) -> bool | None:
        """Whether the OS license is activated; None when it cannot be determined."""
        raise NotImplementedError

    def domain_name(self) -> str | None:
        """DNS domain the machine is joined to, if any."""
        raise NotImplementedError

    def free_disk_bytes(self) -> int:
        """Free space on the system drive."""
        raise NotImplementedError

    def network_reachable(self, url: str, *, timeout_seconds: float) -> bool:
        """Whether ``url`` answers over HTTP."""
        raise NotImplementedError

    def pending_reboot(self) -> bool:
        """Whether the OS reports a reboot left pending by an earlier change."""
        raise NotImplementedError

    def agent_healthy(self) -> bool | None:
        """Whether the management agent service runs; None when not installed."""
        raise NotImplementedError

    def bitlocker_status(self) -> BitLockerStatus | None:
        """Encryption state of the system drive; None where BitLocker does not exist."""
        raise NotImplementedError


class AgentActionTrigger(Protocol):
    """Fires one management-agent schedule and reports its return code."""

    def trigger(
        self,
        action_id: str,
        timeout_seconds: float,
        *,
        on_poll: Callable[[], None] | None = None,
    ) -> int:
        """Trigger ``action_id``; return the agent's return code.

        Raises ``ExternalOperationError`` when the action could not be run to
        completion.
        """
        raise NotImplementedError


def collect_inventory(provider: InventoryProvider) -> InventorySnapshot:
    """Run every query; a failing query leaves its field unknown."""

    snapshot = InventorySnapshot(hardware=provider.hardware_identity())
    queries: tuple[tuple[str, Callable[[], object]], ...] = (
        ("domain", provider.domain_name),
        ("os_activated", provider.os_activated),
        ("free_disk_bytes", provider.free_disk_bytes),
        ("pending_reboot", provider.pending_reboot),
        ("agent_healthy", provider.agent_healthy),
    )
    for name, query in queries:
        try:
            value = query()
        except (OSError, ProcessLaunchError) as error:
            logger.warning("Inventory query %s failed: %s", name, error)
            snapshot.details[name] = f"error: {error}"
            continue
        setattr(snapshot, name, value)
    return snapshot


def parse_bitlocker_status(output: str) -> BitLockerStatus:
    """Parse ``<ProtectionStatus>:<VolumeStatus>`` as printed by the BitLocker query."""

    protection, _, volume = output.strip().partition(":")
    protection = protection.strip() or "Unknown"
    return BitLockerStatus(
        enabled=protection.lower() == "on",
        detail=f"{protection} - {volume.strip() or 'Unknown'}",
    )


class CommandAgentActionTrigger:
    """Trigger agent actions through a configured command template with ``{action_id}``."""

    def __init__(self, command_template: str, *, runner: ProcessRunner | None = None) -> None:
        self.command_template = command_template
        self._runner = runner or ProcessRunner()

    def trigger(
        self,
        action_id: str,
        timeout_seconds: float,
        *,
        on_poll: Callable[[], None] | None = None,
    ) -> int:
        command = render_command_template(self.command_template, {"action_id": action_id})
        result = self._runner.run(command, timeout_seconds=timeout_seconds, on_poll=on_poll)
        if result.timed_out:
            raise OperationTimeout(f"Agent action {action_id} timed out after {timeout_seconds:.0f}s")
        if result.exit_code != 0:
            logger.warning(
                "Agent action %s returned %s: %s",
                action_id,
                result.exit_code,
                result.combined_output.strip()[:500],
            )
        return result.exit_code


class SystemInventoryProvider:
    """Inventory queries backed by the platform, the registry and an HTTP reachability check."""

    def __init__(
        self,
        *,
        runner: ProcessRunner | None = None,
        system_drive: Path | None = None,
        agent_service: str = "CcmExec",
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._runner = runner or ProcessRunner()
        self._system_drive = system_drive or _default_system_drive()
        self._agent_service = agent_service
        self._user_agent = user_agent

    def hardware_identity(self) -> HardwareIdentity:
        identity = HardwareIdentity(
            computer_name=platform.node() or socket.gethostname(),
            os_description=f"{platform.system()} {platform.release()} ({platform.version()})",
        )
        if os.name == "nt":
            identity.manufacturer = str(_registry_value(_BIOS_KEY, "SystemManufacturer") or "")
            identity.model = str(_registry_value(_BIOS_KEY, "SystemProductName") or "")
            identity.serial_number = self._powershell("(Get-CimInstance Win32_BIOS).SerialNumber")
        elif _LINUX_DMI_DIR.is_dir():
            identity.manufacturer = _read_text(_LINUX_DMI_DIR / "sys_vendor")
            identity.model = _read_text(_LINUX_DMI_DIR / "product_name")
            identity.serial_number = _read_text(_LINUX_DMI_DIR / "product_serial")
        return identity

    def os_activated(self) -> bool | None:
        if os.name != "nt":
            return None
        status = self._powershell(_ACTIVATION_QUERY)
        if not status:
            return None
        return status.strip() == "1"

    def domain_name(self) -> str | None:
        if os.name == "nt":
            domain = os.getenv("USERDNSDOMAIN", "").strip()
            if domain:
                return domain.lower()
        fqdn = socket.getfqdn()
        if "." not in fqdn:
            return None
        return fqdn.split(".", 1)[1].lower()

    def free_disk_bytes(self) -> int:
        return shutil.disk_usage(self._system_drive).free

    def network_reachable(self, url: str, *, timeout_seconds: float) -> bool:
        try:
            with httpx.Client(
                timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
                headers={"User-Agent": self._user_agent},
                follow_redirects=True,
            ) as client:
                response = client.get(url)
        except httpx.TimeoutException:
            logger.warning("Timeout probing %s", url)
            return False
        except httpx.HTTPError as error:
            logger.warning("HTTP error probing %s: %s", url, error)
            return False
        return response.status_code < 500

    def pending_reboot(self) -> bool:
        if os.name != "nt":
            return _LINUX_REBOOT_MARKER.exists()
        if any(_registry_key_exists(key) for key in _WINDOWS_REBOOT_KEYS):
            return True
        return bool(_registry_value(_SESSION_MANAGER_KEY, "PendingFileRenameOperations"))

    def agent_healthy(self) -> bool | None:
        if os.name != "nt":
            return None
        try:
            result = self._runner.run(
                ["sc", "query", self._agent_service],
                timeout_seconds=QUERY_TIMEOUT_SECONDS,
            )
        except ProcessLaunchError as error:
            logger.warning("Could not query %s service: %s", self._agent_service, error)
            return None
        if result.exit_code != 0:
            return None
        return "RUNNING" in result.stdout.upper()

    def bitlocker_status(self) -> BitLockerStatus | None:
        if os.name != "nt":
            return None
        output = self._powershell(_BITLOCKER_QUERY)
        if not output:
            return BitLockerStatus(enabled=False, detail="Unknown")
        return parse_bitlocker_status(output.splitlines()[0])

    def _powershell(self, script: str) -> str:
        try:
            result = self._runner.run(
                ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script],
                timeout_seconds=QUERY_TIMEOUT_SECONDS,
            )
        except ProcessLaunchError as error:
            logger.warning("PowerShell query failed: %s", error)
            return ""
        if result.exit_code != 0:
            logger.debug("PowerShell query exited with %s: %s", result.exit_code, result.stderr)
            return ""
        return result.stdout.strip()


def _default_system_drive() -> Path:
    if os.name == "nt":
        return Path(os.getenv("SystemDrive", "C:") + "\\")
    return Path("/")


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8").strip()
    except OSError:
        return ""


def _registry_value(key: str, name: str) -> object | None:
    import winreg  # noqa: PLC0415

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key) as handle:
            value, _kind = winreg.QueryValueEx(handle, name)
    except OSError:
        return None
    return value


def _registry_key_exists(key: str) -> bool:
    import winreg  # noqa: PLC0415

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key):
            return True
    except OSError:
        return False
