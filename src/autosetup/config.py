"""Runtime configuration for the workstation setup run."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from autosetup.engine.exit_codes import (
    DRIVER_TOOL_PROFILES,
    driver_apply_table,
    driver_scan_table,
    driver_tool_profile,
)
from autosetup.engine.models import RetryPolicy
from autosetup.engine.state import STATE_FILE_NAME

WINDOWS_CACHE_DIR = Path(r"C:\Temp\UniversityAutoSetup\App")

DEFAULT_AGENT_ACTIONS: tuple[tuple[str, str], ...] = (
    ("Machine Policy Retrieval", "{00000000-0000-0000-0000-000000000021}"),
    ("Machine Policy Evaluation", "{00000000-0000-0000-0000-000000000022}"),
    ("Hardware Inventory", "{00000000-0000-0000-0000-000000000001}"),
    ("Software Updates Scan", "{00000000-0000-0000-0000-000000000113}"),
    ("Software Updates Deployment", "{00000000-0000-0000-0000-000000000108}"),
)

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "powershell.exe -NoProfile -NonInteractive -Command "
    '"Invoke-WmiMethod -Namespace root\\ccm -Class SMS_Client '
    "-Name TriggerSchedule -ArgumentList '{action_id}' | Out-Null\""
)

DEFAULT_CONFIGURE_ARGS = "/configure -silent -autoSuspendBitLocker=enable -userConsent=disable"
DEFAULT_SCAN_ARGS = "/scan -outputLog={log_path} -report={report_path}"
DEFAULT_APPLY_ARGS = "/applyUpdates -forceUpdate=enable -reboot=disable -outputLog={log_path}"
DEFAULT_REACHABILITY_URL = "https://www.msftconnecttest.com/connecttest.txt"

DEFAULT_DRIVER_TOOL_PATHS: tuple[str, ...] = (
    r"C:\Program Files\Dell\CommandUpdate\dcu-cli.exe",
    r"C:\Program Files (x86)\Dell\CommandUpdate\dcu-cli.exe",
)
DEFAULT_DRIVER_INSTALLER = r"\\server\share\Dell\DCU\DCU_Setup.exe"
DEFAULT_RUNTIME_INSTALLER = r"\\server\share\Dell\DCU\dotnet-sdk-8.0.417-win-x64.exe"
DEFAULT_RUNTIME_DIRS: tuple[str, ...] = (
    r"C:\Program Files\dotnet\shared\Microsoft.WindowsDesktop.App",
)


def _default_cache_dir() -> Path:
    if os.name == "nt":
        return WINDOWS_CACHE_DIR
    return Path(tempfile.gettempdir()) / "autosetup" / "app"


@dataclass(slots=True)
class ResilienceSettings:
    """Local cache used to survive loss of the launch location."""

    local_cache_dir: Path = field(default_factory=_default_cache_dir)
    state_file_name: str = STATE_FILE_NAME
    allowed_hidden_dirs: tuple[str, ...] = ("runtimes",)
    cleanup_retries: int = 10
    cleanup_retry_delay_seconds: float = 2.0
    relaunch_enabled: bool = True

    @property
    def state_path(self) -> Path:
        return self.local_cache_dir / self.state_file_name


@dataclass(slots=True)
class RunSettings:
    """Heartbeat and recovery settings."""

    heartbeat_seconds: float = 5.0
    recovery_window_seconds: int = 1_800
    log_buffer_size: int = 200


@dataclass(slots=True)
class PolicyRefreshSettings:
    command: str = "gpupdate"
    args: str = "/force"
    retryable_codes: tuple[int, ...] = (1,)
    retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_retries=2,
            initial_delay_seconds=10.0,
            backoff_multiplier=2.0,
            max_delay_seconds=60.0,
            timeout_seconds=120.0,
        ),
    )


@dataclass(frozen=True, slots=True)
class AgentAction:
    name: str
    action_id: str


@dataclass(slots=True)
class AgentActionSettings:
    """Management-agent schedule triggers, run in order with a cool-down."""

    actions: tuple[AgentAction, ...] = tuple(
        AgentAction(name=name, action_id=action_id) for name, action_id in DEFAULT_AGENT_ACTIONS
    )
    action_timeout_seconds: float = 120.0
    cooldown_seconds: float = 2.0
    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE


@dataclass(slots=True)
class DriverUpdateSettings:
    """Vendor driver/firmware update tool settings."""

    tool_paths: tuple[str, ...] = DEFAULT_DRIVER_TOOL_PATHS
    vendor: str = "Dell"
    tool_version: str = "5"
    noop_exit_code: int | None = None
    configure_args: str = DEFAULT_CONFIGURE_ARGS
    scan_args: str = DEFAULT_SCAN_ARGS
    apply_args: str = DEFAULT_APPLY_ARGS
    configure_timeout_seconds: float = 60.0
    scan_retryable_codes: tuple[int, ...] = (104, 106)
    scan_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_retries=2,
            initial_delay_seconds=10.0,
            backoff_multiplier=1.0,
            max_delay_seconds=10.0,
            timeout_seconds=300.0,
        ),
    )
    apply_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_retries=0,
            initial_delay_seconds=0.0,
            backoff_multiplier=1.0,
            max_delay_seconds=0.0,
            timeout_seconds=3_600.0,
        ),
    )
    install_enabled: bool = True
    installer_path: str = DEFAULT_DRIVER_INSTALLER
    installer_args: str = "-s"
    install_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_retries=2,
            initial_delay_seconds=5.0,
            backoff_multiplier=1.0,
            max_delay_seconds=5.0,
            timeout_seconds=300.0,
        ),
    )
    install_wait_seconds: float = 180.0
    install_poll_seconds: float = 5.0
    # Empty installer path: the tool has no runtime prerequisite.
    runtime_installer_path: str = DEFAULT_RUNTIME_INSTALLER
    runtime_installer_args: str = "/install /quiet /norestart"
    runtime_dirs: tuple[str, ...] = DEFAULT_RUNTIME_DIRS
    runtime_version_prefix: str = "8."
    runtime_install_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_retries=1,
            initial_delay_seconds=5.0,
            backoff_multiplier=1.0,
            max_delay_seconds=5.0,
            timeout_seconds=600.0,
        ),
    )


@dataclass(slots=True)
class ComplianceSettings:
    """Baseline checks run at the end of setup."""

    min_free_disk_gb: float = 20.0
    required_domain_suffix: str = ".appstate.edu"
    reachability_url: str = DEFAULT_REACHABILITY_URL
    reachability_timeout_seconds: float = 10.0
    bitlocker_required: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    resilience: ResilienceSettings = field(default_factory=ResilienceSettings)
    run: RunSettings = field(default_factory=RunSettings)
    policy_refresh: PolicyRefreshSettings = field(default_factory=PolicyRefreshSettings)
    agent_actions: AgentActionSettings = field(default_factory=AgentActionSettings)
    driver_update: DriverUpdateSettings = field(default_factory=DriverUpdateSettings)
    compliance: ComplianceSettings = field(default_factory=ComplianceSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``AUTOSETUP_*`` environment variables."""

        cache_dir = os.getenv("AUTOSETUP_LOCAL_CACHE_DIR", "").strip()
        noop_raw = os.getenv("AUTOSETUP_DCU_NOOP_CODE", "").strip()
        return cls(
            resilience=ResilienceSettings(
                local_cache_dir=Path(cache_dir) if cache_dir else _default_cache_dir(),
                state_file_name=os.getenv("AUTOSETUP_STATE_FILE_NAME", STATE_FILE_NAME),
                allowed_hidden_dirs=_env_csv("AUTOSETUP_ALLOWED_HIDDEN_DIRS", ("runtimes",)),
                cleanup_retries=int(os.getenv("AUTOSETUP_CLEANUP_RETRIES", "10")),
                cleanup_retry_delay_seconds=float(
                    os.getenv("AUTOSETUP_CLEANUP_RETRY_DELAY_SECONDS", "2.0"),
                ),
                relaunch_enabled=_env_bool("AUTOSETUP_RELAUNCH_ENABLED", default=True),
            ),
            run=RunSettings(
                heartbeat_seconds=float(os.getenv("AUTOSETUP_HEARTBEAT_SECONDS", "5")),
                recovery_window_seconds=int(
                    os.getenv("AUTOSETUP_RECOVERY_WINDOW_SECONDS", "1800"),
                ),
                log_buffer_size=int(os.getenv("AUTOSETUP_LOG_BUFFER_SIZE", "200")),
            ),
            policy_refresh=PolicyRefreshSettings(
                command=os.getenv("AUTOSETUP_POLICY_COMMAND", "gpupdate"),
                args=os.getenv("AUTOSETUP_POLICY_ARGS", "/force"),
                retryable_codes=_env_int_csv("AUTOSETUP_POLICY_RETRYABLE_CODES", (1,)),
                retry=RetryPolicy(
                    max_retries=int(os.getenv("AUTOSETUP_POLICY_MAX_RETRIES", "2")),
                    initial_delay_seconds=float(
                        os.getenv("AUTOSETUP_POLICY_RETRY_DELAY_SECONDS", "10"),
                    ),
                    backoff_multiplier=float(
                        os.getenv("AUTOSETUP_POLICY_BACKOFF_MULTIPLIER", "2.0"),
                    ),
                    max_delay_seconds=float(
                        os.getenv("AUTOSETUP_POLICY_MAX_DELAY_SECONDS", "60"),
                    ),
                    timeout_seconds=float(os.getenv("AUTOSETUP_POLICY_TIMEOUT_SECONDS", "120")),
                ),
            ),
            agent_actions=AgentActionSettings(
                actions=_collect_agent_actions(),
                action_timeout_seconds=float(
                    os.getenv("AUTOSETUP_AGENT_ACTION_TIMEOUT_SECONDS", "120"),
                ),
                cooldown_seconds=float(os.getenv("AUTOSETUP_AGENT_COOLDOWN_SECONDS", "2")),
                command_template=os.getenv(
                    "AUTOSETUP_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
            ),
            driver_update=DriverUpdateSettings(
                tool_paths=_env_csv("AUTOSETUP_DCU_PATHS", DEFAULT_DRIVER_TOOL_PATHS, separator=";"),
                vendor=os.getenv("AUTOSETUP_DCU_VENDOR", "Dell"),
                tool_version=os.getenv("AUTOSETUP_DCU_TOOL_VERSION", "5"),
                noop_exit_code=int(noop_raw) if noop_raw else None,
                configure_args=os.getenv(
                    "AUTOSETUP_DCU_CONFIGURE_ARGS",
                    DEFAULT_CONFIGURE_ARGS,
                ),
                scan_args=os.getenv("AUTOSETUP_DCU_SCAN_ARGS", DEFAULT_SCAN_ARGS),
                apply_args=os.getenv("AUTOSETUP_DCU_APPLY_ARGS", DEFAULT_APPLY_ARGS),
                scan_retryable_codes=_env_int_csv("AUTOSETUP_DCU_SCAN_RETRYABLE_CODES", (104, 106)),
                scan_retry=RetryPolicy(
                    max_retries=int(os.getenv("AUTOSETUP_DCU_SCAN_MAX_RETRIES", "2")),
                    initial_delay_seconds=float(
                        os.getenv("AUTOSETUP_DCU_SCAN_RETRY_DELAY_SECONDS", "10"),
                    ),
                    backoff_multiplier=1.0,
                    max_delay_seconds=float(
                        os.getenv("AUTOSETUP_DCU_SCAN_RETRY_DELAY_SECONDS", "10"),
                    ),
                    timeout_seconds=float(os.getenv("AUTOSETUP_DCU_SCAN_TIMEOUT_SECONDS", "300")),
                ),
                apply_retry=RetryPolicy(
                    max_retries=0,
                    initial_delay_seconds=0.0,
                    backoff_multiplier=1.0,
                    max_delay_seconds=0.0,
                    timeout_seconds=float(
                        os.getenv("AUTOSETUP_DCU_APPLY_TIMEOUT_SECONDS", "3600"),
                    ),
                ),
                install_enabled=_env_bool("AUTOSETUP_DCU_INSTALL_ENABLED", default=True),
                installer_path=os.getenv("AUTOSETUP_DCU_INSTALLER", DEFAULT_DRIVER_INSTALLER),
                installer_args=os.getenv("AUTOSETUP_DCU_INSTALLER_ARGS", "-s"),
                install_retry=RetryPolicy(
                    max_retries=int(os.getenv("AUTOSETUP_DCU_INSTALL_MAX_RETRIES", "2")),
                    initial_delay_seconds=float(
                        os.getenv("AUTOSETUP_DCU_INSTALL_RETRY_DELAY_SECONDS", "5"),
                    ),
                    backoff_multiplier=1.0,
                    max_delay_seconds=float(
                        os.getenv("AUTOSETUP_DCU_INSTALL_RETRY_DELAY_SECONDS", "5"),
                    ),
                    timeout_seconds=float(
                        os.getenv("AUTOSETUP_DCU_INSTALL_TIMEOUT_SECONDS", "300"),
                    ),
                ),
                install_wait_seconds=float(os.getenv("AUTOSETUP_DCU_INSTALL_WAIT_SECONDS", "180")),
                runtime_installer_path=os.getenv(
                    "AUTOSETUP_DCU_RUNTIME_INSTALLER",
                    DEFAULT_RUNTIME_INSTALLER,
                ).strip(),
                runtime_installer_args=os.getenv(
                    "AUTOSETUP_DCU_RUNTIME_INSTALLER_ARGS",
                    "/install /quiet /norestart",
                ),
                runtime_dirs=_env_csv(
                    "AUTOSETUP_DCU_RUNTIME_DIRS",
                    DEFAULT_RUNTIME_DIRS,
                    separator=";",
                ),
                runtime_version_prefix=os.getenv("AUTOSETUP_DCU_RUNTIME_VERSION_PREFIX", "8."),
                runtime_install_retry=RetryPolicy(
                    max_retries=1,
                    initial_delay_seconds=5.0,
                    backoff_multiplier=1.0,
                    max_delay_seconds=5.0,
                    timeout_seconds=float(
                        os.getenv("AUTOSETUP_DCU_RUNTIME_INSTALL_TIMEOUT_SECONDS", "600"),
                    ),
                ),
            ),
            compliance=ComplianceSettings(
                min_free_disk_gb=float(os.getenv("AUTOSETUP_MIN_FREE_DISK_GB", "20")),
                required_domain_suffix=os.getenv(
                    "AUTOSETUP_REQUIRED_DOMAIN_SUFFIX",
                    ".appstate.edu",
                ),
                reachability_url=os.getenv(
                    "AUTOSETUP_REACHABILITY_URL",
                    DEFAULT_REACHABILITY_URL,
                ),
                reachability_timeout_seconds=float(
                    os.getenv("AUTOSETUP_REACHABILITY_TIMEOUT_SECONDS", "10"),
                ),
                bitlocker_required=_env_bool("AUTOSETUP_BITLOCKER_REQUIRED", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.run.heartbeat_seconds <= 0:
            raise ValueError("AUTOSETUP_HEARTBEAT_SECONDS must be > 0.")
        if self.run.recovery_window_seconds <= 0:
            raise ValueError("AUTOSETUP_RECOVERY_WINDOW_SECONDS must be > 0.")
        if self.run.log_buffer_size <= 0:
            raise ValueError("AUTOSETUP_LOG_BUFFER_SIZE must be a positive integer.")
        if self.resilience.cleanup_retries < 0:
            raise ValueError("AUTOSETUP_CLEANUP_RETRIES must be >= 0.")
        if not self.resilience.state_file_name.strip():
            raise ValueError("AUTOSETUP_STATE_FILE_NAME must not be empty.")

        _validate_retry("AUTOSETUP_POLICY", self.policy_refresh.retry)
        _validate_retry("AUTOSETUP_DCU_SCAN", self.driver_update.scan_retry)
        _validate_retry("AUTOSETUP_DCU_APPLY", self.driver_update.apply_retry)
        _validate_retry("AUTOSETUP_DCU_INSTALL", self.driver_update.install_retry)
        _validate_retry("AUTOSETUP_DCU_RUNTIME_INSTALL", self.driver_update.runtime_install_retry)
        if self.driver_update.install_enabled and not self.driver_update.installer_path.strip():
            raise ValueError(
                "AUTOSETUP_DCU_INSTALLER must be set when AUTOSETUP_DCU_INSTALL_ENABLED is on.",
            )
        if self.driver_update.install_wait_seconds < 0:
            raise ValueError("AUTOSETUP_DCU_INSTALL_WAIT_SECONDS must be >= 0.")

        if not self.agent_actions.actions:
            raise ValueError("AUTOSETUP_AGENT_ACTIONS must name at least one action.")
        if "{action_id}" not in self.agent_actions.command_template:
            raise ValueError("AUTOSETUP_AGENT_COMMAND_TEMPLATE must contain {action_id}.")
        if self.agent_actions.cooldown_seconds < 0:
            raise ValueError("AUTOSETUP_AGENT_COOLDOWN_SECONDS must be >= 0.")
        if self.agent_actions.action_timeout_seconds <= 0:
            raise ValueError("AUTOSETUP_AGENT_ACTION_TIMEOUT_SECONDS must be > 0.")

        if not self.driver_update.tool_paths:
            raise ValueError("AUTOSETUP_DCU_PATHS must name at least one path.")
        try:
            profile = driver_tool_profile(
                self.driver_update.tool_version,
                noop_override=self.driver_update.noop_exit_code,
            )
        except ValueError as error:
            supported = ", ".join(sorted(DRIVER_TOOL_PROFILES))
            raise ValueError(
                f"AUTOSETUP_DCU_TOOL_VERSION must be one of: {supported}.",
            ) from error
        try:
            driver_scan_table(profile, retryable=self.driver_update.scan_retryable_codes)
            driver_apply_table(profile)
        except ValueError as error:
            raise ValueError(
                "AUTOSETUP_DCU_NOOP_CODE and AUTOSETUP_DCU_SCAN_RETRYABLE_CODES must not reuse "
                f"exit codes of driver tool version {self.driver_update.tool_version}: {error}",
            ) from error

        if self.compliance.min_free_disk_gb < 0:
            raise ValueError("AUTOSETUP_MIN_FREE_DISK_GB must be >= 0.")
        parsed = urlparse(self.compliance.reachability_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "AUTOSETUP_REACHABILITY_URL must be an absolute http:// or https:// URL.",
            )


def _validate_retry(prefix: str, policy: RetryPolicy) -> None:
    if policy.max_retries < 0:
        raise ValueError(f"{prefix}_MAX_RETRIES must be >= 0.")
    if policy.initial_delay_seconds < 0:
        raise ValueError(f"{prefix}_RETRY_DELAY_SECONDS must be >= 0.")
    if policy.backoff_multiplier < 1:
        raise ValueError(f"{prefix}_BACKOFF_MULTIPLIER must be >= 1.")
    if policy.max_delay_seconds < 0:
        raise ValueError(f"{prefix}_MAX_DELAY_SECONDS must be >= 0.")
    if policy.timeout_seconds <= 0:
        raise ValueError(f"{prefix}_TIMEOUT_SECONDS must be > 0.")


def _collect_agent_actions() -> tuple[AgentAction, ...]:
    """Parse ``AUTOSETUP_AGENT_ACTIONS`` as ``name|id`` pairs separated by commas."""

    raw = os.getenv("AUTOSETUP_AGENT_ACTIONS", "").strip()
    if not raw:
        return AgentActionSettings().actions

    actions: list[AgentAction] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid AUTOSETUP_AGENT_ACTIONS entry: "
                f"{token!r}. Expected format '<name>|<action id>'.",
            )
        name, action_id = token.rsplit("|", 1)
        if not name.strip() or not action_id.strip():
            raise ValueError(f"Invalid AUTOSETUP_AGENT_ACTIONS entry: {token!r}.")
        actions.append(AgentAction(name=name.strip(), action_id=action_id.strip()))
    return tuple(actions)


def _env_csv(name: str, default: tuple[str, ...], *, separator: str = ",") -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(separator) if part.strip())


def _env_int_csv(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    values = _env_csv(name, ())
    if not values:
        return default
    try:
        return tuple(int(value) for value in values)
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {os.getenv(name)!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
