from __future__ import annotations

from pathlib import Path

import allure
import pytest

from autosetup.config import (
    AgentAction,
    AgentActionSettings,
    ComplianceSettings,
    DriverUpdateSettings,
    RunSettings,
    Settings,
)
from autosetup.engine.models import RetryPolicy

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.run.heartbeat_seconds == 5.0
    assert settings.run.recovery_window_seconds == 1_800
    assert len(settings.agent_actions.actions) == 5
    assert settings.agent_actions.cooldown_seconds == 2.0
    assert settings.driver_update.scan_retry.max_retries == 2
    assert settings.driver_update.apply_retry.max_retries == 0
    assert settings.resilience.state_path.name == "task_state.json"


def test_from_env_reads_overrides(autosetup_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOSETUP_HEARTBEAT_SECONDS", "2.5")
    monkeypatch.setenv("AUTOSETUP_RELAUNCH_ENABLED", "no")
    monkeypatch.setenv("AUTOSETUP_POLICY_RETRYABLE_CODES", "1, 3")
    monkeypatch.setenv("AUTOSETUP_DCU_PATHS", r"C:\Tools\dcu-cli.exe;D:\dcu-cli.exe")
    monkeypatch.setenv("AUTOSETUP_DCU_NOOP_CODE", "2")
    monkeypatch.setenv("AUTOSETUP_ALLOWED_HIDDEN_DIRS", "runtimes,.config")

    settings = Settings.from_env()

    assert settings.resilience.local_cache_dir == autosetup_env
    assert settings.resilience.relaunch_enabled is False
    assert settings.resilience.allowed_hidden_dirs == ("runtimes", ".config")
    assert settings.run.heartbeat_seconds == 2.5
    assert settings.policy_refresh.retryable_codes == (1, 3)
    assert settings.driver_update.tool_paths == (r"C:\Tools\dcu-cli.exe", r"D:\dcu-cli.exe")
    assert settings.driver_update.noop_exit_code == 2
    settings.validate()


def test_from_env_parses_agent_actions(autosetup_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOSETUP_AGENT_ACTIONS", "Policy Retrieval|{A1}, Inventory|{B2},")

    settings = Settings.from_env()

    assert settings.agent_actions.actions == (
        AgentAction(name="Policy Retrieval", action_id="{A1}"),
        AgentAction(name="Inventory", action_id="{B2}"),
    )


@pytest.mark.parametrize("raw", ["Policy Retrieval", "|{A1}", "Policy|  "])
def test_from_env_rejects_malformed_agent_actions(
    autosetup_env: Path,
    monkeypatch: pytest.MonkeyPatch,
    raw: str,
) -> None:
    monkeypatch.setenv("AUTOSETUP_AGENT_ACTIONS", raw)

    with pytest.raises(ValueError, match="Invalid AUTOSETUP_AGENT_ACTIONS entry"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(autosetup_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOSETUP_RELAUNCH_ENABLED", "maybe")

    with pytest.raises(ValueError, match="AUTOSETUP_RELAUNCH_ENABLED"):
        Settings.from_env()


def test_from_env_rejects_invalid_integer_list(autosetup_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOSETUP_DCU_SCAN_RETRYABLE_CODES", "104,abc")

    with pytest.raises(ValueError, match="AUTOSETUP_DCU_SCAN_RETRYABLE_CODES"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(run=RunSettings(heartbeat_seconds=0)), "AUTOSETUP_HEARTBEAT_SECONDS"),
        (Settings(run=RunSettings(log_buffer_size=0)), "AUTOSETUP_LOG_BUFFER_SIZE"),
        (
            Settings(agent_actions=AgentActionSettings(command_template="trigger.exe")),
            "AUTOSETUP_AGENT_COMMAND_TEMPLATE",
        ),
        (Settings(agent_actions=AgentActionSettings(actions=())), "AUTOSETUP_AGENT_ACTIONS"),
        (Settings(driver_update=DriverUpdateSettings(tool_version="3")), "AUTOSETUP_DCU_TOOL_VERSION"),
        (Settings(driver_update=DriverUpdateSettings(tool_paths=())), "AUTOSETUP_DCU_PATHS"),
        (Settings(driver_update=DriverUpdateSettings(noop_exit_code=0)), "AUTOSETUP_DCU_NOOP_CODE"),
        (
            Settings(driver_update=DriverUpdateSettings(scan_retryable_codes=(104, 500))),
            "AUTOSETUP_DCU_SCAN_RETRYABLE_CODES",
        ),
        (
            Settings(compliance=ComplianceSettings(reachability_url="ftp://example.com")),
            "AUTOSETUP_REACHABILITY_URL",
        ),
        (
            Settings(
                driver_update=DriverUpdateSettings(
                    scan_retry=RetryPolicy(max_retries=1, backoff_multiplier=0.5),
                ),
            ),
            "AUTOSETUP_DCU_SCAN_BACKOFF_MULTIPLIER",
        ),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()


def test_noop_code_colliding_with_success_fails_validation(
    autosetup_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOSETUP_DCU_NOOP_CODE", "0")

    settings = Settings.from_env()

    with pytest.raises(ValueError, match="both success and noop_success"):
        settings.validate()


def test_from_env_reads_driver_install_and_bitlocker_settings(
    autosetup_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOSETUP_DCU_INSTALLER", r"\\fs01\deploy\DCU_Setup.exe")
    monkeypatch.setenv("AUTOSETUP_DCU_INSTALL_MAX_RETRIES", "4")
    monkeypatch.setenv("AUTOSETUP_DCU_INSTALL_WAIT_SECONDS", "60")
    monkeypatch.setenv("AUTOSETUP_DCU_RUNTIME_INSTALLER", "  ")
    monkeypatch.setenv("AUTOSETUP_DCU_RUNTIME_DIRS", r"C:\dotnet\shared\A;D:\dotnet\shared\B")
    monkeypatch.setenv("AUTOSETUP_BITLOCKER_REQUIRED", "false")

    settings = Settings.from_env()

    driver = settings.driver_update
    assert driver.install_enabled is True
    assert driver.installer_path == r"\\fs01\deploy\DCU_Setup.exe"
    assert driver.install_retry.max_retries == 4
    assert driver.install_wait_seconds == 60.0
    assert driver.runtime_installer_path == ""
    assert driver.runtime_dirs == (r"C:\dotnet\shared\A", r"D:\dotnet\shared\B")
    assert settings.compliance.bitlocker_required is False
    settings.validate()


def test_enabled_install_requires_installer_path() -> None:
    settings = Settings(driver_update=DriverUpdateSettings(installer_path=" "))

    with pytest.raises(ValueError, match="AUTOSETUP_DCU_INSTALLER must be set"):
        settings.validate()

    Settings(driver_update=DriverUpdateSettings(installer_path="", install_enabled=False)).validate()
