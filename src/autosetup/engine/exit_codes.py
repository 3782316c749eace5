"""Deterministic per-tool exit-code classification for the retry policy."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from autosetup.engine.models import ExitCodeClass


@dataclass(frozen=True, slots=True)
class ExitCodeTable:
    """Mapping from exit code to classification for one tool.

    Codes absent from the mapping are ``FATAL``.
    """

    tool: str
    codes: Mapping[int, ExitCodeClass] = field(default_factory=dict)

    def classify(self, exit_code: int) -> ExitCodeClass:
        return self.codes.get(exit_code, ExitCodeClass.FATAL)

    def codes_for(self, classification: ExitCodeClass) -> tuple[int, ...]:
        return tuple(sorted(code for code, value in self.codes.items() if value == classification))

    def describe(self, exit_code: int) -> str:
        return f"{self.tool} exit code {exit_code}: {self.classify(exit_code).value}"


def build_exit_code_table(  # noqa: PLR0913
    tool: str,
    *,
    success: Iterable[int] = (0,),
    reboot_required: Iterable[int] = (),
    noop: Iterable[int] = (),
    retryable: Iterable[int] = (),
    fatal: Iterable[int] = (),
) -> ExitCodeTable:
    """Build a table, rejecting codes that appear in more than one class."""

    codes: dict[int, ExitCodeClass] = {}
    for classification, values in (
        (ExitCodeClass.SUCCESS, success),
        (ExitCodeClass.SUCCESS_REBOOT_REQUIRED, reboot_required),
        (ExitCodeClass.NOOP_SUCCESS, noop),
        (ExitCodeClass.RETRYABLE, retryable),
        (ExitCodeClass.FATAL, fatal),
    ):
        for code in values:
            existing = codes.get(code)
            if existing is not None and existing != classification:
                raise ValueError(
                    f"Exit code {code} for {tool!r} is both {existing.value} "
                    f"and {classification.value}.",
                )
            codes[code] = classification
    return ExitCodeTable(tool=tool, codes=codes)


@dataclass(frozen=True, slots=True)
class DriverToolProfile:
    """Exit-code conventions of one vendor update tool release line."""

    scan_updates_available: tuple[int, ...]
    scan_reboot_pending: tuple[int, ...]
    apply_success: tuple[int, ...]
    apply_reboot_required: tuple[int, ...]
    noop: int


# Tool revisions moved the "nothing to do" code, so it is keyed by major version.
DRIVER_TOOL_PROFILES: dict[str, DriverToolProfile] = {
    "4": DriverToolProfile(
        scan_updates_available=(0,),
        scan_reboot_pending=(),
        apply_success=(0, 2, 3),
        apply_reboot_required=(),
        noop=1,
    ),
    "5": DriverToolProfile(
        scan_updates_available=(0,),
        scan_reboot_pending=(1,),
        apply_success=(0,),
        apply_reboot_required=(1, 5),
        noop=500,
    ),
}


def driver_tool_profile(tool_version: str, *, noop_override: int | None = None) -> DriverToolProfile:
    major = tool_version.strip().split(".", 1)[0]
    try:
        profile = DRIVER_TOOL_PROFILES[major]
    except KeyError as error:
        supported = ", ".join(sorted(DRIVER_TOOL_PROFILES))
        raise ValueError(
            f"Unsupported driver update tool version {tool_version!r}; supported: {supported}",
        ) from error
    if noop_override is None:
        return profile
    return DriverToolProfile(
        scan_updates_available=profile.scan_updates_available,
        scan_reboot_pending=profile.scan_reboot_pending,
        apply_success=profile.apply_success,
        apply_reboot_required=profile.apply_reboot_required,
        noop=noop_override,
    )


def policy_refresh_table(*, retryable: Iterable[int] = (1,)) -> ExitCodeTable:
    """Policy refresh: 0 is success, generic failures are worth another try."""

    return build_exit_code_table("gpupdate", success=(0,), retryable=retryable)


def driver_scan_table(profile: DriverToolProfile, *, retryable: Iterable[int]) -> ExitCodeTable:
    """Driver scan: "updates available" is success, "no updates" is a no-op.

    A reboot left pending by an earlier operation blocks the scan; it is reported
    as success with a restart requirement so the rest of the run proceeds.
    """

    return build_exit_code_table(
        "dcu-scan",
        success=profile.scan_updates_available,
        reboot_required=profile.scan_reboot_pending,
        noop=(profile.noop,),
        retryable=retryable,
    )


def driver_apply_table(profile: DriverToolProfile) -> ExitCodeTable:
    return build_exit_code_table(
        "dcu-apply",
        success=profile.apply_success,
        reboot_required=profile.apply_reboot_required,
        noop=(profile.noop,),
    )


def installer_table(tool: str) -> ExitCodeTable:
    """Windows installer conventions.

    3010 (restart required) and 1641 (restart initiated) are successful
    installs; 1618 means another installation is in progress.
    """

    return build_exit_code_table(
        tool,
        success=(0,),
        reboot_required=(3010, 1641),
        retryable=(1618,),
    )
