"""CLI entrypoint for autosetup."""

import logging
import sys

import rich_click as click

from autosetup import __version__
from autosetup.controllers import (
    CLASSIFY_TOOLS,
    ClassifyCommand,
    SetupCliController,
    SetupRunCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SetupCliController(echo=click.echo)


class ConfigurationError(click.ClickException):
    """Invalid ``AUTOSETUP_*`` configuration."""

    exit_code = 2


@click.group()
@click.version_option(version=__version__, prog_name="autosetup")
def autosetup() -> None:
    """Post-imaging workstation setup.

    Runs policy refresh, management-agent actions, vendor driver updates and a
    compliance check, resuming an interrupted run when one is found.
    """


@autosetup.command("run")
@click.option("--skip-policy", is_flag=True, help="Do not run the Group Policy update.")
@click.option("--skip-agent-actions", is_flag=True, help="Do not trigger management-agent actions.")
@click.option("--skip-driver-update", is_flag=True, help="Do not scan for or apply driver updates.")
@click.option("--skip-compliance", is_flag=True, help="Do not run compliance checks.")
@click.option(
    "--no-relaunch",
    is_flag=True,
    help="Keep running from the launch location even when it is a network share.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def run(  # noqa: PLR0913
    skip_policy: bool,
    skip_agent_actions: bool,
    skip_driver_update: bool,
    skip_compliance: bool,
    no_relaunch: bool,
    log_level: str,
) -> None:
    """Run the setup pipeline."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = CONTROLLER.run(
            SetupRunCommand(
                argv=tuple(sys.argv[1:]),
                skip_policy=skip_policy,
                skip_agent_actions=skip_agent_actions,
                skip_driver_update=skip_driver_update,
                skip_compliance=skip_compliance,
                no_relaunch=no_relaunch,
            ),
        )
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Setup finished with errors.")


@autosetup.group()
def state() -> None:
    """Saved execution state commands."""


@state.command("show")
def state_show() -> None:
    """Print the saved execution state."""

    try:
        lines = CONTROLLER.show_state()
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    _emit_lines(lines)


@state.command("clear")
def state_clear() -> None:
    """Delete the saved execution state so the next run starts fresh."""

    try:
        lines = CONTROLLER.clear_state()
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    _emit_lines(lines)


@autosetup.command("classify")
@click.option(
    "--tool",
    type=click.Choice(list(CLASSIFY_TOOLS), case_sensitive=False),
    required=True,
    help="Exit-code table to use.",
)
@click.argument("code", type=int)
def classify(tool: str, code: int) -> None:
    """Show how an exit CODE of a wrapped tool is classified."""

    try:
        lines = CONTROLLER.classify(ClassifyCommand(tool=tool.lower(), code=code))
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autosetup()
