#!/usr/bin/env python3
"""fleetdeploy CLI - Main entry point"""

import functools
import os
import sys
from pathlib import Path

from rich.console import Console

import rich_click as click

HELP_STYLE = {
    "USE_RICH_MARKUP": True,
    "MAX_WIDTH": 100,
    "STYLE_COMMAND": "bold cyan",
    "STYLE_OPTION": "bold magenta",
    "STYLE_SWITCH": "bold green",
    "STYLE_USAGE": "bold yellow",
    "STYLE_HELPTEXT_FIRST_LINE": "bold white",
    "STYLE_OPTIONS_PANEL_BORDER": "cyan",
    "STYLE_COMMANDS_PANEL_BORDER": "cyan",
    "ERRORS_EPILOGUE": "",
}
for _name, _value in HELP_STYLE.items():
    setattr(click.rich_click, _name, _value)

from fleetdeploy import __version__
from fleetdeploy.commands.deploy import deploy_app, pipeline
from fleetdeploy.commands.local import local_dev, local_docker, run_tests
from fleetdeploy.commands.menu import menu
from fleetdeploy.commands.provision import provision
from fleetdeploy.commands.secrets import setup_ci_secrets
from fleetdeploy.commands.status import verify_status
from fleetdeploy.commands.trust import bootstrap_trust

console = Console()


def handle_cli_errors(func):
    """Decorator to handle CLI errors gracefully."""
    from click.exceptions import ClickException

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ClickException as e:
            e.show()
            sys.exit(e.exit_code)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")
            sys.exit(130)
        except Exception as e:
            console.print(f"\n[bold red]✗ Unexpected error:[/bold red] {e}\n")

            if os.environ.get("DEBUG") or os.environ.get("VERBOSE"):
                import traceback

                console.print("[dim]Traceback:[/dim]")
                traceback.print_exc()
            sys.exit(1)

    return wrapper


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="FLEETDEPLOY_WORKSPACE",
    help="Workspace root (terraform/, key file, fleet.yml)",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (defaults to <workspace>/fleet.yml)",
)
@click.pass_context
def cli(ctx: click.Context, workspace, config_file) -> None:
    """
    fleetdeploy - Provision, trust, deploy and verify the todo app fleet.

    \b
    Stages:
      fleetdeploy provision         # Terraform infrastructure
      fleetdeploy bootstrap-trust   # Sign Puppet certificates
      fleetdeploy deploy-app        # Credentials, convergence, first start
      fleetdeploy verify-status     # Health of every node
      fleetdeploy pipeline          # All four in order

    \b
    Local:
      fleetdeploy local-docker      # docker-compose stack
      fleetdeploy local-dev         # Dev servers
      fleetdeploy run-tests         # Deployment tests

    Run without a command for the interactive menu.
    """
    ctx.obj = {
        "workspace": workspace.resolve() if workspace else None,
        "config_file": config_file,
    }
    if ctx.invoked_subcommand is None:
        ctx.invoke(menu)


for command in (
    provision,
    bootstrap_trust,
    deploy_app,
    verify_status,
    pipeline,
    setup_ci_secrets,
    local_dev,
    local_docker,
    run_tests,
    menu,
):
    cli.add_command(command)


@handle_cli_errors
def main():
    """Main entry point with error handling."""
    cli()


if __name__ == "__main__":
    main()
