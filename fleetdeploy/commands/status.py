"""fleetdeploy CLI - verify-status command"""

import click

from fleetdeploy.base import BaseCommand
from fleetdeploy.context import StageContext
from fleetdeploy.orchestrator import DeploymentOrchestrator


class VerifyStatusCommand(BaseCommand):
    """Probe every node with addresses read fresh from Terraform."""

    operation = "verify-status"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(title="Verify Deployment Status")
        summary = DeploymentOrchestrator(ctx).verify_status()
        if summary.fatal_error is None:
            self.print_success("Verification completed")
        return summary.exit_code


@click.command("verify-status")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def verify_status(obj, verbose):
    """Verify deployment status of every node"""
    VerifyStatusCommand(verbose=verbose, **obj).run()
