"""fleetdeploy CLI - provision command"""

import click

from fleetdeploy.base import BaseCommand
from fleetdeploy.constants import PROVISION_TOOLS
from fleetdeploy.context import StageContext
from fleetdeploy.exceptions import PrerequisiteMissing
from fleetdeploy.orchestrator import DeploymentOrchestrator
from fleetdeploy.utils import check_tool


class ProvisionCommand(BaseCommand):
    """Create or update the AWS infrastructure with Terraform."""

    operation = "provision"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(
            title="Provision Infrastructure",
            subtitle="Terraform + S3/DynamoDB state backend",
            details={"Terraform": ctx.config.terraform_dir},
        )

        for tool in PROVISION_TOOLS:
            if not check_tool(tool):
                raise PrerequisiteMissing(f"{tool} is not installed")

        summary = DeploymentOrchestrator(ctx).provision()
        if summary.exit_code == 0:
            self.print_success("Infrastructure ready")
            self.print_dim("Next: fleetdeploy bootstrap-trust")
        return summary.exit_code


@click.command("provision")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def provision(obj, verbose):
    """
    Provision infrastructure with Terraform

    \b
    Creates the state backend (S3 + DynamoDB) on first use, then runs
    init, validate, plan and apply. State lock conflicts are retried.
    """
    ProvisionCommand(verbose=verbose, **obj).run()
