"""fleetdeploy CLI - bootstrap-trust command"""

import click

from fleetdeploy.base import BaseCommand
from fleetdeploy.context import StageContext
from fleetdeploy.orchestrator import DeploymentOrchestrator


class BootstrapTrustCommand(BaseCommand):
    """Sign agent certificates on the Puppet server and test every agent."""

    operation = "bootstrap-trust"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(
            title="Bootstrap Trust",
            subtitle="Sign certificates & test agents",
            details={"Settle delay": f"{ctx.config.timing.trust_settle:.0f}s"},
        )
        summary = DeploymentOrchestrator(ctx).bootstrap_trust()
        if summary.warnings:
            self.print_dim(
                "Unsigned nodes need manual signing: "
                "sudo /opt/puppetlabs/bin/puppetserver ca sign --all"
            )
        return summary.exit_code


@click.command("bootstrap-trust")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def bootstrap_trust(obj, verbose):
    """Sign Puppet certificates and test agents"""
    BootstrapTrustCommand(verbose=verbose, **obj).run()
