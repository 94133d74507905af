"""fleetdeploy CLI - setup-ci-secrets command"""

import click

from fleetdeploy.base import BaseCommand
from fleetdeploy.commands.deploy import build_credential_source
from fleetdeploy.constants import REGISTRY_TOKEN_KEY
from fleetdeploy.context import StageContext
from fleetdeploy.services.github_secrets import GitHubSecretsManager


class SetupCISecretsCommand(BaseCommand):
    """Push the CI/CD secrets to the GitHub repository."""

    scope = "ci"
    operation = "setup-ci-secrets"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(title="Setup GitHub Secrets", subtitle="CI/CD pipeline")

        manager = GitHubSecretsManager(ctx.logger)
        ctx.logger.step("Checking GitHub CLI")
        manager.ensure_cli()
        repo = manager.resolve_repo()
        ctx.logger.success(f"Repository: {repo}")

        ctx.logger.step("Collecting secrets")
        source = build_credential_source(
            ctx,
            self.console,
            secret_names=(REGISTRY_TOKEN_KEY, "AWS_SECRET_ACCESS_KEY"),
        )
        secrets = manager.collect(source, ctx.key_path)

        ctx.logger.step("Setting GitHub secrets")
        success_count, fail_count, skip_count = manager.push(repo, secrets)

        self.console.print(
            f"\n[green]{success_count} set[/green], "
            f"[red]{fail_count} failed[/red], [dim]{skip_count} skipped[/dim]"
        )
        if fail_count == 0:
            self.print_dim("Next: push to GitHub to trigger the CI/CD pipeline")
        return 1 if fail_count else 0


@click.command("setup-ci-secrets")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def setup_ci_secrets(obj, verbose):
    """Set GitHub Actions secrets for CI/CD"""
    SetupCISecretsCommand(verbose=verbose, **obj).run()
