"""fleetdeploy CLI - deploy-app and pipeline commands"""

import click
from rich.console import Console

from fleetdeploy.base import BaseCommand
from fleetdeploy.constants import ENV_FILE_NAME, REGISTRY_TOKEN_KEY
from fleetdeploy.context import StageContext
from fleetdeploy.orchestrator import DeploymentOrchestrator
from fleetdeploy.services.credential_service import (
    ChainedCredentialSource,
    CredentialSource,
    EnvironmentCredentialSource,
    PromptCredentialSource,
    SecretsManagerCredentialSource,
)


def build_credential_source(
    ctx: StageContext,
    console: Console,
    interactive: bool = True,
    secret_names=(REGISTRY_TOKEN_KEY,),
) -> CredentialSource:
    """
    Environment (plus workspace .env), then Secrets Manager when configured,
    then an interactive prompt.
    """
    sources = [EnvironmentCredentialSource(ctx.workspace / ENV_FILE_NAME)]
    if ctx.config.secrets_manager_id:
        sources.append(
            SecretsManagerCredentialSource(
                ctx.config.secrets_manager_id, region=ctx.config.terraform.region
            )
        )
    if interactive:
        sources.append(PromptCredentialSource(console, secret_names=secret_names))
    return ChainedCredentialSource(sources)


class DeployAppCommand(BaseCommand):
    """Deploy the todo application onto the provisioned fleet."""

    operation = "deploy-app"

    def __init__(self, interactive: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.interactive = interactive

    def execute(self, ctx: StageContext) -> int:
        self.show_header(
            title="Deploy App",
            subtitle="Manifests, credentials, convergence, first start, health",
            details={"Workspace": ctx.workspace},
        )
        orchestrator = DeploymentOrchestrator(
            ctx,
            credential_source=build_credential_source(ctx, self.console, self.interactive),
        )
        return orchestrator.deploy_app().exit_code


class PipelineCommand(BaseCommand):
    """Provision, bootstrap trust, deploy and verify in one run."""

    operation = "pipeline"

    def __init__(self, interactive: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.interactive = interactive

    def execute(self, ctx: StageContext) -> int:
        self.show_header(
            title="Full Pipeline",
            subtitle="provision › bootstrap-trust › deploy-app › verify-status",
            details={"Workspace": ctx.workspace},
        )
        orchestrator = DeploymentOrchestrator(
            ctx,
            credential_source=build_credential_source(ctx, self.console, self.interactive),
        )
        summaries = orchestrator.run_pipeline()
        return max(summary.exit_code for summary in summaries)


@click.command("deploy-app")
@click.option(
    "--no-prompt", is_flag=True, help="Never prompt; read credentials from env/.env/Secrets Manager"
)
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def deploy_app(obj, no_prompt, verbose):
    """
    Deploy the application via Puppet

    \b
    Publishes manifests, distributes registry credentials to the app nodes,
    runs convergence, starts the containers and verifies health.
    """
    DeployAppCommand(interactive=not no_prompt, verbose=verbose, **obj).run()


@click.command("pipeline")
@click.option(
    "--no-prompt", is_flag=True, help="Never prompt; read credentials from env/.env/Secrets Manager"
)
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def pipeline(obj, no_prompt, verbose):
    """Run provision, bootstrap-trust, deploy-app and verify-status"""
    PipelineCommand(interactive=not no_prompt, verbose=verbose, **obj).run()
