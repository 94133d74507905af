"""fleetdeploy CLI - local-docker, local-dev and run-tests commands"""

import click

from fleetdeploy.base import BaseCommand
from fleetdeploy.context import StageContext
from fleetdeploy.services.local_service import LocalRunner


class LocalDockerCommand(BaseCommand):
    """Build and run the docker-compose stack locally."""

    scope = "local"
    operation = "local-docker"

    def __init__(self, follow_logs: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.follow_logs = follow_logs

    def execute(self, ctx: StageContext) -> int:
        self.show_header(title="Docker Deployment (Local)")
        healthy = LocalRunner(ctx).docker_run(follow_logs=self.follow_logs)
        return 0 if healthy else 1


class LocalDevCommand(BaseCommand):
    """Run MongoDB, the backend and the frontend dev servers."""

    scope = "local"
    operation = "local-dev"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(title="Development Setup (Local)")
        LocalRunner(ctx).dev_run()
        return 0


class RunTestsCommand(BaseCommand):
    """Run the deployment test script against the local stack."""

    scope = "local"
    operation = "run-tests"

    def execute(self, ctx: StageContext) -> int:
        self.show_header(title="Test Deployment")
        return LocalRunner(ctx).run_tests()


@click.command("local-docker")
@click.option("--no-follow", is_flag=True, help="Do not follow container logs")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def local_docker(obj, no_follow, verbose):
    """Run the application with docker-compose"""
    LocalDockerCommand(follow_logs=not no_follow, verbose=verbose, **obj).run()


@click.command("local-dev")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def local_dev(obj, verbose):
    """Run backend and frontend dev servers"""
    LocalDevCommand(verbose=verbose, **obj).run()


@click.command("run-tests")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.pass_obj
def run_tests(obj, verbose):
    """Run deployment tests against local containers"""
    RunTestsCommand(verbose=verbose, **obj).run()
