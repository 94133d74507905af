"""fleetdeploy CLI - interactive menu"""

import click
import inquirer

from fleetdeploy.commands.deploy import deploy_app
from fleetdeploy.commands.local import local_dev, local_docker, run_tests
from fleetdeploy.commands.provision import provision
from fleetdeploy.commands.secrets import setup_ci_secrets
from fleetdeploy.commands.status import verify_status
from fleetdeploy.commands.trust import bootstrap_trust

MENU_ENTRIES = [
    ("AWS Infrastructure (Terraform)", provision),
    ("Configure Puppet (Sign Certificates & Test Agents)", bootstrap_trust),
    ("Deploy Todo App via Puppet (Frontend + Backend)", deploy_app),
    ("Verify Deployment Status", verify_status),
    ("Setup GitHub Secrets for CI/CD", setup_ci_secrets),
    ("Development Setup (Local)", local_dev),
    ("Docker Deployment (Local)", local_docker),
    ("Test Deployment", run_tests),
]


def menu_choices() -> list[tuple[str, str]]:
    """Numbered (label, command name) pairs."""
    return [
        (f"{number}. {label}", command.name)
        for number, (label, command) in enumerate(MENU_ENTRIES, start=1)
    ]


@click.command("menu")
@click.pass_context
def menu(ctx):
    """Choose a deployment option interactively"""
    questions = [
        inquirer.List(
            "command",
            message="Choose deployment option",
            choices=menu_choices(),
        )
    ]
    answers = inquirer.prompt(questions, raise_keyboard_interrupt=True)
    if not answers:
        raise click.Abort()

    commands = {command.name: command for _, command in MENU_ENTRIES}
    ctx.invoke(commands[answers["command"]])
