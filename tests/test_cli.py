"""CLI wiring tests with click's CliRunner."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from fleetdeploy.commands.menu import MENU_ENTRIES, menu_choices
from fleetdeploy.main import cli
from fleetdeploy.models import NodeResult, ResultStatus, StageSummary


@pytest.fixture
def runner():
    return CliRunner()


def test_help_lists_every_command(runner):
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    for name in (
        "provision",
        "bootstrap-trust",
        "deploy-app",
        "verify-status",
        "pipeline",
        "setup-ci-secrets",
        "local-dev",
        "local-docker",
        "run-tests",
    ):
        assert name in result.output


def test_menu_has_eight_numbered_options():
    choices = menu_choices()

    assert len(choices) == 8
    assert choices[0] == ("1. AWS Infrastructure (Terraform)", "provision")
    assert choices[-1][1] == "run-tests"
    assert {command.name for _, command in MENU_ENTRIES} == {name for _, name in choices}


@patch("fleetdeploy.commands.menu.inquirer.prompt", return_value={"command": "verify-status"})
@patch("fleetdeploy.commands.status.DeploymentOrchestrator")
def test_no_command_opens_menu(mock_orchestrator, mock_prompt, runner, tmp_path):
    mock_orchestrator.return_value.verify_status.return_value = StageSummary(
        stage="verify-status", report_only=True
    )

    result = runner.invoke(cli, ["--workspace", str(tmp_path)])

    assert result.exit_code == 0, result.output
    mock_prompt.assert_called_once()
    mock_orchestrator.return_value.verify_status.assert_called_once()


@patch("fleetdeploy.commands.status.DeploymentOrchestrator")
def test_verify_status_exit_code_follows_summary(mock_orchestrator, runner, tmp_path):
    summary = StageSummary(stage="verify-status", report_only=True)
    summary.fatal_error = RuntimeError("no outputs")
    mock_orchestrator.return_value.verify_status.return_value = summary

    result = runner.invoke(cli, ["--workspace", str(tmp_path), "verify-status"])

    assert result.exit_code == 1


@patch("fleetdeploy.commands.trust.DeploymentOrchestrator")
def test_log_file_written_under_workspace(mock_orchestrator, runner, tmp_path):
    summary = StageSummary(stage="bootstrap-trust")
    mock_orchestrator.return_value.bootstrap_trust.return_value = summary

    result = runner.invoke(cli, ["-w", str(tmp_path), "bootstrap-trust"])

    assert result.exit_code == 0, result.output
    logs = list((tmp_path / "logs" / "fleet").glob("*/*_bootstrap-trust.log"))
    assert len(logs) == 1


@patch("fleetdeploy.commands.deploy.DeploymentOrchestrator")
def test_pipeline_exit_code_is_worst_stage(mock_orchestrator, runner, tmp_path):
    mock_orchestrator.return_value.run_pipeline.return_value = [
        StageSummary(stage="provision"),
        StageSummary(stage="bootstrap-trust"),
        _failed_summary("deploy-app"),
    ]

    result = runner.invoke(cli, ["-w", str(tmp_path), "pipeline", "--no-prompt"])

    assert result.exit_code == 1


def _failed_summary(stage):
    summary = StageSummary(stage=stage)
    summary.add(NodeResult(node="backend", status=ResultStatus.FAILURE))
    return summary
