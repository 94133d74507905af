"""Tests for convergence classification, manifests and first start."""

import pytest
from conftest import ok

from fleetdeploy.exceptions import (
    ConvergenceFailure,
    PrerequisiteMissing,
    RemoteCommandError,
    RemoteCommandTimeout,
)
from fleetdeploy.models import ConvergenceOutcome, NodeRole, ResultStatus
from fleetdeploy.services.convergence_service import (
    AGENT_RUN_COMMAND,
    MARKER_CHECK_COMMAND,
    MARKER_WRITE_COMMAND,
    ConvergenceRunner,
)

NOT_INITIALIZED = ok(returncode=1)


@pytest.fixture
def runner(remote, logger):
    return ConvergenceRunner(remote, logger, deploy_root="/opt/todo-app")


@pytest.mark.parametrize(
    "exit_code,detail",
    [(0, "no changes"), (2, "changes applied")],
)
def test_success_exit_codes_are_applied(remote, runner, fleet, exit_code, detail):
    backend = fleet.get(NodeRole.BACKEND)
    remote.on(AGENT_RUN_COMMAND, ok(returncode=exit_code))

    assert runner.run_convergence(backend) == ConvergenceOutcome.APPLIED
    assert runner.details[backend] == detail
    assert backend not in runner.errors


def test_first_run_failure_is_a_warning(remote, runner, fleet):
    frontend = fleet.get(NodeRole.FRONTEND)
    remote.on(MARKER_CHECK_COMMAND, NOT_INITIALIZED)
    remote.on(AGENT_RUN_COMMAND, ok(stderr="Error: dependency cycle", returncode=6))

    outcome = runner.run_convergence(frontend)

    assert outcome == ConvergenceOutcome.APPLIED_WITH_WARNINGS
    assert outcome.proceeds
    assert MARKER_WRITE_COMMAND in remote.commands_for(frontend)


def test_first_run_exit_two_is_a_warning(remote, runner, fleet):
    backend = fleet.get(NodeRole.BACKEND)
    remote.on(MARKER_CHECK_COMMAND, NOT_INITIALIZED)
    remote.on(AGENT_RUN_COMMAND, ok(returncode=2))

    assert runner.run_convergence(backend) == ConvergenceOutcome.APPLIED_WITH_WARNINGS
    assert backend not in runner.errors
    assert MARKER_WRITE_COMMAND in remote.commands_for(backend)


def test_later_run_failure_is_failed(remote, runner, fleet):
    backend = fleet.get(NodeRole.BACKEND)
    remote.on(MARKER_CHECK_COMMAND, ok())
    remote.on(AGENT_RUN_COMMAND, ok(stderr="Error: Could not retrieve catalog", returncode=1))

    outcome = runner.run_convergence(backend)

    assert outcome == ConvergenceOutcome.FAILED
    error = runner.errors[backend]
    assert isinstance(error, ConvergenceFailure)
    assert error.exit_code == 1
    assert "Could not retrieve catalog" in error.context
    assert MARKER_WRITE_COMMAND not in remote.commands_for(backend)


def test_timeout_is_failed(remote, runner, fleet):
    backend = fleet.get(NodeRole.BACKEND)
    remote.on(AGENT_RUN_COMMAND, RemoteCommandTimeout(backend.address, AGENT_RUN_COMMAND, 900))

    assert runner.run_convergence(backend) == ConvergenceOutcome.FAILED
    assert isinstance(runner.errors[backend], RemoteCommandTimeout)


def test_unreachable_node_is_failed(remote, runner, fleet):
    backend = fleet.get(NodeRole.BACKEND)
    remote.on(MARKER_CHECK_COMMAND, ok(returncode=255))

    assert runner.run_convergence(backend) == ConvergenceOutcome.FAILED
    assert remote.count(AGENT_RUN_COMMAND) == 0


class TestPublishManifests:
    def test_uploads_and_installs(self, remote, runner, fleet, tmp_path):
        manifests = tmp_path / "manifests"
        (manifests / "modules" / "todo").mkdir(parents=True)
        (manifests / "site.pp").write_text("node default {}\n")

        runner.publish_manifests(fleet.control, manifests)

        (node, sources, remote_dir), = remote.copies
        assert node == fleet.control
        assert {s.name for s in sources} == {"modules", "site.pp"}
        assert remote_dir == "/tmp/puppet-deploy-manifests"
        assert remote.count("chown -R puppet:puppet") == 1

    def test_missing_directory(self, remote, runner, fleet, tmp_path):
        with pytest.raises(PrerequisiteMissing):
            runner.publish_manifests(fleet.control, tmp_path / "absent")
        assert remote.calls == []

    def test_install_failure(self, remote, runner, fleet, tmp_path):
        (tmp_path / "site.pp").write_text("node default {}\n")
        remote.on("sudo cp", ok(stderr="cp: cannot stat 'site.pp'", returncode=1))

        with pytest.raises(RemoteCommandError) as exc_info:
            runner.publish_manifests(fleet.control, tmp_path)
        assert "cannot stat" in exc_info.value.context


class TestFirstStart:
    def test_frontend_substitutes_placeholders_from_stdin(self, remote, runner, fleet):
        frontend = fleet.get(NodeRole.FRONTEND)

        result = runner.first_start(frontend, "todo-bot", "203.0.113.30")

        assert result.status == ResultStatus.SUCCESS
        (_, command, input_text), = remote.calls
        assert "cd /opt/todo-app/frontend" in command
        assert "${BACKEND_IP}" in command
        assert "docker compose up -d" in command
        assert "todo-bot" not in command
        assert input_text == "todo-bot\n203.0.113.30\n"

    def test_backend_has_no_backend_ip_substitution(self, remote, runner, fleet):
        runner.first_start(fleet.get(NodeRole.BACKEND), "todo-bot", "203.0.113.30")
        (_, command, _), = remote.calls
        assert "${BACKEND_IP}" not in command

    def test_compose_failure(self, remote, runner, fleet):
        remote.on("docker compose", ok(stderr="pull access denied", returncode=1))

        result = runner.first_start(fleet.get(NodeRole.BACKEND), "todo-bot")

        assert result.status == ResultStatus.FAILURE
        assert "pull access denied" in result.error.context
