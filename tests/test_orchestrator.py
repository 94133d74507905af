"""End-to-end stage tests with fake SSH, provisioner and HTTP."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from conftest import BACKEND_IP, CONTROL_IP, FRONTEND_IP, ok

from fleetdeploy.constants import REGISTRY_TOKEN_KEY, REGISTRY_USERNAME_KEY
from fleetdeploy.exceptions import OperationCancelled, PrerequisiteMissing, ProvisionError
from fleetdeploy.models import (
    CertificateState,
    ConvergenceOutcome,
    NodeRole,
    ProvisionerOutputs,
    ResultStatus,
)
from fleetdeploy.orchestrator import DeploymentOrchestrator
from fleetdeploy.services.convergence_service import (
    AGENT_RUN_COMMAND,
    MARKER_CHECK_COMMAND,
    MARKER_WRITE_COMMAND,
)
from fleetdeploy.services.credential_service import EnvironmentCredentialSource
from fleetdeploy.services.trust_service import CA_LIST_COMMAND, CERTNAME_COMMAND

TOKEN = "dckr_pat_never-print-me"

CA_LIST_SIGNED = """Signed Certificates:
    control.internal   (SHA256)  9F:00
    frontend.internal  (SHA256)  1B:2C
    backend.internal   (SHA256)  4E:5F
"""


def outputs():
    return ProvisionerOutputs(
        control_node_address=CONTROL_IP,
        frontend_address=FRONTEND_IP,
        backend_address=BACKEND_IP,
    )


@pytest.fixture
def provisioner():
    mock = MagicMock()
    mock.read_outputs.return_value = outputs()
    mock.provision.return_value = outputs()
    return mock


@pytest.fixture
def manifests(config):
    path = config.manifests_path
    path.mkdir(parents=True)
    (path / "site.pp").write_text("node default {}\n")
    return path


@pytest.fixture
def orchestrator(ctx, remote, provisioner):
    source = EnvironmentCredentialSource(
        environ={REGISTRY_USERNAME_KEY: "todo-bot", REGISTRY_TOKEN_KEY: TOKEN}
    )
    return DeploymentOrchestrator(
        ctx, credential_source=source, remote=remote, provisioner=provisioner
    )


def signed_fleet(remote):
    remote.on(CA_LIST_COMMAND, ok(CA_LIST_SIGNED))
    remote.on(CERTNAME_COMMAND, lambda node, command: ok(f"{node.name}.internal"))


def up(*args, **kwargs):
    response = MagicMock()
    response.status_code = 200
    response.text = '{"status": "UP"}'
    return response


class TestProvision:
    def test_reports_every_node(self, orchestrator):
        summary = orchestrator.provision()

        assert summary.exit_code == 0
        assert [r.node.address for r in summary.results] == [CONTROL_IP, FRONTEND_IP, BACKEND_IP]

    def test_failure_is_fatal(self, orchestrator, provisioner):
        provisioner.provision.side_effect = ProvisionError("Terraform command failed: terraform apply")

        summary = orchestrator.provision()

        assert summary.exit_code == 1
        assert isinstance(summary.fatal_error, ProvisionError)


class TestDeployApp:
    def test_provisioner_failure_makes_no_remote_calls(self, orchestrator, provisioner, remote, manifests):
        provisioner.read_outputs.side_effect = ProvisionError("Terraform directory not found")

        summary = orchestrator.deploy_app()

        assert summary.exit_code == 1
        assert remote.calls == []
        assert remote.copies == []

    def test_incomplete_outputs_are_fatal(self, orchestrator, provisioner, remote, manifests):
        provisioner.read_outputs.return_value = ProvisionerOutputs(control_node_address=CONTROL_IP)

        summary = orchestrator.deploy_app()

        assert summary.exit_code == 1
        assert "frontend" in summary.fatal_error.context
        assert remote.calls == []

    def test_missing_credentials_fail_before_any_remote_call(self, ctx, remote, provisioner, manifests):
        orchestrator = DeploymentOrchestrator(
            ctx,
            credential_source=EnvironmentCredentialSource(environ={}),
            remote=remote,
            provisioner=provisioner,
        )

        summary = orchestrator.deploy_app()

        assert isinstance(summary.fatal_error, PrerequisiteMissing)
        assert summary.exit_code == 1
        assert remote.calls == []
        assert remote.copies == []

    def test_missing_manifests_fail_before_any_remote_call(self, orchestrator, remote):
        summary = orchestrator.deploy_app()

        assert isinstance(summary.fatal_error, PrerequisiteMissing)
        assert remote.calls == []
        assert remote.copies == []

    @patch("fleetdeploy.services.health_service.requests.get", side_effect=up)
    def test_first_run_warnings_still_verify(self, mock_get, orchestrator, remote, manifests, output):
        signed_fleet(remote)
        remote.on(MARKER_CHECK_COMMAND, ok(returncode=1))
        remote.on(AGENT_RUN_COMMAND, ok(returncode=1))

        summary = orchestrator.deploy_app()

        assert summary.fatal_error is None
        assert summary.exit_code == 0
        assert {r.status for r in summary.results} == {ResultStatus.WARNING}
        assert set(orchestrator.session.per_node_result.values()) == {
            ConvergenceOutcome.APPLIED_WITH_WARNINGS
        }
        # First runs are tracked on the nodes, not in the session
        assert remote.count(MARKER_WRITE_COMMAND) == 3
        assert mock_get.call_count == 3
        assert TOKEN not in output.getvalue()

    @patch("fleetdeploy.services.health_service.requests.get", side_effect=up)
    def test_untrusted_node_is_skipped(self, mock_get, orchestrator, remote, manifests, fleet):
        remote.on(CA_LIST_COMMAND, ok(CA_LIST_SIGNED.replace("    backend.internal   (SHA256)  4E:5F\n", "")))
        remote.on(CERTNAME_COMMAND, lambda node, command: ok(f"{node.name}.internal"))

        summary = orchestrator.deploy_app()

        backend = fleet.get(NodeRole.BACKEND)
        result = summary.result_for(backend)
        assert result.status == ResultStatus.FAILURE
        assert result.error.state == CertificateState.REQUESTED.value
        assert remote.commands_for(backend) == [CERTNAME_COMMAND]
        assert summary.result_for(fleet.get(NodeRole.FRONTEND)).status == ResultStatus.SUCCESS
        assert summary.exit_code == 1

    @patch("fleetdeploy.services.health_service.requests.get", side_effect=up)
    def test_distribution_failure_skips_convergence(self, mock_get, orchestrator, remote, manifests, fleet):
        signed_fleet(remote)
        remote.on("docker login", ok(stderr="unauthorized: incorrect username or password", returncode=1))

        summary = orchestrator.deploy_app()

        frontend = fleet.get(NodeRole.FRONTEND)
        assert summary.result_for(frontend).status == ResultStatus.FAILURE
        assert AGENT_RUN_COMMAND not in remote.commands_for(frontend)
        assert AGENT_RUN_COMMAND in remote.commands_for(fleet.control)

    def test_cancellation_propagates(self, orchestrator, ctx, remote, manifests):
        signed_fleet(remote)
        ctx.cancel_token.cancel()

        with pytest.raises(OperationCancelled):
            orchestrator.deploy_app()


class TestVerifyStatus:
    @patch(
        "fleetdeploy.services.health_service.requests.get",
        side_effect=requests.exceptions.ConnectionError(),
    )
    def test_stale_addresses_report_down_and_exit_zero(self, mock_get, orchestrator, output):
        summary = orchestrator.verify_status()

        assert summary.exit_code == 0
        assert len(summary.failures) == 3
        assert all("down" in r.message for r in summary.results)
        assert "3 failure(s)" in output.getvalue()

    def test_missing_outputs_is_fatal(self, orchestrator, provisioner):
        provisioner.read_outputs.side_effect = ProvisionError("Terraform directory not found")

        summary = orchestrator.verify_status()

        assert summary.exit_code == 1

    @patch("fleetdeploy.services.health_service.requests.get", side_effect=up)
    def test_all_up(self, mock_get, orchestrator, remote):
        summary = orchestrator.verify_status()

        assert summary.failures == []
        assert remote.count("docker ps") == 2
