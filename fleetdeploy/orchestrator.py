"""
Deployment orchestrator

Sequences the fleet stages: provision, bootstrap-trust, deploy-app and
verify-status. Stages run one after another; per-node work inside a stage
runs on a bounded worker pool and is attributed to its node. Stage-scoped
errors (provisioner, missing prerequisites) abort the stage and the
pipeline; node-scoped errors never abort sibling nodes.
"""

from typing import Callable, Optional

from rich.markup import escape
from rich.table import Table

from fleetdeploy.constants import REGISTRY_USERNAME_KEY
from fleetdeploy.context import StageContext
from fleetdeploy.exceptions import (
    FleetDeployError,
    HealthCheckFailure,
    OperationCancelled,
    TrustError,
)
from fleetdeploy.models.fleet import (
    CertificateState,
    ConvergenceOutcome,
    DeploymentSession,
    Fleet,
    Node,
    NodeRole,
)
from fleetdeploy.models.results import NodeResult, ResultStatus, StageSummary
from fleetdeploy.services.convergence_service import ConvergenceRunner
from fleetdeploy.services.credential_service import (
    CredentialDistributor,
    CredentialSource,
    PromptCredentialSource,
)
from fleetdeploy.services.health_service import HealthVerifier
from fleetdeploy.services.ssh_service import RemoteExecutor, prepare_key
from fleetdeploy.services.trust_service import TrustBootstrapper
from fleetdeploy.terraform_utils import InfrastructureProvisioner
from fleetdeploy.utils import run_per_node

STATUS_STYLES = {
    ResultStatus.SUCCESS: "[green]✓ pass[/green]",
    ResultStatus.WARNING: "[yellow]⚠ warn[/yellow]",
    ResultStatus.FAILURE: "[red]✗ fail[/red]",
    ResultStatus.SKIPPED: "[dim]- skip[/dim]",
}

STATUS_RANK = {
    ResultStatus.SKIPPED: 0,
    ResultStatus.SUCCESS: 1,
    ResultStatus.WARNING: 2,
    ResultStatus.FAILURE: 3,
}

CONTAINER_STATUS_COMMAND = (
    "docker ps --format 'table {{.Names}}\\t{{.Status}}\\t{{.Ports}}'"
)
CONTROL_STATUS_COMMAND = "sudo systemctl is-active puppetserver"


class DeploymentOrchestrator:
    """Runs deployment stages against the fleet described by the provisioner."""

    def __init__(
        self,
        ctx: StageContext,
        credential_source: Optional[CredentialSource] = None,
        remote: Optional[RemoteExecutor] = None,
        provisioner: Optional[InfrastructureProvisioner] = None,
        trust: Optional[TrustBootstrapper] = None,
        distributor: Optional[CredentialDistributor] = None,
        convergence: Optional[ConvergenceRunner] = None,
        health: Optional[HealthVerifier] = None,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.console = ctx.logger.console
        config = ctx.config

        self.credential_source = credential_source or PromptCredentialSource(self.console)
        self.remote = remote or RemoteExecutor(
            logger=self.logger,
            cancel_token=ctx.cancel_token,
            connect_timeout=config.ssh.connect_timeout,
            default_timeout=config.ssh.command_timeout,
        )
        self.provisioner = provisioner or InfrastructureProvisioner(
            config, self.logger, sleep=ctx.sleep
        )
        self.trust = trust or TrustBootstrapper(
            self.remote,
            self.logger,
            settle_delay=config.timing.trust_settle,
            sleep=ctx.sleep,
            max_workers=config.max_workers,
            agent_timeout=config.timing.convergence_timeout,
        )
        self.distributor = distributor or CredentialDistributor(
            self.remote, self.logger, deploy_root=config.deploy_root, sleep=ctx.sleep
        )
        self.convergence = convergence or ConvergenceRunner(
            self.remote,
            self.logger,
            deploy_root=config.deploy_root,
            timeout=config.timing.convergence_timeout,
        )
        self.health = health or HealthVerifier(
            self.logger,
            timeout=config.timing.health_timeout,
            sleep=ctx.sleep,
            max_workers=config.max_workers,
        )
        self.session = DeploymentSession()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_stage(
        self,
        name: str,
        body: Callable[[StageSummary], None],
        report_only: bool = False,
    ) -> StageSummary:
        summary = StageSummary(stage=name, report_only=report_only)
        self.session.enter(name)
        self.logger.log(f"Stage started: {name}")

        try:
            body(summary)
        except OperationCancelled:
            raise
        except FleetDeployError as e:
            summary.fatal_error = e
            self.logger.log_error(e.message, context=e.context)

        summary.finish()
        self.print_summary(summary)
        return summary

    def _resolve_fleet(self) -> Fleet:
        """Fresh node addresses from the provisioner (no cached session state)."""
        outputs = self.provisioner.read_outputs()
        return outputs.to_fleet(self.ctx.config.ssh_credential())

    def _update(
        self,
        summary: StageSummary,
        node: Node,
        status: ResultStatus,
        message: str,
        error: Optional[Exception] = None,
    ) -> None:
        """Merge a step result into the node's row; the worst status wins."""
        current = summary.result_for(node)
        if current is not None:
            if current.is_failure:
                return
            message = f"{current.message}; {message}"
            if STATUS_RANK[current.status] > STATUS_RANK[status]:
                status = current.status
            error = error or current.error
        summary.add(NodeResult(node=node, status=status, message=message, error=error))

    def print_summary(self, summary: StageSummary) -> None:
        """Per-node pass/fail table for a finished stage."""
        table = Table(
            title=f"{summary.stage} summary",
            title_justify="left",
            padding=(0, 1),
        )
        table.add_column("Node", style="cyan", no_wrap=True)
        table.add_column("Address", style="dim")
        table.add_column("Result")
        table.add_column("Details", style="dim")

        for result in summary.results:
            node = result.node
            table.add_row(
                node.name,
                node.address,
                STATUS_STYLES[result.status],
                escape(self.logger.mask(result.message)),
            )

        self.console.print()
        if summary.results:
            self.console.print(table)

        if summary.fatal_error is not None:
            self.console.print(f"[red]{summary.stage} aborted[/red]")
        failures = len(summary.failures)
        warnings = len(summary.warnings)
        color = "red" if failures else "yellow" if warnings else "green"
        self.console.print(
            f"[{color}]{failures} failure(s), {warnings} warning(s)[/{color}]"
        )
        self.logger.log(
            f"Stage finished: {summary.stage} ({failures} failures, "
            f"{warnings} warnings, exit {summary.exit_code})"
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def provision(self) -> StageSummary:
        """Create or update the infrastructure and report node addresses."""

        def body(summary: StageSummary) -> None:
            self.logger.step("Provisioning infrastructure")
            outputs = self.provisioner.provision()
            fleet = outputs.to_fleet(self.ctx.config.ssh_credential())
            for node in fleet:
                summary.add(NodeResult(node, ResultStatus.SUCCESS, "provisioned"))

        return self._run_stage("provision", body)

    def bootstrap_trust(self) -> StageSummary:
        """Sign certificates for every node; unsigned nodes are degraded."""

        def body(summary: StageSummary) -> None:
            fleet = self._resolve_fleet()
            prepare_key(self.ctx.key_path)

            self.logger.step("Bootstrapping certificate trust")
            report = self.trust.bootstrap(fleet)
            errors = report.errors()
            self.logger.success(f"{report.sign_rounds} sign round(s) issued")

            for node in fleet:
                state = report.states[node]
                detail = report.details.get(node, "")
                if node in errors:
                    self.logger.warning(errors[node].message)
                    summary.add(
                        NodeResult(
                            node, ResultStatus.WARNING,
                            f"certificate {state.value}: {detail}".rstrip(": "),
                            errors[node],
                        )
                    )
                else:
                    summary.add(NodeResult(node, ResultStatus.SUCCESS, f"signed, {detail}"))

            for node in fleet.agents:
                self.logger.log(
                    f"[{node.name}] managed files:\n{self.trust.managed_files(node)}"
                )

        return self._run_stage("bootstrap-trust", body)

    def deploy_app(self) -> StageSummary:
        """
        Publish manifests, distribute credentials, converge, first-start and
        verify the application.
        """

        def body(summary: StageSummary) -> None:
            config = self.ctx.config
            fleet = self._resolve_fleet()
            prepare_key(self.ctx.key_path)
            backend = fleet.get(NodeRole.BACKEND)

            # Local prerequisites first; nothing below may run without them
            self.convergence.manifest_sources(config.manifests_path)
            self.logger.step("Collecting registry credentials")
            secrets = self.credential_source.registry_secrets()
            self.logger.register_secrets(s.value for s in secrets)
            registry_username = next(
                s.value for s in secrets if s.name == REGISTRY_USERNAME_KEY
            )

            self.logger.step("Publishing Puppet manifests")
            self.convergence.publish_manifests(fleet.control, config.manifests_path)
            self.logger.success("Puppet manifests installed")

            self.logger.step("Checking certificate trust")
            states = self.trust.observe(fleet)
            signed = []
            for node in fleet:
                if states[node] == CertificateState.SIGNED:
                    signed.append(node)
                else:
                    error = TrustError(node.name, states[node].value)
                    self.logger.warning(error.message)
                    self._update(
                        summary, node, ResultStatus.FAILURE,
                        f"not trusted (certificate {states[node].value})", error,
                    )

            self.ctx.cancel_token.raise_if_cancelled()
            self.logger.step("Distributing registry credentials")
            app_nodes = [n for n in signed if n.role.hosts_application]

            def distribute(node: Node) -> NodeResult:
                env = {"BACKEND_IP": backend.address} if node.role == NodeRole.FRONTEND else None
                return self.distributor.distribute(node, secrets, env)

            ready = [n for n in signed if not n.role.hosts_application]
            for node, result, error in run_per_node(app_nodes, distribute, config.max_workers):
                if error is not None:
                    self.logger.warning(f"[{node.name}] {error}")
                    self._update(summary, node, ResultStatus.FAILURE, "credentials not distributed", error)
                else:
                    self.logger.success(f"[{node.name}] credentials distributed")
                    ready.append(node)

            self.ctx.cancel_token.raise_if_cancelled()
            self.logger.step("Running convergence")
            converged = []
            for node, outcome, error in run_per_node(
                ready, self.convergence.run_convergence, config.max_workers
            ):
                if error is not None:
                    outcome = ConvergenceOutcome.FAILED
                    self.convergence.errors.setdefault(node, error)
                self.session.record(node, outcome)
                detail = self.convergence.details.get(node, str(error or ""))
                if outcome == ConvergenceOutcome.APPLIED:
                    self._update(summary, node, ResultStatus.SUCCESS, detail)
                elif outcome == ConvergenceOutcome.APPLIED_WITH_WARNINGS:
                    self._update(summary, node, ResultStatus.WARNING, detail)
                else:
                    self._update(
                        summary, node, ResultStatus.FAILURE, detail,
                        self.convergence.errors.get(node),
                    )
                if outcome.proceeds:
                    converged.append(node)

            self.ctx.cancel_token.raise_if_cancelled()
            self.logger.step("Starting application containers")
            to_start = [n for n in converged if n.role.hosts_application]
            for node, result, error in run_per_node(
                to_start,
                lambda n: self.convergence.first_start(n, registry_username, backend.address),
                config.max_workers,
            ):
                result = result or NodeResult(node, ResultStatus.FAILURE, str(error), error)
                self._update(summary, node, result.status, result.message, result.error)

            started = [n for n in converged if not summary.result_for(n).is_failure]
            if not started:
                return

            self.ctx.settle(config.timing.health_settle, "waiting for services to start")
            self.logger.step("Verifying deployment")
            for report in self.health.verify_all(
                started,
                attempts=config.timing.health_attempts,
                delay=config.timing.health_retry_delay,
            ):
                if report.is_up:
                    self._update(summary, report.node, ResultStatus.SUCCESS, "service up")
                else:
                    error = HealthCheckFailure(
                        report.node.name, report.service_status.value, report.detail
                    )
                    self.logger.warning(error.message)
                    self._update(
                        summary, report.node, ResultStatus.WARNING,
                        f"service {report.service_status.value}", error,
                    )

            self.print_urls(fleet)

        return self._run_stage("deploy-app", body)

    def verify_status(self) -> StageSummary:
        """
        Probe every node with addresses re-derived from the provisioner.

        Always completes; exit code is 0 whenever a report was produced.
        """

        def body(summary: StageSummary) -> None:
            fleet = self._resolve_fleet()

            self.logger.step("Checking services")
            for report in self.health.verify_all(fleet, attempts=1):
                if report.is_up:
                    summary.add(NodeResult(report.node, ResultStatus.SUCCESS, report.detail))
                else:
                    error = HealthCheckFailure(
                        report.node.name, report.service_status.value, report.detail
                    )
                    summary.add(
                        NodeResult(
                            report.node, ResultStatus.FAILURE,
                            f"{report.service_status.value}: {report.detail}", error,
                        )
                    )

            self.inspect_nodes(fleet)
            self.print_urls(fleet)

        return self._run_stage("verify-status", body, report_only=True)

    def inspect_nodes(self, fleet: Fleet) -> None:
        """Container and puppetserver status over SSH (skipped without a key)."""
        if not self.ctx.key_path.is_file():
            self.logger.warning(
                f"SSH key not found at {self.ctx.key_path}, skipping container check"
            )
            return

        prepare_key(self.ctx.key_path)
        self.logger.step("Checking containers")

        def inspect(node: Node) -> str:
            command = (
                CONTROL_STATUS_COMMAND if node.role == NodeRole.CONTROL
                else CONTAINER_STATUS_COMMAND
            )
            result = self.remote.execute(node, command)
            if result.is_failure:
                return f"Could not connect to {node.name}"
            return result.stdout.strip()

        for node, output, error in run_per_node(fleet, inspect, self.ctx.config.max_workers):
            self.console.print(f"\n[cyan]{node.name}[/cyan] [dim]({node.address})[/dim]")
            text = output if error is None else f"Could not connect to {node.name}"
            self.console.print(text, markup=False)

    def print_urls(self, fleet: Fleet) -> None:
        frontend = fleet.get(NodeRole.FRONTEND).address
        backend = fleet.get(NodeRole.BACKEND).address
        self.console.print(
            "\n[bold]Application URLs[/bold]\n"
            f"  Frontend:      http://{frontend}:3000\n"
            f"  Backend API:   http://{backend}:8080/api/todos\n"
            f"  Backend Health: http://{backend}:8080/api/health\n"
            f"  Puppet Server: https://{fleet.control.address}:8140"
        )

    def run_pipeline(self) -> list[StageSummary]:
        """
        All four stages in order; stops after a fatal stage error.

        Returns:
            The summaries of the stages that ran
        """
        summaries = []
        for stage in (self.provision, self.bootstrap_trust, self.deploy_app, self.verify_status):
            summary = stage()
            summaries.append(summary)
            if summary.fatal_error is not None:
                self.logger.log_error(
                    f"Pipeline halted at {summary.stage}",
                    context="Downstream stages have no valid input",
                )
                break
        return summaries
