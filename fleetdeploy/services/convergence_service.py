"""
Puppet convergence on fleet nodes.

First run is tracked with an explicit marker file on each node. On a node's
first run a non-zero agent exit is expected (certificates, ordering) and is
downgraded to a warning; afterwards it is a failure.
"""

import shlex
import threading
from pathlib import Path
from typing import Dict, Optional

from fleetdeploy.constants import (
    COMPOSE_FILE_NAME,
    CONVERGENCE_SUCCESS_EXIT_CODES,
    CONVERGENCE_TIMEOUT,
    DEPLOY_ROOT,
    FIRST_START_TIMEOUT,
    MANIFEST_STAGING_DIR,
    NODE_INITIALIZED_MARKER,
    NODE_STATE_DIR,
    PUPPET_CMD,
    PUPPET_ENVIRONMENT_DIR,
    PUPPET_MANIFESTS_DIR,
    PUPPET_MODULES_DIR,
)
from fleetdeploy.exceptions import (
    ConvergenceFailure,
    PrerequisiteMissing,
    RemoteCommandError,
)
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import ConvergenceOutcome, Node, NodeRole
from fleetdeploy.models.results import NodeResult, ResultStatus
from fleetdeploy.services.ssh_service import RemoteExecutor

# --test implies --detailed-exitcodes
AGENT_RUN_COMMAND = f"sudo {PUPPET_CMD} agent --test"
MARKER_CHECK_COMMAND = f"test -f {NODE_INITIALIZED_MARKER}"
MARKER_WRITE_COMMAND = (
    f"sudo mkdir -p {NODE_STATE_DIR} && sudo touch {NODE_INITIALIZED_MARKER}"
)


def _tail(text: str, lines: int = 3) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


class ConvergenceRunner:
    """Runs the configuration agent and starts the workload on app nodes."""

    def __init__(
        self,
        remote: RemoteExecutor,
        logger: Optional[DeployLogger] = None,
        deploy_root: str = DEPLOY_ROOT,
        timeout: float = CONVERGENCE_TIMEOUT,
        first_start_timeout: float = FIRST_START_TIMEOUT,
    ):
        self.remote = remote
        self.logger = logger
        self.deploy_root = deploy_root
        self.timeout = timeout
        self.first_start_timeout = first_start_timeout
        self.details: Dict[Node, str] = {}
        self.errors: Dict[Node, Exception] = {}
        self._lock = threading.Lock()

    def _record(self, node: Node, detail: str, error: Optional[Exception] = None) -> None:
        with self._lock:
            self.details[node] = detail
            if error is not None:
                self.errors[node] = error
            else:
                self.errors.pop(node, None)

    def _warn(self, message: str) -> None:
        if self.logger:
            self.logger.log(message, "WARNING")

    @staticmethod
    def manifest_sources(manifests_path: Path) -> list[Path]:
        """
        Local manifest files to publish. Touches no node.

        Raises:
            PrerequisiteMissing: If the directory is missing or empty
        """
        if not manifests_path.is_dir():
            raise PrerequisiteMissing(
                f"Puppet manifests not found at {manifests_path}",
                context="Set manifests_dir in fleet.yml",
            )
        sources = sorted(manifests_path.iterdir())
        if not sources:
            raise PrerequisiteMissing(f"No Puppet manifests in {manifests_path}")
        return sources

    def publish_manifests(self, control: Node, manifests_path: Path) -> None:
        """
        Upload Puppet manifests and install site.pp on the control node.

        Raises:
            PrerequisiteMissing: If the local manifests directory is empty or missing
            RemoteCommandError: If upload or install failed
        """
        sources = self.manifest_sources(manifests_path)

        staging = MANIFEST_STAGING_DIR
        steps = [
            ("stage", lambda: self.remote.execute(control, f"mkdir -p {staging}")),
            ("upload", lambda: self.remote.copy(control, sources, staging)),
            (
                "install",
                lambda: self.remote.execute(
                    control,
                    f"sudo cp {staging}/site.pp {PUPPET_MANIFESTS_DIR}/ && "
                    f"sudo mkdir -p {PUPPET_MODULES_DIR} && "
                    f"if [ -d {staging}/modules ]; then "
                    f"sudo cp -r {staging}/modules/. {PUPPET_MODULES_DIR}/; fi && "
                    f"sudo chown -R puppet:puppet {PUPPET_ENVIRONMENT_DIR}",
                ),
            ),
        ]
        for name, step in steps:
            result = step()
            if result.is_failure:
                raise RemoteCommandError(
                    control.address, f"manifest {name}", _tail(result.output) or "failed"
                )

    def is_initialized(self, node: Node) -> bool:
        """
        Whether the node already completed a convergence run.

        Raises:
            RemoteCommandError: If the node could not be reached
        """
        result = self.remote.execute(node, MARKER_CHECK_COMMAND)
        if result.is_unreachable:
            raise RemoteCommandError(node.address, MARKER_CHECK_COMMAND, "unreachable")
        return result.is_success

    def mark_initialized(self, node: Node) -> None:
        result = self.remote.execute(node, MARKER_WRITE_COMMAND)
        if result.is_failure:
            self._warn(f"[{node.name}] could not write first-run marker")

    def run_convergence(self, node: Node) -> ConvergenceOutcome:
        """
        Run the agent once on a node and classify the outcome.

        Exit 0 -> Applied. On the node's first run any other exit is
        AppliedWithWarnings, exit 2 included. Afterwards exit 2 (changes
        applied) is Applied and anything else is Failed. Unreachable or timed
        out -> Failed.
        Details and errors are kept per node in `details` / `errors`.
        """
        try:
            first_run = not self.is_initialized(node)
            result = self.remote.execute(node, AGENT_RUN_COMMAND, timeout=self.timeout)
        except RemoteCommandError as e:
            self._record(node, e.message, e)
            return ConvergenceOutcome.FAILED

        if result.is_unreachable:
            error = RemoteCommandError(node.address, AGENT_RUN_COMMAND, "unreachable")
            self._record(node, "unreachable", error)
            return ConvergenceOutcome.FAILED

        if result.returncode == 0:
            outcome = ConvergenceOutcome.APPLIED
            self._record(node, "no changes")
        elif first_run:
            outcome = ConvergenceOutcome.APPLIED_WITH_WARNINGS
            self._warn(
                f"[{node.name}] agent exited {result.returncode} on first run "
                "(warnings are normal)"
            )
            self._record(node, f"first run, agent exit {result.returncode}")
        elif result.returncode in CONVERGENCE_SUCCESS_EXIT_CODES:
            outcome = ConvergenceOutcome.APPLIED
            self._record(node, "changes applied")
        else:
            error = ConvergenceFailure(node.name, result.returncode, _tail(result.output))
            self._record(node, f"agent exit {result.returncode}", error)
            return ConvergenceOutcome.FAILED

        if first_run:
            self.mark_initialized(node)
        return outcome

    def first_start(
        self,
        node: Node,
        registry_username: str,
        backend_address: Optional[str] = None,
    ) -> NodeResult:
        """
        Start the workload on an app node the first time.

        Substitutes the compose file placeholders, then pulls and starts the
        containers. Placeholder values are sent on stdin.
        """
        root = shlex.quote(f"{self.deploy_root}/{node.name}")
        substitutions = [
            'sudo sed -i "s|\\${DOCKERHUB_USERNAME}|$registry_user|g" ' + COMPOSE_FILE_NAME
        ]
        if node.role == NodeRole.FRONTEND:
            substitutions.append(
                'sudo sed -i "s|\\${BACKEND_IP}|$backend_ip|g" ' + COMPOSE_FILE_NAME
            )

        command = " && ".join(
            [
                "IFS= read -r registry_user",
                "IFS= read -r backend_ip",
                f"cd {root}",
                *substitutions,
                "docker compose pull",
                "docker compose up -d",
            ]
        )

        try:
            result = self.remote.execute(
                node,
                command,
                timeout=self.first_start_timeout,
                input_text=f"{registry_username}\n{backend_address or ''}\n",
            )
        except RemoteCommandError as e:
            return NodeResult(node, ResultStatus.FAILURE, e.message, e)

        if result.is_failure:
            error = RemoteCommandError(node.address, "docker compose up", _tail(result.output))
            return NodeResult(node, ResultStatus.FAILURE, "containers did not start", error)

        return NodeResult(node, ResultStatus.SUCCESS, "containers started")
