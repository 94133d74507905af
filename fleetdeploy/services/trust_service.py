"""
Trust bootstrap between the Puppet server and its agents.

Drives the certificate-signing handshake until every node is Signed, with at
most MAX_SIGN_ROUNDS sign rounds. Nodes still unsigned afterwards are
reported as degraded (TrustError) for manual resolution, never as fatal.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from fleetdeploy.constants import (
    CERTIFICATE_WAIT_MARKERS,
    CONVERGENCE_TIMEOUT,
    MANAGED_FILE_PATHS,
    MAX_SIGN_ROUNDS,
    NOTHING_TO_SIGN_MARKERS,
    PUPPET_CMD,
    PUPPETSERVER_CMD,
    TRUST_SETTLE_DELAY,
    DEFAULT_MAX_WORKERS,
)
from fleetdeploy.exceptions import RemoteCommandError, TrustError
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import (
    CertificateRecord,
    CertificateState,
    Fleet,
    Node,
)
from fleetdeploy.models.results import SSHResult
from fleetdeploy.services.ssh_service import RemoteExecutor
from fleetdeploy.utils import retry_with_backoff, run_per_node

CA_LIST_COMMAND = f"sudo {PUPPETSERVER_CMD} ca list --all"
CA_SIGN_COMMAND = f"sudo {PUPPETSERVER_CMD} ca sign --all"
AGENT_TEST_COMMAND = f"sudo {PUPPET_CMD} agent --test"
CERTNAME_COMMAND = f"sudo {PUPPET_CMD} config print certname"
SERVER_STATUS_COMMAND = "sudo systemctl is-active puppetserver"


def parse_certificate_list(output: str) -> list[CertificateRecord]:
    """
    Parse `puppetserver ca list --all`.

    Example:
        Requested Certificates:
            ip-10-0-1-12.ec2.internal   (SHA256)  1B:2C:...
        Signed Certificates:
            puppet.ec2.internal         (SHA256)  9F:00:...  alt names: [...]

    Returns:
        One record per listed subject; revoked entries are ignored
    """
    section_states = {
        "requested": CertificateState.PENDING,
        "signed": CertificateState.SIGNED,
    }
    records = []
    current: Optional[CertificateState] = None
    in_section = False

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.endswith("Certificates:"):
            in_section = True
            current = section_states.get(stripped.split()[0].lower())
            continue
        if in_section and line[:1].isspace() and current is not None:
            records.append(CertificateRecord(subject=stripped.split()[0], state=current))

    return records


def needs_signing(result: SSHResult) -> bool:
    """True if an agent run failed because its certificate is not signed yet."""
    output = result.output.lower()
    return any(marker.lower() in output for marker in CERTIFICATE_WAIT_MARKERS)


@dataclass
class TrustReport:
    """Final per-node trust status of a bootstrap pass."""

    states: Dict[Node, CertificateState] = field(default_factory=dict)
    records: list[CertificateRecord] = field(default_factory=list)
    sign_rounds: int = 0
    details: Dict[Node, str] = field(default_factory=dict)

    @property
    def all_signed(self) -> bool:
        return all(s == CertificateState.SIGNED for s in self.states.values())

    def errors(self) -> Dict[Node, TrustError]:
        """Degraded nodes and their TrustError."""
        return {
            node: TrustError(node.name, state.value)
            for node, state in self.states.items()
            if state != CertificateState.SIGNED
        }


class TrustBootstrapper:
    """Certificate handshake between the control node and every fleet node."""

    def __init__(
        self,
        remote: RemoteExecutor,
        logger: Optional[DeployLogger] = None,
        settle_delay: float = TRUST_SETTLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        max_sign_rounds: int = MAX_SIGN_ROUNDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        ca_attempts: int = 3,
        ca_retry_delay: float = 20,
        agent_timeout: float = CONVERGENCE_TIMEOUT,
    ):
        self.remote = remote
        self.logger = logger
        self.settle_delay = settle_delay
        self.sleep = sleep
        self.max_sign_rounds = max_sign_rounds
        self.max_workers = max_workers
        self.ca_attempts = ca_attempts
        self.ca_retry_delay = ca_retry_delay
        self.agent_timeout = agent_timeout

    def _log(self, message: str, level: str = "INFO") -> None:
        if self.logger:
            self.logger.log(message, level)

    def _ca_command(self, control: Node, command: str) -> Optional[SSHResult]:
        """Run a CA command, retrying while the control node is unreachable."""

        def on_retry(attempt, error):
            self._log(
                f"Puppet server not reachable yet (attempt {attempt}), retrying",
                "WARNING",
            )

        try:
            result = retry_with_backoff(
                lambda: self.remote.execute(control, command),
                attempts=self.ca_attempts,
                delay=self.ca_retry_delay,
                retry_on=(RemoteCommandError,),
                should_retry=lambda r: r.is_unreachable,
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except RemoteCommandError as e:
            self._log(f"Puppet server command failed: {e}", "WARNING")
            return None

        if result.is_unreachable:
            self._log(f"Puppet server unreachable at {control.address}", "WARNING")
            return None
        return result

    def server_active(self, control: Node) -> bool:
        """Check the puppetserver service on the control node."""
        result = self._ca_command(control, SERVER_STATUS_COMMAND)
        active = result is not None and result.stdout.strip() == "active"
        if not active:
            self._log("Puppet server may still be starting", "WARNING")
        return active

    def list_certificates(self, control: Node) -> list[CertificateRecord]:
        """Outstanding and signed certificates known to the CA."""
        result = self._ca_command(control, CA_LIST_COMMAND)
        if result is None or result.is_failure:
            self._log("No certificates yet or Puppet server not ready", "WARNING")
            return []
        return parse_certificate_list(result.stdout)

    def sign_all(self, control: Node) -> bool:
        """
        Sign every waiting request. Tolerates "nothing to sign".

        Returns:
            True if the command succeeded or there was nothing to sign
        """
        result = self._ca_command(control, CA_SIGN_COMMAND)
        if result is None:
            return False
        if result.is_success:
            return True
        if any(marker in result.output for marker in NOTHING_TO_SIGN_MARKERS):
            self._log("No waiting certificate requests to sign")
            return True
        self._log(f"Certificate signing reported: {result.output}", "WARNING")
        return False

    def certname(self, node: Node) -> Optional[str]:
        """The node's Puppet certname, None when it cannot be queried."""
        try:
            result = self.remote.execute(node, CERTNAME_COMMAND)
        except RemoteCommandError:
            return None
        if result.is_failure:
            return None
        name = result.stdout.strip().splitlines()
        return name[-1].strip() if name else None

    def test_agent(self, node: Node) -> SSHResult:
        """One convergence test pass on a node."""
        return self.remote.execute(node, AGENT_TEST_COMMAND, timeout=self.agent_timeout)

    def _certnames(self, fleet: Fleet) -> Dict[Node, Optional[str]]:
        return {
            node: name
            for node, name, _ in run_per_node(fleet, self.certname, self.max_workers)
        }

    @staticmethod
    def _state_from_records(
        certname: Optional[str], records: list[CertificateRecord]
    ) -> CertificateState:
        if certname:
            for record in records:
                if record.subject == certname:
                    return record.state
        return CertificateState.REQUESTED

    def observe(self, fleet: Fleet) -> Dict[Node, CertificateState]:
        """
        Current certificate state per node, without signing anything.

        Returns:
            Mapping node -> CertificateState
        """
        records = self.list_certificates(fleet.control)
        certnames = self._certnames(fleet)
        return {
            node: self._state_from_records(certnames.get(node), records)
            for node in fleet
        }

    def bootstrap(self, fleet: Fleet) -> TrustReport:
        """
        Run the handshake for every node of the fleet.

        1. settle, 2. list requests, 3. sign all, 4. test every node;
        nodes that failed with a certificate warning get one more sign+test.

        Returns:
            TrustReport with the final state of every node
        """
        control = fleet.control
        report = TrustReport()

        if self.settle_delay > 0:
            self._log(
                f"Waiting {self.settle_delay:.0f}s for Puppet services to start"
            )
            self.sleep(self.settle_delay)

        self.server_active(control)
        pending = [
            r for r in self.list_certificates(control)
            if r.state == CertificateState.PENDING
        ]
        self._log(f"{len(pending)} outstanding certificate request(s)")

        certnames = self._certnames(fleet)
        unsigned_warning: Dict[Node, bool] = {}
        to_test = list(fleet)

        while to_test and report.sign_rounds < self.max_sign_rounds:
            self.sign_all(control)
            report.sign_rounds += 1

            for node, result, error in run_per_node(
                to_test, self.test_agent, self.max_workers
            ):
                if error is not None:
                    unsigned_warning[node] = True
                    report.details[node] = str(error).splitlines()[0]
                elif result.is_unreachable:
                    unsigned_warning[node] = True
                    report.details[node] = "unreachable"
                elif needs_signing(result):
                    unsigned_warning[node] = True
                    report.details[node] = "certificate not signed yet"
                    self._log(
                        f"{node.name}: agent waiting for certificate "
                        "(expected on first run)",
                        "WARNING",
                    )
                else:
                    unsigned_warning[node] = False
                    report.details[node] = (
                        "agent test passed"
                        if result.is_success
                        else f"agent test completed with warnings (exit {result.returncode})"
                    )

            to_test = [node for node in to_test if unsigned_warning[node]]

        report.records = self.list_certificates(control)
        for node in fleet:
            state = self._state_from_records(certnames.get(node), report.records)
            if state != CertificateState.SIGNED and not unsigned_warning.get(node, True):
                state = CertificateState.SIGNED
            report.states[node] = state

        return report

    def managed_files(self, node: Node) -> str:
        """List the marker files Puppet manages on an agent."""
        paths = " ".join(p.format(role=node.name) for p in MANAGED_FILE_PATHS)
        try:
            result = self.remote.execute(
                node, f"ls -la {paths} 2>/dev/null || echo 'Managed files not created yet'"
            )
        except RemoteCommandError as e:
            return str(e).splitlines()[0]
        return result.stdout.strip() or result.stderr.strip()
