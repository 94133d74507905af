"""
Fleet Models

Nodes, provisioner outputs, certificate and health records for one
deployment session. Nothing here is persisted: every run re-derives the fleet
from the provisioner outputs and re-observes the live nodes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from fleetdeploy.constants import DEFAULT_OUTPUT_NAMES, SERVICE_ENDPOINTS
from fleetdeploy.exceptions import PrerequisiteMissing
from fleetdeploy.models.ssh import SSHCredential


class NodeRole(Enum):
    """Role of a node in the fleet."""

    CONTROL = "control"
    FRONTEND = "frontend"
    BACKEND = "backend"

    @property
    def hosts_application(self) -> bool:
        """Frontend and backend nodes run the todo workload."""
        return self in (NodeRole.FRONTEND, NodeRole.BACKEND)


@dataclass(frozen=True)
class Node:
    """A provisioned compute instance."""

    role: NodeRole
    address: str
    credential: SSHCredential

    @property
    def name(self) -> str:
        return self.role.value

    def __str__(self) -> str:
        return f"{self.name} ({self.address})"


@dataclass
class ProvisionerOutputs:
    """Typed view of the provisioner's named address outputs."""

    control_node_address: Optional[str] = None
    frontend_address: Optional[str] = None
    backend_address: Optional[str] = None

    @classmethod
    def from_terraform(
        cls, raw_outputs: Dict[str, Any], output_names: Optional[Dict[str, str]] = None
    ) -> "ProvisionerOutputs":
        """
        Build from `terraform output -json`.

        Args:
            raw_outputs: Parsed JSON ({name: {"value": ..., "type": ...}})
            output_names: Role -> output name mapping

        Returns:
            ProvisionerOutputs with absent outputs left as None
        """
        names = output_names or DEFAULT_OUTPUT_NAMES

        def value(role: str) -> Optional[str]:
            output = raw_outputs.get(names.get(role, ""), {})
            if isinstance(output, dict):
                output = output.get("value")
            if output is None:
                return None
            output = str(output).strip()
            return output or None

        return cls(
            control_node_address=value(NodeRole.CONTROL.value),
            frontend_address=value(NodeRole.FRONTEND.value),
            backend_address=value(NodeRole.BACKEND.value),
        )

    def address_for(self, role: NodeRole) -> Optional[str]:
        return {
            NodeRole.CONTROL: self.control_node_address,
            NodeRole.FRONTEND: self.frontend_address,
            NodeRole.BACKEND: self.backend_address,
        }[role]

    def missing(self) -> list[NodeRole]:
        """Roles without an address."""
        return [role for role in NodeRole if not self.address_for(role)]

    @property
    def is_complete(self) -> bool:
        return not self.missing()

    def to_fleet(self, credential: SSHCredential) -> "Fleet":
        """
        Build the fleet.

        Raises:
            PrerequisiteMissing: If any role has no address
        """
        missing = self.missing()
        if missing:
            raise PrerequisiteMissing(
                "Could not get infrastructure addresses from the provisioner",
                context=f"Missing outputs for: {', '.join(r.value for r in missing)}. "
                "Make sure the provision stage completed.",
            )
        return Fleet(
            nodes=[Node(role, self.address_for(role), credential) for role in NodeRole]
        )


@dataclass
class Fleet:
    """The set of nodes managed in one session."""

    nodes: list[Node] = field(default_factory=list)

    def get(self, role: NodeRole) -> Node:
        for node in self.nodes:
            if node.role == role:
                return node
        raise PrerequisiteMissing(f"No {role.value} node in fleet")

    @property
    def control(self) -> Node:
        return self.get(NodeRole.CONTROL)

    @property
    def agents(self) -> list[Node]:
        """Nodes hosting the application."""
        return [node for node in self.nodes if node.role.hosts_application]

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)


class CertificateState(Enum):
    """Certificate lifecycle of a node at the control node's CA."""

    REQUESTED = "requested"
    PENDING = "pending"
    SIGNED = "signed"


@dataclass(frozen=True)
class CertificateRecord:
    """One entry of the CA's certificate list."""

    subject: str
    state: CertificateState


class ConvergenceOutcome(Enum):
    """Classified result of a convergence run."""

    APPLIED = "applied"
    APPLIED_WITH_WARNINGS = "applied_with_warnings"
    FAILED = "failed"

    @property
    def proceeds(self) -> bool:
        """Whether the node may continue to first-start and verification."""
        return self != ConvergenceOutcome.FAILED


class ServiceStatus(Enum):
    """Health classification of a node's service."""

    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True)
class Endpoint:
    """HTTP status endpoint of a node's service."""

    url: str
    fallback_url: Optional[str] = None
    verify_tls: bool = True

    @classmethod
    def for_node(cls, node: Node) -> "Endpoint":
        scheme, port, health_path, fallback_path = SERVICE_ENDPOINTS[node.role.value]
        root = f"{scheme}://{node.address}:{port}"
        return cls(
            url=f"{root}{health_path}",
            fallback_url=f"{root}{fallback_path}" if fallback_path else None,
            verify_tls=scheme != "https",
        )


@dataclass
class HealthReport:
    """Fresh result of probing one node's service."""

    node: Node
    service_status: ServiceStatus
    checked_at: datetime = field(default_factory=datetime.now)
    detail: str = ""

    @property
    def is_up(self) -> bool:
        return self.service_status == ServiceStatus.UP


@dataclass(frozen=True)
class Secret:
    """Write-only named value; repr never shows the value."""

    name: str
    value: str = field(repr=False)
    persist: bool = True

    def __str__(self) -> str:
        return self.name


@dataclass
class DeploymentSession:
    """State of one orchestrator invocation."""

    stage: str = "idle"
    started_at: datetime = field(default_factory=datetime.now)
    per_node_result: Dict[Node, Any] = field(default_factory=dict)

    def enter(self, stage: str) -> None:
        self.stage = stage

    def record(self, node: Node, outcome: Any) -> None:
        self.per_node_result[node] = outcome
