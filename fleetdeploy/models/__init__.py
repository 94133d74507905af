"""
fleetdeploy Domain Models

Clean dataclass-based models for type-safe data handling.
"""

from .results import (
    ResultStatus,
    ExecutionResult,
    SSHResult,
    NodeResult,
    StageSummary,
)
from .ssh import (
    SSHCredential,
    SSHConnection,
)
from .fleet import (
    NodeRole,
    Node,
    Fleet,
    ProvisionerOutputs,
    CertificateState,
    CertificateRecord,
    ConvergenceOutcome,
    ServiceStatus,
    Endpoint,
    HealthReport,
    Secret,
    DeploymentSession,
)

__all__ = [
    # Results
    "ResultStatus",
    "ExecutionResult",
    "SSHResult",
    "NodeResult",
    "StageSummary",
    # SSH
    "SSHCredential",
    "SSHConnection",
    # Fleet
    "NodeRole",
    "Node",
    "Fleet",
    "ProvisionerOutputs",
    "CertificateState",
    "CertificateRecord",
    "ConvergenceOutcome",
    "ServiceStatus",
    "Endpoint",
    "HealthReport",
    "Secret",
    "DeploymentSession",
]
