"""
fleetdeploy Exception Hierarchy

Clean exception hierarchy for consistent error handling across the orchestrator.

Stage-scoped errors (ProvisionError, PrerequisiteMissing) abort the pipeline.
Node-scoped errors (TrustError, DistributionError, ConvergenceFailure,
HealthCheckFailure, RemoteCommandTimeout) are attributed to a single node and
never abort sibling nodes.
"""

from typing import Optional


class FleetDeployError(Exception):
    """Base exception for all fleetdeploy errors."""

    def __init__(self, message: str, context: Optional[str] = None):
        self.message = message
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with optional context."""
        if self.context:
            return f"{self.message}\nContext: {self.context}"
        return self.message


class ConfigurationError(FleetDeployError):
    """Raised when configuration is invalid or missing."""

    pass


class ProvisionError(FleetDeployError):
    """Raised when the provisioner fails (plan/apply, backend, var file)."""

    pass


class ProvisionerStateLocked(ProvisionError):
    """Raised when Terraform reports that its state is locked."""

    pass


class PrerequisiteMissing(FleetDeployError):
    """Raised before any remote call when a required input is absent."""

    pass


class OperationCancelled(FleetDeployError):
    """Raised when the operator interrupted the run."""

    def __init__(self, message: str = "Operation cancelled by operator"):
        super().__init__(message)


class RemoteCommandError(FleetDeployError):
    """Raised when a remote command could not be executed."""

    def __init__(self, host: str, command: str, detail: str):
        self.host = host
        self.command = command
        super().__init__(f"Remote command failed on {host}", context=detail)


class RemoteCommandTimeout(RemoteCommandError):
    """Raised when a remote command exceeded its timeout."""

    def __init__(self, host: str, command: str, timeout: float):
        self.timeout = timeout
        super().__init__(host, command, f"Timed out after {timeout}s")


class TrustError(FleetDeployError):
    """A node did not reach the Signed certificate state (degraded)."""

    def __init__(self, node_name: str, state: str):
        self.node_name = node_name
        self.state = state
        super().__init__(
            f"Node '{node_name}' is not trusted (certificate {state})",
            context="Sign manually: sudo puppetserver ca sign --all",
        )


class DistributionError(FleetDeployError):
    """Raised when credentials could not be pushed to a node."""

    AUTH_REJECTED = "auth_rejected"
    PERMISSION_DENIED = "permission_denied"
    NETWORK = "network"
    COMMAND_FAILED = "command_failed"

    def __init__(self, node_name: str, kind: str, context: Optional[str] = None):
        self.node_name = node_name
        self.kind = kind
        super().__init__(
            f"Credential distribution to '{node_name}' failed ({kind})", context
        )

    @property
    def retryable(self) -> bool:
        """Only network failures are worth another attempt."""
        return self.kind == self.NETWORK


class ConvergenceFailure(FleetDeployError):
    """Raised when a node's convergence run failed after its first run."""

    def __init__(self, node_name: str, exit_code: int, context: Optional[str] = None):
        self.node_name = node_name
        self.exit_code = exit_code
        super().__init__(
            f"Convergence failed on '{node_name}' (exit code {exit_code})", context
        )


class LocalRunError(FleetDeployError):
    """Raised when a local development surface fails to start."""

    pass


class HealthCheckFailure(FleetDeployError):
    """A node's service is not Up (recorded, never fatal)."""

    def __init__(self, node_name: str, status: str, detail: str = ""):
        self.node_name = node_name
        self.status = status
        super().__init__(f"Service on '{node_name}' is {status}", detail or None)
