"""
fleetdeploy Services Layer

Remote execution, trust, credentials, convergence, health and local runs.
"""

from .ssh_service import RemoteExecutor, prepare_key
from .trust_service import TrustBootstrapper, TrustReport
from .credential_service import (
    CredentialSource,
    PromptCredentialSource,
    EnvironmentCredentialSource,
    SecretsManagerCredentialSource,
    ChainedCredentialSource,
    CredentialDistributor,
)
from .convergence_service import ConvergenceRunner
from .health_service import HealthVerifier
from .github_secrets import GitHubSecretsManager
from .local_service import LocalRunner

__all__ = [
    "RemoteExecutor",
    "prepare_key",
    "TrustBootstrapper",
    "TrustReport",
    "CredentialSource",
    "PromptCredentialSource",
    "EnvironmentCredentialSource",
    "SecretsManagerCredentialSource",
    "ChainedCredentialSource",
    "CredentialDistributor",
    "ConvergenceRunner",
    "HealthVerifier",
    "GitHubSecretsManager",
    "LocalRunner",
]
