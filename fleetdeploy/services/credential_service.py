"""
Registry credential collection and distribution.

Secret values travel to nodes over the SSH channel's stdin only. They are
never part of a command line, never printed and never logged (the logger
additionally masks every value registered with it).
"""

import getpass
import json
import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from dotenv import dotenv_values
from rich.console import Console
from rich.prompt import Prompt

from fleetdeploy.constants import (
    DEPLOY_ROOT,
    ENV_FILE_NAME,
    REGISTRY_TOKEN_KEY,
    REGISTRY_USERNAME_KEY,
    SECRET_MASK,
)
from fleetdeploy.exceptions import (
    ConfigurationError,
    DistributionError,
    PrerequisiteMissing,
    RemoteCommandError,
)
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import Node, Secret
from fleetdeploy.models.results import NodeResult, ResultStatus, SSHResult
from fleetdeploy.services.ssh_service import RemoteExecutor
from fleetdeploy.utils import retry_with_backoff

AUTH_REJECTED_MARKERS = ("unauthorized", "incorrect username or password")
PERMISSION_DENIED_MARKERS = ("permission denied",)

# Username is read from the first stdin line, the token from the rest
REGISTRY_LOGIN_COMMAND = (
    'IFS= read -r registry_user && '
    'docker login --username "$registry_user" --password-stdin'
)

PROMPT_LABELS = {
    REGISTRY_USERNAME_KEY: "Docker Hub username",
    REGISTRY_TOKEN_KEY: "Docker Hub password/token",
}


class CredentialSource(ABC):
    """Where registry credentials come from."""

    @abstractmethod
    def lookup(self, name: str) -> Optional[str]:
        """Return the value for name, None when this source has none."""
        pass

    def registry_secrets(self) -> list[Secret]:
        """
        Collect the registry username and token.

        Raises:
            PrerequisiteMissing: If either value is unavailable
        """
        username = self.lookup(REGISTRY_USERNAME_KEY)
        token = self.lookup(REGISTRY_TOKEN_KEY)

        missing = [
            name
            for name, value in ((REGISTRY_USERNAME_KEY, username), (REGISTRY_TOKEN_KEY, token))
            if not value
        ]
        if missing:
            raise PrerequisiteMissing(
                "Registry credentials are required",
                context=f"Missing: {', '.join(missing)}",
            )

        return [
            Secret(REGISTRY_USERNAME_KEY, username),
            # Token is only used for the login, never written to .env
            Secret(REGISTRY_TOKEN_KEY, token, persist=False),
        ]


class PromptCredentialSource(CredentialSource):
    """Ask the operator; secret values are read without echo."""

    def __init__(
        self,
        console: Optional[Console] = None,
        secret_names: Iterable[str] = (REGISTRY_TOKEN_KEY,),
        read_secret: Callable[[str], str] = getpass.getpass,
    ):
        self.console = console or Console()
        self.secret_names = set(secret_names)
        self.read_secret = read_secret

    def lookup(self, name: str) -> Optional[str]:
        label = PROMPT_LABELS.get(name, name)
        if name in self.secret_names:
            value = self.read_secret(f"{label}: ")
        else:
            value = Prompt.ask(f"[cyan]{label}[/cyan]", console=self.console)
        return value.strip() or None


class EnvironmentCredentialSource(CredentialSource):
    """Process environment first, then an optional .env file."""

    def __init__(
        self,
        env_file: Optional[Path] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.environ = os.environ if environ is None else environ
        self.file_values: Dict[str, Optional[str]] = {}
        if env_file is not None and env_file.exists():
            self.file_values = dotenv_values(env_file)

    def lookup(self, name: str) -> Optional[str]:
        return self.environ.get(name) or self.file_values.get(name) or None


class SecretsManagerCredentialSource(CredentialSource):
    """JSON key/value secret stored in AWS Secrets Manager (read via aws CLI)."""

    def __init__(
        self,
        secret_id: str,
        region: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.secret_id = secret_id
        self.region = region
        self.runner = runner
        self._values: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._values is not None:
            return self._values

        cmd = [
            "aws", "secretsmanager", "get-secret-value",
            "--secret-id", self.secret_id,
            "--query", "SecretString",
            "--output", "text",
        ]
        if self.region:
            cmd.extend(["--region", self.region])

        result = self.runner(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise ConfigurationError(
                f"Could not read secret '{self.secret_id}' from Secrets Manager",
                context=(result.stderr or "").strip(),
            )

        try:
            values = json.loads(result.stdout)
        except json.JSONDecodeError:
            raise ConfigurationError(
                f"Secret '{self.secret_id}' is not a JSON object"
            )
        if not isinstance(values, dict):
            raise ConfigurationError(f"Secret '{self.secret_id}' is not a JSON object")

        self._values = {k: str(v) for k, v in values.items() if v is not None}
        return self._values

    def lookup(self, name: str) -> Optional[str]:
        return self._load().get(name) or None


class ChainedCredentialSource(CredentialSource):
    """First source that has a value wins."""

    def __init__(self, sources: Iterable[CredentialSource]):
        self.sources = list(sources)

    def lookup(self, name: str) -> Optional[str]:
        for source in self.sources:
            value = source.lookup(name)
            if value:
                return value
        return None


def render_env_file(secrets: Iterable[Secret], env: Optional[Dict[str, str]] = None) -> str:
    """Body of a node's .env: persisted secrets plus node variables."""
    lines = [f"{s.name}={s.value}" for s in secrets if s.persist]
    lines.extend(f"{name}={value}" for name, value in (env or {}).items())
    return "\n".join(lines) + "\n"


def _redact(text: str, secrets: Iterable[Secret]) -> str:
    for secret in sorted(secrets, key=lambda s: len(s.value), reverse=True):
        if secret.value:
            text = text.replace(secret.value, SECRET_MASK)
    return text


class CredentialDistributor:
    """Pushes registry login and environment file to application nodes."""

    def __init__(
        self,
        remote: RemoteExecutor,
        logger: Optional[DeployLogger] = None,
        deploy_root: str = DEPLOY_ROOT,
        retry_delay: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.remote = remote
        self.logger = logger
        self.deploy_root = deploy_root
        self.retry_delay = retry_delay
        self.sleep = sleep

    def node_root(self, node: Node) -> str:
        return f"{self.deploy_root}/{node.name}"

    def _classify(
        self, node: Node, result: SSHResult, secrets: list[Secret]
    ) -> Optional[DistributionError]:
        if result.is_success:
            return None
        if result.is_unreachable:
            return DistributionError(node.name, DistributionError.NETWORK, "unreachable")

        output = result.output.lower()
        detail = _redact(result.stderr.strip() or result.stdout.strip(), secrets)
        detail = detail.splitlines()[-1] if detail else None

        if any(marker in output for marker in AUTH_REJECTED_MARKERS):
            kind = DistributionError.AUTH_REJECTED
        elif any(marker in output for marker in PERMISSION_DENIED_MARKERS):
            kind = DistributionError.PERMISSION_DENIED
        else:
            kind = DistributionError.COMMAND_FAILED
        return DistributionError(node.name, kind, detail)

    def _attempt(
        self, node: Node, command: str, body: str, secrets: list[Secret]
    ) -> Optional[DistributionError]:
        try:
            result = self.remote.execute(node, command, input_text=body)
        except RemoteCommandError as e:
            return DistributionError(node.name, DistributionError.NETWORK, e.context)
        return self._classify(node, result, secrets)

    def _push(self, node: Node, command: str, body: str, secrets: list[Secret]) -> None:
        def on_retry(attempt, _error):
            if self.logger:
                self.logger.log(f"[{node.name}] network error, retrying once", "WARNING")

        error = retry_with_backoff(
            lambda: self._attempt(node, command, body, secrets),
            attempts=2,
            delay=self.retry_delay,
            should_retry=lambda err: err is not None and err.retryable,
            on_retry=on_retry,
            sleep=self.sleep,
        )
        if error is not None:
            raise error

    def distribute(
        self,
        node: Node,
        secrets: list[Secret],
        env: Optional[Dict[str, str]] = None,
    ) -> NodeResult:
        """
        Log the node into the registry and write its .env file.

        Args:
            node: Application node
            secrets: Registry username and token (plus any extra persisted secrets)
            env: Non-secret node variables appended to .env (e.g. BACKEND_IP)

        Returns:
            NodeResult with SUCCESS status

        Raises:
            DistributionError: auth_rejected / permission_denied are final,
                network errors are retried once first
        """
        values = {s.name: s.value for s in secrets}
        if not values.get(REGISTRY_USERNAME_KEY) or not values.get(REGISTRY_TOKEN_KEY):
            raise PrerequisiteMissing("Registry username and token are required")

        if self.logger:
            self.logger.register_secrets(values.values())

        self._push(
            node,
            REGISTRY_LOGIN_COMMAND,
            f"{values[REGISTRY_USERNAME_KEY]}\n{values[REGISTRY_TOKEN_KEY]}\n",
            secrets,
        )

        root = shlex.quote(self.node_root(node))
        env_path = shlex.quote(f"{self.node_root(node)}/{ENV_FILE_NAME}")
        self._push(
            node,
            f"sudo mkdir -p {root} && sudo tee {env_path} >/dev/null && sudo chmod 600 {env_path}",
            render_env_file(secrets, env),
            secrets,
        )

        return NodeResult(
            node=node,
            status=ResultStatus.SUCCESS,
            message=f"registry login ok, {ENV_FILE_NAME} written",
        )
