"""
GitHub Actions secrets for the CI pipeline.

Values reach `gh secret set` on stdin only and are never printed.
"""

import subprocess
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from fleetdeploy.constants import (
    DEFAULT_AWS_REGION,
    REGISTRY_TOKEN_KEY,
    REGISTRY_USERNAME_KEY,
)
from fleetdeploy.exceptions import PrerequisiteMissing
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import Secret
from fleetdeploy.services.credential_service import CredentialSource
from fleetdeploy.utils import check_tool

GH_INSTALL_HINT = (
    "Install: brew install gh (macOS), sudo apt install gh (Ubuntu) or "
    "https://cli.github.com/. Alternatively add the secrets under "
    "Repository > Settings > Secrets and variables > Actions"
)


class GitHubSecretsManager:
    """Collects the CI secrets and pushes them with the gh CLI."""

    def __init__(
        self,
        logger: DeployLogger,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.logger = logger
        self.console: Console = logger.console
        self.runner = runner
        self.confirm = confirm or (
            lambda question: Confirm.ask(question, console=self.console)
        )

    def _run(self, cmd: list[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        return self.runner(cmd, input=input_text, capture_output=True, text=True)

    def ensure_cli(self) -> None:
        """
        Raises:
            PrerequisiteMissing: If gh is missing or not authenticated
        """
        if not check_tool("gh"):
            raise PrerequisiteMissing("GitHub CLI (gh) is not installed", context=GH_INSTALL_HINT)
        if self._run(["gh", "auth", "status"]).returncode != 0:
            raise PrerequisiteMissing(
                "GitHub CLI is not authenticated", context="Run: gh auth login"
            )

    def resolve_repo(self) -> str:
        result = self._run(
            ["gh", "repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"]
        )
        repo = result.stdout.strip() if result.returncode == 0 else ""
        if not repo:
            raise PrerequisiteMissing(
                "Not in a GitHub repository or repository not found",
                context="Run from a git checkout with a GitHub remote",
            )
        return repo

    def _aws_configured(self, key: str) -> str:
        if not check_tool("aws"):
            return ""
        result = self._run(["aws", "configure", "get", key])
        return result.stdout.strip() if result.returncode == 0 else ""

    def collect(self, source: CredentialSource, key_path: Path) -> list[Secret]:
        """
        Gather the six CI secrets.

        AWS values default to the local aws CLI configuration; the SSH key is
        read from the fleet's private key file.

        Raises:
            PrerequisiteMissing: If a required value is missing
        """
        registry = {s.name: s.value for s in source.registry_secrets()}

        access_key = self._aws_configured("aws_access_key_id")
        secret_key = self._aws_configured("aws_secret_access_key")
        region = self._aws_configured("region")

        if access_key and not self.confirm("Use existing AWS credentials from the aws CLI?"):
            access_key = secret_key = ""

        if not access_key:
            access_key = source.lookup("AWS_ACCESS_KEY_ID") or ""
            secret_key = source.lookup("AWS_SECRET_ACCESS_KEY") or ""
            region = source.lookup("AWS_REGION") or region

        if not access_key or not secret_key:
            raise PrerequisiteMissing("AWS credentials are required")

        if not key_path.is_file():
            raise PrerequisiteMissing(f"SSH key file not found at {key_path}")

        secrets = [
            Secret(REGISTRY_USERNAME_KEY, registry[REGISTRY_USERNAME_KEY]),
            Secret(REGISTRY_TOKEN_KEY, registry[REGISTRY_TOKEN_KEY]),
            Secret("AWS_ACCESS_KEY_ID", access_key),
            Secret("AWS_SECRET_ACCESS_KEY", secret_key),
            Secret("AWS_REGION", region or DEFAULT_AWS_REGION),
            Secret("EC2_SSH_KEY", key_path.read_text()),
        ]
        self.logger.register_secrets(s.value for s in secrets if s.name != "AWS_REGION")
        return secrets

    def push(self, repo: str, secrets: list[Secret]) -> tuple[int, int, int]:
        """
        Set each secret on the repository.

        Returns:
            (success_count, fail_count, skip_count)
        """
        self.console.print(f"[dim]Setting repository secrets for {repo}...[/dim]")
        success_count = fail_count = skip_count = 0

        for secret in secrets:
            if not secret.value:
                self.logger.warning(f"{secret.name} (empty, skipped)")
                skip_count += 1
                continue

            result = self._run(
                ["gh", "secret", "set", secret.name, "-R", repo], input_text=secret.value
            )
            if result.returncode == 0:
                self.console.print(f"  [green]✓[/green] {secret.name}")
                self.logger.log(f"Secret set: {secret.name}")
                success_count += 1
            else:
                error_msg = self.logger.mask(
                    (result.stderr or result.stdout or "unknown error").strip()
                )
                self.console.print(f"  [red]✗[/red] {secret.name}: [dim]{escape(error_msg)}[/dim]")
                self.logger.log(f"Secret failed: {secret.name}: {error_msg}", "ERROR")
                fail_count += 1

        return success_count, fail_count, skip_count
