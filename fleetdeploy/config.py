"""Configuration management for fleetdeploy workspaces"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

from fleetdeploy import constants
from fleetdeploy.exceptions import ConfigurationError
from fleetdeploy.models.ssh import SSHCredential


@dataclass
class SSHSettings:
    """SSH access to the fleet"""

    key_path: str = constants.DEFAULT_SSH_KEY_PATH
    user: str = constants.DEFAULT_SSH_USER
    connect_timeout: int = constants.SSH_CONNECT_TIMEOUT
    command_timeout: int = constants.DEFAULT_COMMAND_TIMEOUT


@dataclass
class TerraformSettings:
    """Provisioner settings"""

    directory: str = constants.TERRAFORM_DIR
    var_file: str = constants.TERRAFORM_VAR_FILE
    region: str = constants.DEFAULT_AWS_REGION
    lock_table: str = constants.TERRAFORM_LOCK_TABLE
    state_key: str = constants.TERRAFORM_STATE_KEY
    # Fixed state bucket; generated once and remembered when unset
    state_bucket: Optional[str] = None
    outputs: Dict[str, str] = field(
        default_factory=lambda: dict(constants.DEFAULT_OUTPUT_NAMES)
    )


@dataclass
class TimingSettings:
    """Settle delays and retry cadence (seconds)"""

    trust_settle: float = constants.TRUST_SETTLE_DELAY
    health_settle: float = constants.HEALTH_SETTLE_DELAY
    health_timeout: float = constants.HEALTH_PROBE_TIMEOUT
    health_attempts: int = constants.HEALTH_RETRY_ATTEMPTS
    health_retry_delay: float = constants.HEALTH_RETRY_DELAY
    convergence_timeout: int = constants.CONVERGENCE_TIMEOUT


@dataclass
class FleetConfig:
    """Represents a loaded fleet.yml (all sections optional)"""

    workspace: Path
    ssh: SSHSettings = field(default_factory=SSHSettings)
    terraform: TerraformSettings = field(default_factory=TerraformSettings)
    timing: TimingSettings = field(default_factory=TimingSettings)
    manifests_dir: str = constants.LOCAL_MANIFESTS_DIR
    deploy_root: str = constants.DEPLOY_ROOT
    max_workers: int = constants.DEFAULT_MAX_WORKERS
    secrets_manager_id: Optional[str] = None

    @property
    def terraform_dir(self) -> Path:
        return self.workspace / self.terraform.directory

    @property
    def var_file_path(self) -> Path:
        return self.terraform_dir / self.terraform.var_file

    @property
    def manifests_path(self) -> Path:
        return self.workspace / self.manifests_dir

    @property
    def key_path(self) -> Path:
        """Private key path, relative paths resolved against the workspace."""
        path = Path(self.ssh.key_path).expanduser()
        return path if path.is_absolute() else self.workspace / path

    def ssh_credential(self) -> SSHCredential:
        return SSHCredential(key_path=str(self.key_path), user=self.ssh.user)


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"Invalid '{name}' section in {constants.CONFIG_FILE_NAME}",
            context="Expected a mapping",
        )
    return value


def _build(cls, values: dict, section: str):
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(
            f"Invalid '{section}' section in {constants.CONFIG_FILE_NAME}",
            context=str(e),
        )


def load_config(workspace: Path, config_file: Optional[Path] = None) -> FleetConfig:
    """
    Load fleet.yml from the workspace (defaults when absent).

    Environment overrides: FLEETDEPLOY_SSH_KEY, FLEETDEPLOY_SSH_USER.

    Args:
        workspace: Workspace root directory
        config_file: Explicit config path (defaults to <workspace>/fleet.yml)

    Returns:
        FleetConfig

    Raises:
        ConfigurationError: If the file is not valid YAML or has unknown keys
    """
    path = config_file or workspace / constants.CONFIG_FILE_NAME
    raw: dict = {}

    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {path}", context=str(e))
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping")

    terraform_values = dict(_section(raw, "terraform"))
    outputs = dict(constants.DEFAULT_OUTPUT_NAMES)
    outputs.update(terraform_values.pop("outputs", None) or {})

    config = FleetConfig(
        workspace=workspace,
        ssh=_build(SSHSettings, _section(raw, "ssh"), "ssh"),
        terraform=_build(
            TerraformSettings, {**terraform_values, "outputs": outputs}, "terraform"
        ),
        timing=_build(TimingSettings, _section(raw, "timing"), "timing"),
        manifests_dir=raw.get("manifests_dir", constants.LOCAL_MANIFESTS_DIR),
        deploy_root=raw.get("deploy_root", constants.DEPLOY_ROOT),
        max_workers=int(raw.get("max_workers", constants.DEFAULT_MAX_WORKERS)),
        secrets_manager_id=raw.get("secrets_manager_id"),
    )

    if os.environ.get("FLEETDEPLOY_SSH_KEY"):
        config.ssh.key_path = os.environ["FLEETDEPLOY_SSH_KEY"]
    if os.environ.get("FLEETDEPLOY_SSH_USER"):
        config.ssh.user = os.environ["FLEETDEPLOY_SSH_USER"]

    return config
