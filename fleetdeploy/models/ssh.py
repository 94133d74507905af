"""
SSH Models

Key reference shared by the fleet and the ssh/scp argv built per host.
"""

from dataclasses import dataclass
from pathlib import Path

from fleetdeploy.constants import SSH_CONNECT_TIMEOUT

# Nodes are recreated by Terraform, so host keys are never pinned
SSH_OPTIONS = {
    "StrictHostKeyChecking": "no",
    "UserKnownHostsFile": "/dev/null",
    "LogLevel": "ERROR",
    "BatchMode": "yes",
}


@dataclass(frozen=True)
class SSHCredential:
    """Private key and login user for every node of the fleet."""

    key_path: str
    user: str

    @property
    def resolved_key(self) -> Path:
        return Path(self.key_path).expanduser()

    def __repr__(self) -> str:
        return f"SSHCredential(user={self.user}, key={self.key_path})"


@dataclass
class SSHConnection:
    host: str
    credential: SSHCredential
    connect_timeout: int = SSH_CONNECT_TIMEOUT

    @property
    def target(self) -> str:
        return f"{self.credential.user}@{self.host}"

    def _options(self) -> list[str]:
        args = ["-i", str(self.credential.resolved_key)]
        options = {**SSH_OPTIONS, "ConnectTimeout": str(self.connect_timeout)}
        for key, value in options.items():
            args += ["-o", f"{key}={value}"]
        return args

    def build_command(self, remote_command: str) -> list[str]:
        """argv for running remote_command through ssh."""
        return ["ssh", *self._options(), self.target, remote_command]

    def build_copy(self, sources: list[str], remote_dir: str) -> list[str]:
        """argv for a recursive scp upload into remote_dir."""
        return ["scp", "-r", *self._options(), *sources, f"{self.target}:{remote_dir}"]
