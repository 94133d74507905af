"""SSH service for executing commands on fleet nodes."""

import subprocess
import time
from pathlib import Path
from typing import Optional

from fleetdeploy.constants import (
    DEFAULT_COMMAND_TIMEOUT,
    SSH_CONNECT_TIMEOUT,
    SSH_KEY_PERMISSIONS,
)
from fleetdeploy.context import CancellationToken
from fleetdeploy.exceptions import (
    PrerequisiteMissing,
    RemoteCommandError,
    RemoteCommandTimeout,
)
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import Node
from fleetdeploy.models.results import SSHResult
from fleetdeploy.models.ssh import SSHConnection


def prepare_key(key_path: Path) -> Path:
    """
    Check the private key exists and restrict its permissions.

    Args:
        key_path: Private key file

    Returns:
        The key path

    Raises:
        PrerequisiteMissing: If the key file is missing
    """
    key_path = Path(key_path).expanduser()
    if not key_path.is_file():
        raise PrerequisiteMissing(
            f"SSH key file not found at {key_path}",
            context="Set ssh.key_path in fleet.yml or FLEETDEPLOY_SSH_KEY",
        )
    key_path.chmod(SSH_KEY_PERMISSIONS)
    return key_path


class RemoteExecutor:
    """
    Runs one command per SSH session on a node.

    Sessions are never reused: each call opens, authenticates, executes and
    closes its own channel.
    """

    def __init__(
        self,
        logger: Optional[DeployLogger] = None,
        cancel_token: Optional[CancellationToken] = None,
        connect_timeout: int = SSH_CONNECT_TIMEOUT,
        default_timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ):
        """
        Initialize SSH service.

        Args:
            logger: Logger receiving commands and their output
            cancel_token: Checked before every command
            connect_timeout: ssh ConnectTimeout in seconds
            default_timeout: Command timeout when none is given
        """
        self.logger = logger
        self.cancel_token = cancel_token or CancellationToken()
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout

    def _connection(self, node: Node) -> SSHConnection:
        return SSHConnection(
            host=node.address,
            credential=node.credential,
            connect_timeout=self.connect_timeout,
        )

    def _run(
        self,
        node: Node,
        argv: list[str],
        display: str,
        timeout: Optional[float],
        input_text: Optional[str],
    ) -> SSHResult:
        self.cancel_token.raise_if_cancelled()
        timeout = timeout or self.default_timeout

        if self.logger:
            self.logger.log_command(f"[{node.name}] {display}")

        start_time = time.time()
        try:
            result = subprocess.run(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            if self.logger:
                self.logger.log(
                    f"[{node.name}] timed out after {timeout}s: {display}", "WARNING"
                )
            raise RemoteCommandTimeout(node.address, display, timeout)
        except OSError as e:
            raise RemoteCommandError(node.address, display, str(e))

        ssh_result = SSHResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            host=node.address,
            command=display,
            duration_seconds=time.time() - start_time,
        )

        if self.logger:
            self.logger.log_output(ssh_result.stdout, f"{node.name}:stdout")
            self.logger.log_output(ssh_result.stderr, f"{node.name}:stderr")
            self.logger.log(
                f"[{node.name}] exit {ssh_result.returncode} "
                f"({ssh_result.duration_seconds:.1f}s)",
                "DEBUG",
            )

        return ssh_result

    def execute(
        self,
        node: Node,
        command: str,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> SSHResult:
        """
        Execute command on a node via SSH.

        Args:
            node: Target node
            command: Remote shell command
            timeout: Command timeout in seconds
            input_text: Data written to the remote command's stdin (the only
                channel secret values may use)

        Returns:
            SSHResult with execution details

        Raises:
            RemoteCommandTimeout: If the command exceeded its timeout
            OperationCancelled: If the run was cancelled
        """
        argv = self._connection(node).build_command(command)
        return self._run(node, argv, command, timeout, input_text)

    def copy(
        self,
        node: Node,
        sources: list[Path],
        remote_dir: str,
        timeout: Optional[float] = None,
    ) -> SSHResult:
        """
        Upload files or directories to a node (scp -r).

        Args:
            node: Target node
            sources: Local paths
            remote_dir: Destination directory on the node
        """
        argv = self._connection(node).build_copy([str(s) for s in sources], remote_dir)
        display = f"scp {' '.join(s.name for s in sources)} -> {remote_dir}"
        return self._run(node, argv, display, timeout, None)
