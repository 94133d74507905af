"""Shared fixtures: fake SSH executor, logger writing to a buffer, test fleet."""

from __future__ import annotations

from io import StringIO
from typing import Callable, Union

import pytest
from rich.console import Console

from fleetdeploy.config import FleetConfig, TimingSettings
from fleetdeploy.context import StageContext
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models import Fleet, Node, NodeRole, SSHResult

CONTROL_IP = "203.0.113.10"
FRONTEND_IP = "203.0.113.20"
BACKEND_IP = "203.0.113.30"

Response = Union[SSHResult, Exception, Callable[[Node, str], SSHResult]]


class FakeRemoteExecutor:
    """
    Stands in for RemoteExecutor.

    Rules are (substring, response) pairs checked in order; the first rule
    whose substring occurs in the command answers. A response may be an
    SSHResult, an exception to raise, or a callable(node, command).
    Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.rules: list[tuple[str, Response]] = []
        self.calls: list[tuple[Node, str, str | None]] = []
        self.copies: list[tuple[Node, list, str]] = []

    def on(self, substring: str, response: Response) -> "FakeRemoteExecutor":
        self.rules.append((substring, response))
        return self

    def execute(self, node, command, timeout=None, input_text=None):
        self.calls.append((node, command, input_text))
        for substring, response in self.rules:
            if substring in command:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(node, command)
                return response
        return SSHResult(returncode=0, host=node.address, command=command)

    def copy(self, node, sources, remote_dir, timeout=None):
        self.copies.append((node, list(sources), remote_dir))
        return SSHResult(returncode=0, host=node.address, command="scp")

    def commands_for(self, node) -> list[str]:
        return [command for n, command, _ in self.calls if n == node]

    def count(self, substring: str) -> int:
        return sum(1 for _, command, _ in self.calls if substring in command)


def ok(stdout: str = "", returncode: int = 0, stderr: str = "") -> SSHResult:
    return SSHResult(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def remote():
    return FakeRemoteExecutor()


@pytest.fixture
def output():
    return StringIO()


@pytest.fixture
def logger(tmp_path, output):
    log = DeployLogger(
        "fleet",
        "test",
        logs_root=tmp_path,
        output=Console(file=output, width=200, force_terminal=False),
    )
    yield log
    log.close()


@pytest.fixture
def config(tmp_path):
    key = tmp_path / "fleet.pem"
    key.write_text("-----BEGIN KEY-----\n")
    cfg = FleetConfig(
        workspace=tmp_path,
        timing=TimingSettings(
            trust_settle=0,
            health_settle=0,
            health_attempts=1,
            health_retry_delay=0,
        ),
    )
    cfg.ssh.key_path = str(key)
    return cfg


@pytest.fixture
def credential(config):
    # Same credential the orchestrator derives, so nodes compare equal
    return config.ssh_credential()


@pytest.fixture
def fleet(credential):
    return Fleet(
        nodes=[
            Node(NodeRole.CONTROL, CONTROL_IP, credential),
            Node(NodeRole.FRONTEND, FRONTEND_IP, credential),
            Node(NodeRole.BACKEND, BACKEND_IP, credential),
        ]
    )


class RecordingSleep:
    """Sleeper that records requested waits instead of waiting."""

    def __init__(self):
        self.waits: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def ctx(config, logger):
    return StageContext(config=config, logger=logger, sleep=lambda seconds: None)
