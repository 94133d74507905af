"""
Result Models

Command outcomes (local and remote) and the per-node results a stage collects.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from enum import Enum

from fleetdeploy.constants import SSH_UNREACHABLE_EXIT_CODE


class ResultStatus(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"
    SKIPPED = "skipped"


class _CommandOutcome:
    """Shared accessors for anything with returncode, stdout and stderr."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def is_success(self) -> bool:
        return self.returncode == 0

    @property
    def is_failure(self) -> bool:
        return self.returncode != 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, trimmed."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part).strip()


@dataclass
class ExecutionResult(_CommandOutcome):
    """Local subprocess outcome (terraform, aws)."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    command: str = ""


@dataclass
class SSHResult(_CommandOutcome):
    """Remote command outcome on one host."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    host: str = ""
    command: str = ""
    duration_seconds: float = 0.0

    @property
    def is_unreachable(self) -> bool:
        """ssh exits with 255 when the channel itself failed."""
        return self.returncode == SSH_UNREACHABLE_EXIT_CODE

    def __repr__(self) -> str:
        return f"SSHResult(host={self.host}, rc={self.returncode}, {self.duration_seconds:.1f}s)"


@dataclass
class NodeResult:
    """Outcome of one stage for one node."""

    node: Any
    status: ResultStatus
    message: str = ""
    error: Optional[Exception] = None

    @property
    def is_failure(self) -> bool:
        return self.status == ResultStatus.FAILURE

    @property
    def is_warning(self) -> bool:
        return self.status == ResultStatus.WARNING

    def __repr__(self) -> str:
        return f"NodeResult(node={self.node}, status={self.status.value})"


@dataclass
class StageSummary:
    """Per-node results of one orchestrator stage."""

    stage: str
    results: list[NodeResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    fatal_error: Optional[Exception] = None
    # Stages whose report is the deliverable (verify-status) exit 0 on node failures
    report_only: bool = False

    def add(self, result: NodeResult) -> NodeResult:
        """Record a node result, replacing an earlier one for the same node."""
        self.results = [r for r in self.results if r.node != result.node]
        self.results.append(result)
        return result

    def result_for(self, node) -> Optional[NodeResult]:
        for result in self.results:
            if result.node == node:
                return result
        return None

    @property
    def failures(self) -> list[NodeResult]:
        return [r for r in self.results if r.is_failure]

    @property
    def warnings(self) -> list[NodeResult]:
        return [r for r in self.results if r.is_warning]

    @property
    def exit_code(self) -> int:
        """0 on success, 1 on any fatal stage or node failure."""
        if self.fatal_error is not None:
            return 1
        if self.failures and not self.report_only:
            return 1
        return 0

    def finish(self) -> "StageSummary":
        self.finished_at = datetime.now()
        return self

    def __repr__(self) -> str:
        return (
            f"StageSummary(stage={self.stage}, results={len(self.results)}, "
            f"failures={len(self.failures)}, exit_code={self.exit_code})"
        )
