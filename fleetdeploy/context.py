"""
Stage execution context

Explicit state handed to every stage: workspace, configuration, key path,
cancellation token and the group of local background processes. Cancellation
is local-only: it stops new remote commands from being issued and terminates
local child processes, nothing is sent to the remote nodes.
"""

import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TextIO, Union

from fleetdeploy.config import FleetConfig
from fleetdeploy.constants import PROCESS_TERMINATE_TIMEOUT
from fleetdeploy.exceptions import OperationCancelled
from fleetdeploy.logger import DeployLogger


class CancellationToken:
    """Thread-safe flag set when the operator interrupts the run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    def sleep(self, seconds: float) -> None:
        """Sleep, waking up early (and raising) when cancelled."""
        if self._event.wait(timeout=seconds):
            raise OperationCancelled()


class LocalProcessGroup:
    """
    Owns every local background process spawned during a run.

    Used as a context manager: all processes still running on exit are
    terminated (then killed), whether the block succeeded or failed.
    """

    def __init__(self, terminate_timeout: float = PROCESS_TERMINATE_TIMEOUT):
        self.terminate_timeout = terminate_timeout
        self.processes: list[subprocess.Popen] = []
        self._log_files: list[TextIO] = []
        # Reentrant: the SIGINT handler calls terminate_all on the main thread
        self._lock = threading.RLock()

    def spawn(
        self,
        command: list[str],
        cwd: Optional[Path] = None,
        log_file: Optional[Union[Path, TextIO]] = None,
    ) -> subprocess.Popen:
        """
        Start a background process.

        Args:
            command: Command argv
            cwd: Working directory
            log_file: Path or open file receiving stdout+stderr (inherits the
                terminal when omitted)
        """
        stdout = None
        if isinstance(log_file, Path):
            log_file.parent.mkdir(parents=True, exist_ok=True)
            stdout = open(log_file, "w")
            self._log_files.append(stdout)
        elif log_file is not None:
            stdout = log_file

        process = subprocess.Popen(
            command,
            cwd=cwd,
            stdout=stdout,
            stderr=subprocess.STDOUT if stdout is not None else None,
            stdin=subprocess.DEVNULL,
        )
        with self._lock:
            self.processes.append(process)
        return process

    @property
    def running(self) -> list[subprocess.Popen]:
        with self._lock:
            return [p for p in self.processes if p.poll() is None]

    def terminate_all(self) -> int:
        """
        Terminate every running process.

        Returns:
            Number of processes that were still running
        """
        running = self.running
        for process in running:
            process.terminate()

        for process in running:
            try:
                process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        return len(running)

    def wait(self) -> None:
        """Block until every process exits."""
        for process in list(self.processes):
            process.wait()

    def __enter__(self) -> "LocalProcessGroup":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.terminate_all()
        for log_file in self._log_files:
            log_file.close()
        self._log_files.clear()
        return False


@dataclass
class StageContext:
    """Everything a stage needs, passed explicitly."""

    config: FleetConfig
    logger: DeployLogger
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    processes: LocalProcessGroup = field(default_factory=LocalProcessGroup)
    sleep: Optional[Callable[[float], None]] = None

    def __post_init__(self):
        if self.sleep is None:
            self.sleep = self.cancel_token.sleep

    @property
    def workspace(self) -> Path:
        return self.config.workspace

    @property
    def key_path(self) -> Path:
        return self.config.key_path

    def settle(self, seconds: float, reason: str) -> None:
        """Wait for asynchronous remote effects to complete."""
        if seconds <= 0:
            return
        self.logger.log(f"Settling {seconds:.0f}s: {reason}")
        self.sleep(seconds)
        self.cancel_token.raise_if_cancelled()


def install_interrupt_handlers(
    token: CancellationToken, processes: LocalProcessGroup
) -> Callable[[], None]:
    """
    Route SIGINT/SIGTERM to local cancellation.

    The first signal cancels the token, terminates local processes and raises
    KeyboardInterrupt in the main thread.

    Returns:
        A callable restoring the previous handlers
    """
    previous = {}

    def handler(signum, _frame):
        token.cancel()
        processes.terminate_all()
        raise KeyboardInterrupt()

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, handler)

    def restore() -> None:
        for signum, old in previous.items():
            signal.signal(signum, old)

    return restore
