"""
Logging system for fleetdeploy
Every operation writes a complete log file; the console gets a clean step view
(or the full stream with --verbose). Registered secret values are masked in
both sinks.
"""

import re
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, TextIO

from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.padding import Padding
from rich.spinner import Spinner
from rich.text import Text

from fleetdeploy.constants import LOG_DATE_FORMAT, LOG_TIME_FORMAT, SECRET_MASK
from fleetdeploy.exceptions import FleetDeployError, OperationCancelled

console = Console()

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

# Console style per level in verbose mode
LEVEL_STYLES = {"ERROR": "red", "WARNING": "yellow", "DEBUG": "dim"}


def _banner(char: str, lines: Iterable[str]) -> str:
    rule = char * 80
    return "\n".join(["", rule, *lines, rule, ""]) + "\n"


class DeployLogger:
    """
    Log sink for one fleetdeploy operation.

    File: logs/<scope>/<date>/<time>_<operation>.log, line buffered so it can
    be tailed while a stage runs. Node threads share one logger; writes are
    serialized.
    """

    def __init__(
        self,
        scope: str,
        operation: str,
        verbose: bool = False,
        logs_root: Optional[Path] = None,
        output: Optional[Console] = None,
    ):
        """
        Args:
            scope: Log scope ('fleet', 'local' or 'ci')
            operation: Operation name, e.g. 'deploy-app'
            verbose: Stream every log line to the console
            logs_root: Directory holding logs/ (defaults to the workspace)
            output: Console to print to
        """
        self.scope = scope
        self.operation = operation
        self.verbose = verbose
        self.console = output or console
        self.current_step = ""
        self.has_errors = False
        self.cancelled = False
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

        if logs_root is None:
            from fleetdeploy.utils import get_workspace_root

            logs_root = get_workspace_root()

        now = datetime.now()
        logs_dir = logs_root / "logs" / scope / now.strftime(LOG_DATE_FORMAT)
        logs_dir.mkdir(parents=True, exist_ok=True)
        self.log_path: Path = logs_dir / f"{now.strftime(LOG_TIME_FORMAT)}_{operation}.log"
        self.log_file: Optional[TextIO] = open(self.log_path, "w", buffering=1)

        self._write(
            _banner(
                "=",
                [
                    "fleetdeploy log",
                    f"Scope: {scope}",
                    f"Operation: {operation}",
                    f"Started: {now.isoformat()}",
                ],
            )
        )

    # Secrets

    def register_secret(self, value: Optional[str]) -> None:
        """Mask value in every line written from now on (any non-empty value)."""
        if value:
            with self._lock:
                self._secrets.add(value)

    def register_secrets(self, values: Iterable[Optional[str]]) -> None:
        for value in values:
            self.register_secret(value)

    def mask(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, SECRET_MASK)
        return text

    # Sinks

    def _write(self, text: str) -> None:
        with self._lock:
            if self.log_file is None:
                return
            try:
                self.log_file.write(text)
            except (BlockingIOError, OSError):
                # A slow disk must not stall node threads
                pass

    def _show(self, text: str) -> str:
        """Masked text, escaped for insertion into console markup."""
        return escape(self.mask(text))

    def log(self, message: str, level: str = "INFO"):
        """Write a timestamped line; echo it to the console in verbose mode."""
        message = self.mask(message)
        self._write(f"[{datetime.now():%H:%M:%S}] [{level}] {message}\n")

        if self.verbose:
            style = LEVEL_STYLES.get(level)
            shown = escape(message)
            self.console.print(f"[{style}]{shown}[/{style}]" if style else shown)

    def log_command(self, command: str):
        self.log(f"Executing: {command}", "DEBUG")

    def log_output(self, output: str, stream: str = "stdout"):
        """
        Record command output, one prefixed line per output line.

        Always written to the file; shown only in verbose mode.
        """
        if not output:
            return

        clean = self.mask(ANSI_ESCAPE.sub("", output))
        self._write("".join(f"  [{stream}] {line}\n" for line in clean.splitlines()))

        if self.verbose:
            self.console.print(clean, markup=False)

    def log_error(self, error: str, context: Optional[str] = None):
        """Record an error block in the file and print it (always)."""
        self.has_errors = True
        error = self.mask(error)
        context = self.mask(context) if context else None

        lines = ["ERROR", error]
        if context:
            lines.append(f"Context: {context}")
        self._write(_banner("!", lines) + "\n")

        if not self.verbose:
            self.console.print()
        self.console.print(f"[bold red]✗ {escape(error)}[/bold red]")
        if context:
            self.console.print(f"  [color(208)]{escape(context)}[/color(208)]")

    # Progress view

    def step(self, step_name: str):
        if self.current_step and not self.verbose:
            self.console.print()

        self.current_step = step_name
        self.log(f"Step: {step_name}")

        if not self.verbose:
            self.console.print(f"[color(214)]▶[/color(214)] [white]{self._show(step_name)}[/white]")

    def success(self, message: str):
        self.log(message)
        if not self.verbose:
            self.console.print(f"  [dim]✓ {self._show(message)}[/dim]")

    def warning(self, message: str):
        self.log(message, "WARNING")
        if not self.verbose:
            self.console.print(f"  [yellow]⚠[/yellow] [dim]{self._show(message)}[/dim]")

    # Lifecycle

    @property
    def status(self) -> str:
        if self.cancelled:
            return "CANCELLED"
        return "FAILED" if self.has_errors else "SUCCESS"

    def close(self):
        """Write the footer and close the file (idempotent)."""
        if self.log_file is None:
            return
        self._write(
            _banner("=", [f"Completed: {datetime.now().isoformat()}", f"Status: {self.status}"])
        )
        with self._lock:
            self.log_file.close()
            self.log_file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, _exc_tb):
        if exc_type is None or issubclass(exc_type, SystemExit):
            pass
        elif issubclass(exc_type, (KeyboardInterrupt, OperationCancelled)):
            self.cancelled = True
            self.log("Cancelled by operator", "WARNING")
        elif isinstance(exc_val, FleetDeployError):
            self.log_error(exc_val.message, context=exc_val.context)
        else:
            self.log_error(
                str(exc_val) if exc_val else "Operation failed",
                context=exc_type.__name__,
            )
        self.close()
        return False


def run_with_progress(
    logger: DeployLogger,
    command: list[str],
    description: str,
    cwd: Optional[Path] = None,
) -> tuple[int, str, str]:
    """
    Run a local command behind a spinner; output goes to the log.

    Returns:
        (returncode, stdout, stderr)
    """
    logger.log_command(" ".join(command))

    def run() -> subprocess.CompletedProcess:
        result = subprocess.run(command, cwd=cwd, capture_output=True, text=True)
        logger.log_output(result.stdout, "stdout")
        logger.log_output(result.stderr, "stderr")
        return result

    if logger.verbose:
        result = run()
        return result.returncode, result.stdout, result.stderr

    spinner = Padding(Spinner("dots", text=f"[cyan]{description}...[/cyan]"), (0, 0, 0, 2))
    with Live(spinner, console=logger.console, refresh_per_second=10) as live:
        result = run()
        if result.returncode == 0:
            mark = Text("  ✓ ", style="dim")
        else:
            mark = Text("  ✗ ", style="red")
        mark.append(description, style="dim")
        live.update(mark)

    return result.returncode, result.stdout, result.stderr
