"""
Base Command Class

Every fleetdeploy command runs one stage inside a StageContext and turns
its outcome into a process exit code.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from rich.console import Console

from fleetdeploy.config import FleetConfig, load_config
from fleetdeploy.context import (
    CancellationToken,
    LocalProcessGroup,
    StageContext,
    install_interrupt_handlers,
)
from fleetdeploy.exceptions import FleetDeployError, OperationCancelled
from fleetdeploy.logger import DeployLogger
from fleetdeploy.ui_components import show_header
from fleetdeploy.utils import get_workspace_root


class BaseCommand(ABC):
    """
    Stage command wrapper.

    Sets up:
    - Workspace and fleet.yml
    - Per-operation DeployLogger
    - Stage context with cancellation and local process cleanup
    - Error handling with exit codes (0 ok, 1 failure, 130 interrupted)
    """

    scope = "fleet"
    # Operation name used for the log file
    operation = "command"

    def __init__(
        self,
        verbose: bool = False,
        workspace: Optional[Path] = None,
        config_file: Optional[Path] = None,
        console: Optional[Console] = None,
    ):
        self.verbose = verbose
        self.console = console or Console()
        self.workspace = workspace or get_workspace_root()
        self.config_file = config_file
        self.logger: Optional[DeployLogger] = None
        self.ctx: Optional[StageContext] = None

    def init_logger(self, operation: str) -> DeployLogger:
        """
        Initialize command logger.

        Args:
            operation: Command name, used in the log file name
        """
        self.logger = DeployLogger(
            self.scope,
            operation,
            verbose=self.verbose,
            logs_root=self.workspace,
            output=self.console,
        )
        return self.logger

    def load_config(self) -> FleetConfig:
        return load_config(self.workspace, self.config_file)

    def build_context(
        self,
        operation: str,
        token: CancellationToken,
        processes: LocalProcessGroup,
    ) -> StageContext:
        config = self.load_config()
        logger = self.init_logger(operation)
        self.ctx = StageContext(
            config=config,
            logger=logger,
            cancel_token=token,
            processes=processes,
        )
        return self.ctx

    def show_header(
        self,
        title: str,
        subtitle: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Show command header (skip in verbose mode)."""
        if not self.verbose:
            show_header(
                title=title,
                subtitle=subtitle,
                details=details,
                console=self.console,
            )

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]✓ {message}[/green]")

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]✗ {message}[/red]")

    def print_dim(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

    def _print_log_location(self) -> None:
        if self.logger:
            self.console.print(f"[dim]Logs saved to:[/dim] {self.logger.log_path}\n")

    @abstractmethod
    def execute(self, ctx: StageContext) -> int:
        """
        Execute command logic.

        Returns:
            Process exit code
        """
        pass

    def run(self) -> None:
        """
        Run command with error handling.

        Raises:
            SystemExit: With the command's exit code when it is not 0
        """
        token = CancellationToken()
        code = 0

        with LocalProcessGroup() as processes:
            restore = install_interrupt_handlers(token, processes)
            try:
                ctx = self.build_context(self.operation, token, processes)
                with ctx.logger:
                    code = self.execute(ctx)
            except (KeyboardInterrupt, OperationCancelled):
                token.cancel()
                terminated = processes.terminate_all()
                self.console.print("\n[yellow]⚠️  Operation cancelled by user[/yellow]")
                if terminated:
                    self.print_dim(f"Stopped {terminated} local process(es)")
                self._print_log_location()
                code = 130
            except SystemExit:
                raise
            except FleetDeployError as e:
                # Once the logger exists it has already reported the error
                if self.logger is None:
                    self.print_error(e.message)
                    if e.context:
                        self.print_dim(e.context)
                self.console.print()
                self._print_log_location()
                code = 1
            except Exception as e:
                if self.logger is None:
                    self.print_error(f"{type(e).__name__}: {e}")
                self.console.print()
                self._print_log_location()
                code = 1
            finally:
                restore()

        if code != 0:
            raise SystemExit(code)
