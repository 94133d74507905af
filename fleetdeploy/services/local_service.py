"""
Local development surfaces: docker-compose stack, dev servers and the
deployment test script. Background processes belong to the stage context's
LocalProcessGroup and are terminated when the run ends or is interrupted.
"""

import subprocess
from typing import Callable

import requests

from fleetdeploy.constants import (
    LOCAL_BACKEND_DIR,
    LOCAL_BACKEND_HEALTH_URL,
    LOCAL_BACKEND_SETTLE_DELAY,
    LOCAL_COMPOSE_CMD,
    LOCAL_CONTAINER_PREFIX,
    LOCAL_DOCKER_SETTLE_DELAY,
    LOCAL_FRONTEND_DIR,
    LOCAL_FRONTEND_SETTLE_DELAY,
    LOCAL_FRONTEND_URL,
    LOCAL_LOGS_DIR,
    LOCAL_MONGO_SERVICE,
    LOCAL_MONGO_SETTLE_DELAY,
    LOCAL_TEST_SCRIPT,
)
from fleetdeploy.context import StageContext
from fleetdeploy.exceptions import LocalRunError, OperationCancelled, PrerequisiteMissing
from fleetdeploy.logger import run_with_progress


def is_reachable(url: str, timeout: float = 3.0) -> bool:
    """Any HTTP answer counts, like `curl -s`."""
    try:
        requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException:
        return False
    return True


class LocalRunner:
    """Runs the application on the operator's machine."""

    def __init__(
        self,
        ctx: StageContext,
        probe: Callable[[str], bool] = is_reachable,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.ctx = ctx
        self.logger = ctx.logger
        self.probe = probe
        self.runner = runner

    @property
    def logs_dir(self):
        return self.ctx.workspace / LOCAL_LOGS_DIR

    def _compose(self, *args: str) -> list[str]:
        return [*LOCAL_COMPOSE_CMD, *args]

    def _running_containers(self) -> str:
        result = self.runner(
            ["docker", "ps", "--format", "{{.Names}} {{.Image}}"],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise PrerequisiteMissing(
                "Docker is not available", context=(result.stderr or "").strip()
            )
        return result.stdout

    def _check(self, url: str, name: str) -> bool:
        if self.probe(url):
            self.logger.success(f"{name} is reachable at {url}")
            return True
        self.logger.warning(f"{name} is not reachable at {url}")
        return False

    def _print_urls(self) -> None:
        self.logger.console.print(
            "\n[bold]Application URLs[/bold]\n"
            f"  Frontend:     {LOCAL_FRONTEND_URL}\n"
            "  Backend API:  http://localhost:8080/api/todos\n"
            f"  Health Check: {LOCAL_BACKEND_HEALTH_URL}\n"
        )

    def docker_run(self, follow_logs: bool = True) -> bool:
        """
        Rebuild and start the docker-compose stack.

        Returns:
            True if both services answered after the settle period
        """
        workspace = self.ctx.workspace
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.logger.step("Stopping existing containers")
        run_with_progress(
            self.logger, self._compose("down", "--volumes"), "Stopping stack", cwd=workspace
        )
        run_with_progress(
            self.logger, ["docker", "container", "prune", "-f"], "Pruning containers", cwd=workspace
        )

        self.logger.step("Building and starting the application")
        returncode, _, stderr = run_with_progress(
            self.logger, self._compose("up", "--build", "-d"), "Building images", cwd=workspace
        )
        if returncode != 0:
            raise LocalRunError("docker-compose up failed", context=stderr.strip())

        self.ctx.settle(LOCAL_DOCKER_SETTLE_DELAY, "waiting for containers")

        self.logger.step("Checking services")
        if (workspace / LOCAL_TEST_SCRIPT).is_file():
            healthy = self.run_script() == 0
        else:
            backend = self._check(LOCAL_BACKEND_HEALTH_URL, "Backend")
            frontend = self._check(LOCAL_FRONTEND_URL, "Frontend")
            healthy = backend and frontend

        self._print_urls()

        if follow_logs:
            self.logger.console.print("[dim]Press Ctrl+C to stop following logs...[/dim]")
            self.ctx.processes.spawn(self._compose("logs", "-f"), cwd=workspace)
            self._wait_until_stopped()

        return healthy

    def _wait_until_stopped(self) -> None:
        """Block on the background processes. Ctrl+C here is a normal exit."""
        try:
            self.ctx.processes.wait()
        except (KeyboardInterrupt, OperationCancelled):
            stopped = self.ctx.processes.terminate_all()
            self.logger.log(f"Stopped by operator, {stopped} local process(es) terminated")
            self.logger.console.print("\n[dim]Services stopped[/dim]")

    def _ensure_mongo(self) -> None:
        if "mongo" in self._running_containers():
            self.logger.success("MongoDB is already running")
            return

        returncode, _, stderr = run_with_progress(
            self.logger,
            self._compose("up", "-d", LOCAL_MONGO_SERVICE),
            "Starting MongoDB",
            cwd=self.ctx.workspace / LOCAL_BACKEND_DIR,
        )
        if returncode != 0:
            raise LocalRunError("Could not start MongoDB", context=stderr.strip())
        self.ctx.settle(LOCAL_MONGO_SETTLE_DELAY, "waiting for MongoDB")

    def _start_server(
        self, name: str, command: list[str], directory: str, log_name: str,
        url: str, settle: float,
    ) -> None:
        log_path = self.logs_dir / log_name
        self.logger.step(f"Starting {name}")
        self.ctx.processes.spawn(
            command, cwd=self.ctx.workspace / directory, log_file=log_path
        )
        self.ctx.settle(settle, f"waiting for {name}")

        if not self._check(url, name):
            self.ctx.processes.terminate_all()
            raise LocalRunError(
                f"{name} failed to start", context=f"Check {LOCAL_LOGS_DIR}/{log_name}"
            )

    def dev_run(self, wait: bool = True) -> None:
        """
        Start MongoDB, the Spring Boot backend and the Next.js dev server.

        Raises:
            LocalRunError: If a server does not come up (both are stopped)
        """
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.logger.step("Checking MongoDB")
        self._ensure_mongo()

        self._start_server(
            "Backend", ["./mvnw", "spring-boot:run"], LOCAL_BACKEND_DIR,
            "backend-dev.log", LOCAL_BACKEND_HEALTH_URL, LOCAL_BACKEND_SETTLE_DELAY,
        )
        self._start_server(
            "Frontend", ["npm", "run", "dev"], LOCAL_FRONTEND_DIR,
            "frontend-dev.log", LOCAL_FRONTEND_URL, LOCAL_FRONTEND_SETTLE_DELAY,
        )

        self._print_urls()
        self.logger.console.print(
            f"[dim]Logs: {LOCAL_LOGS_DIR}/backend-dev.log, {LOCAL_LOGS_DIR}/frontend-dev.log[/dim]"
        )

        if wait:
            self.logger.console.print("[dim]Press Ctrl+C to stop all services...[/dim]")
            self._wait_until_stopped()

    def run_script(self) -> int:
        """Run the deployment test script attached to the terminal."""
        script = self.ctx.workspace / LOCAL_TEST_SCRIPT
        if not script.is_file():
            raise PrerequisiteMissing(f"Test script not found: {LOCAL_TEST_SCRIPT}")

        self.logger.log_command(f"./{LOCAL_TEST_SCRIPT}")
        result = self.runner([f"./{LOCAL_TEST_SCRIPT}"], cwd=self.ctx.workspace)
        self.logger.log(f"{LOCAL_TEST_SCRIPT} exited {result.returncode}")
        return result.returncode

    def run_tests(self) -> int:
        """
        Run the deployment tests against the local docker stack.

        Raises:
            PrerequisiteMissing: If no application containers are running
        """
        running = self._running_containers()
        if LOCAL_CONTAINER_PREFIX not in running:
            raise PrerequisiteMissing(
                "No application containers running",
                context="Start the stack first: fleetdeploy local-docker",
            )
        return self.run_script()
