"""Tests for the local docker/dev runners and process cleanup."""

import signal
import sys
from subprocess import CompletedProcess
from unittest.mock import patch

import pytest

from fleetdeploy.constants import LOCAL_TEST_SCRIPT
from fleetdeploy.context import CancellationToken, LocalProcessGroup, install_interrupt_handlers
from fleetdeploy.exceptions import LocalRunError, PrerequisiteMissing
from fleetdeploy.services.local_service import LocalRunner


def docker_ps(stdout):
    def runner(cmd, **kwargs):
        if cmd[:2] == ["docker", "ps"]:
            return CompletedProcess(cmd, 0, stdout=stdout, stderr="")
        return CompletedProcess(cmd, 0)

    return runner


class FakeProcesses:
    def __init__(self):
        self.spawned = []
        self.terminated = 0
        self.waited = False
        self.interrupt = False

    def spawn(self, command, cwd=None, log_file=None):
        self.spawned.append((command, cwd, log_file))

    def terminate_all(self):
        self.terminated += 1
        return len(self.spawned)

    def wait(self):
        self.waited = True
        if self.interrupt:
            raise KeyboardInterrupt()


@pytest.fixture
def processes(ctx):
    ctx.processes = FakeProcesses()
    return ctx.processes


def test_process_group_terminates_on_exit():
    with LocalProcessGroup(terminate_timeout=5) as group:
        process = group.spawn([sys.executable, "-c", "import time; time.sleep(60)"])
        assert group.running == [process]

    assert process.poll() is not None
    assert group.running == []


def test_process_group_terminates_on_error():
    with pytest.raises(RuntimeError):
        with LocalProcessGroup(terminate_timeout=5) as group:
            process = group.spawn([sys.executable, "-c", "import time; time.sleep(60)"])
            raise RuntimeError("boom")

    assert process.poll() is not None


def test_run_tests_requires_containers(ctx):
    runner = LocalRunner(ctx, runner=docker_ps("mongo:7 mongo\n"))
    with pytest.raises(PrerequisiteMissing):
        runner.run_tests()


def test_run_tests_runs_script(ctx):
    script = ctx.workspace / LOCAL_TEST_SCRIPT
    script.write_text("#!/bin/sh\nexit 0\n")
    calls = []

    def runner(cmd, **kwargs):
        calls.append(cmd)
        if cmd[:2] == ["docker", "ps"]:
            return CompletedProcess(cmd, 0, stdout="todo-backend img\ntodo-frontend img\n")
        return CompletedProcess(cmd, 3)

    assert LocalRunner(ctx, runner=runner).run_tests() == 3
    assert calls[-1] == [f"./{LOCAL_TEST_SCRIPT}"]


def test_dev_run_starts_both_servers(ctx, processes):
    runner = LocalRunner(ctx, probe=lambda url: True, runner=docker_ps("mongodb mongo:7\n"))

    runner.dev_run()

    commands = [command for command, _, _ in processes.spawned]
    assert commands == [["./mvnw", "spring-boot:run"], ["npm", "run", "dev"]]
    assert processes.spawned[0][1] == ctx.workspace / "demo"
    assert processes.spawned[1][2] == ctx.workspace / "logs" / "frontend-dev.log"
    assert processes.waited


def test_dev_run_stops_everything_when_backend_fails(ctx, processes):
    runner = LocalRunner(ctx, probe=lambda url: False, runner=docker_ps("mongodb mongo:7\n"))

    with pytest.raises(LocalRunError) as exc_info:
        runner.dev_run()

    assert "Backend" in exc_info.value.message
    assert processes.terminated == 1
    assert len(processes.spawned) == 1


@patch("fleetdeploy.services.local_service.run_with_progress")
def test_docker_run_failure(mock_run, ctx, processes):
    mock_run.side_effect = [(0, "", ""), (0, "", ""), (1, "", "build failed")]

    with pytest.raises(LocalRunError) as exc_info:
        LocalRunner(ctx).docker_run()

    assert exc_info.value.context == "build failed"
    assert processes.spawned == []


@patch("fleetdeploy.services.local_service.run_with_progress", return_value=(0, "", ""))
def test_docker_run_probes_and_follows_logs(mock_run, ctx, processes):
    probed = []
    runner = LocalRunner(ctx, probe=lambda url: probed.append(url) or True)

    assert runner.docker_run() is True

    assert probed == ["http://localhost:8080/actuator/health", "http://localhost:3000"]
    assert processes.spawned[0][0] == ["docker-compose", "logs", "-f"]
    assert processes.waited


def test_interrupt_handler_while_group_is_locked():
    group = LocalProcessGroup(terminate_timeout=5)
    token = CancellationToken()
    restore = install_interrupt_handlers(token, group)
    try:
        handler = signal.getsignal(signal.SIGINT)
        with group._lock:
            with pytest.raises(KeyboardInterrupt):
                handler(signal.SIGINT, None)
    finally:
        restore()

    assert token.cancelled


@patch("fleetdeploy.services.local_service.run_with_progress", return_value=(0, "", ""))
def test_ctrl_c_while_following_logs_is_a_normal_exit(mock_run, ctx, processes):
    processes.interrupt = True
    runner = LocalRunner(ctx, probe=lambda url: True)

    assert runner.docker_run() is True
    assert processes.terminated == 1


def test_ctrl_c_stops_dev_servers_normally(ctx, processes):
    processes.interrupt = True
    runner = LocalRunner(ctx, probe=lambda url: True, runner=docker_ps("mongodb mongo:7\n"))

    runner.dev_run()

    assert processes.terminated == 1
    assert len(processes.spawned) == 2
