"""Tests for the per-operation log sink."""

import pytest

from fleetdeploy.exceptions import OperationCancelled, RemoteCommandError


def test_secret_masked_in_file_and_console(logger, output):
    logger.register_secret("ghp_topsecret")
    logger.verbose = True

    logger.log("login with ghp_topsecret")
    logger.log_output("token=ghp_topsecret\n", "stderr")
    logger.close()

    text = logger.log_path.read_text()
    assert "ghp_topsecret" not in text
    assert "login with ********" in text
    assert "  [stderr] token=********" in text
    assert "ghp_topsecret" not in output.getvalue()


def test_short_values_are_masked_and_empty_ignored(logger):
    logger.register_secrets(["ab", None, ""])
    assert logger.mask("ab cd") == "******** cd"


def test_markup_in_messages_is_printed_literally(logger, output):
    logger.register_secret("[bold]tok")
    logger.success("[frontend] login with [bold]tok")

    assert "[frontend] login with ********" in output.getvalue()


def test_log_output_strips_ansi(logger):
    logger.log_output("\x1b[32mok\x1b[0m\nnext")
    logger.close()

    text = logger.log_path.read_text()
    assert "  [stdout] ok\n  [stdout] next\n" in text


def test_error_in_context_is_recorded(logger, output):
    with pytest.raises(RemoteCommandError):
        with logger:
            raise RemoteCommandError("203.0.113.30", "docker compose up", "no such image")

    text = logger.log_path.read_text()
    assert "no such image" in text
    assert "Status: FAILED" in text
    assert logger.has_errors
    assert "✗" in output.getvalue()


def test_cancellation_is_not_an_error(logger):
    with pytest.raises(OperationCancelled):
        with logger:
            raise OperationCancelled("stopped")

    assert not logger.has_errors
    assert "Status: CANCELLED" in logger.log_path.read_text()


def test_close_is_idempotent(logger):
    logger.success("done")
    logger.close()
    logger.close()
    logger.log("after close")

    text = logger.log_path.read_text()
    assert text.count("Status: SUCCESS") == 1
    assert "after close" not in text
