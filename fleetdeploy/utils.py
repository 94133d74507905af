"""
fleetdeploy Utilities

Workspace discovery, the retry-with-backoff combinator and the bounded
per-node worker pool shared by every stage.
"""

import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, TypeVar, Iterable, Tuple, Type

from fleetdeploy.constants import DEFAULT_MAX_WORKERS

T = TypeVar("T")
N = TypeVar("N")


def get_workspace_root() -> Path:
    """
    Get the deployment workspace directory.

    Returns:
        Path from FLEETDEPLOY_WORKSPACE, or the current working directory
    """
    override = os.environ.get("FLEETDEPLOY_WORKSPACE")
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd()


def check_tool(tool_name: str) -> bool:
    """Check if a tool is installed."""
    return shutil.which(tool_name) is not None


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (),
    should_retry: Optional[Callable[[T], bool]] = None,
    on_retry: Optional[Callable[[int, Optional[BaseException]], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call func until it succeeds or attempts run out.

    An attempt is retried when it raises one of retry_on, or when
    should_retry(result) is true. Any other exception propagates immediately.

    Args:
        func: Zero-argument callable
        attempts: Total number of attempts (>= 1)
        delay: Wait before the second attempt
        backoff: Multiplier applied to the delay after each attempt
        max_delay: Upper bound for a single wait
        retry_on: Exception types that trigger a retry
        should_retry: Predicate on the result that triggers a retry
        on_retry: Callback (attempt_number, exception_or_None) before waiting
        sleep: Sleeper (injected in tests)

    Returns:
        The last result

    Raises:
        The last retryable exception when every attempt raised
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    wait = delay
    for attempt in range(1, attempts + 1):
        last_attempt = attempt == attempts
        try:
            result = func()
        except retry_on as e:
            if last_attempt:
                raise
            if on_retry:
                on_retry(attempt, e)
        else:
            if should_retry is None or last_attempt or not should_retry(result):
                return result
            if on_retry:
                on_retry(attempt, None)

        sleep(min(wait, max_delay))
        wait *= backoff

    raise AssertionError("unreachable")


def run_per_node(
    nodes: Iterable[N],
    func: Callable[[N], T],
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[Tuple[N, Optional[T], Optional[Exception]]]:
    """
    Run func for every node on a bounded thread pool.

    A node's exception is captured and returned alongside it; it never
    prevents sibling nodes from completing.

    Returns:
        List of (node, result, error) in input order
    """
    nodes = list(nodes)
    if not nodes:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(nodes)))) as pool:
        futures = [(node, pool.submit(func, node)) for node in nodes]
        outcomes = []
        for node, future in futures:
            try:
                outcomes.append((node, future.result(), None))
            except Exception as e:
                outcomes.append((node, None, e))
        return outcomes
