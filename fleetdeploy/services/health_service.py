"""Service health probes for fleet nodes"""

import json
import time
from typing import Any, Callable, Iterable, Optional

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from fleetdeploy.constants import (
    DEFAULT_MAX_WORKERS,
    HEALTH_PROBE_TIMEOUT,
    HEALTH_RETRY_ATTEMPTS,
    HEALTH_RETRY_DELAY,
)
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import Endpoint, HealthReport, Node, ServiceStatus
from fleetdeploy.utils import retry_with_backoff, run_per_node

# Control node serves a self-signed CA certificate
urllib3.disable_warnings(InsecureRequestWarning)

HEALTHY_STATUS_VALUES = ("UP", "OK", "RUNNING", "HEALTHY")
UNHEALTHY_SIMPLE_BODIES = ("starting", "stopping", "error", "unknown", "down")


def down_components(payload: Any, path: str = "") -> list[str]:
    """
    Components a JSON health body reports as not up.

    Handles the API envelope ({"success": .., "data": {"status": "UP",
    "database": {"status": "DOWN"}}}) as well as actuator-style bodies.
    """
    found = []
    if not isinstance(payload, dict):
        return found

    if payload.get("success") is False:
        found.append(f"{path or 'response'}.success=false")

    status = payload.get("status")
    if isinstance(status, str) and status.upper() not in HEALTHY_STATUS_VALUES:
        found.append(f"{path or 'status'}={status}")

    for key, value in payload.items():
        if key in ("status", "success"):
            continue
        child = f"{path}.{key}" if path else key
        if isinstance(value, dict):
            found.extend(down_components(value, child))
        elif isinstance(value, str) and value.upper() == "DOWN":
            found.append(f"{child}={value}")

    return found


def classify_response(status_code: int, body: str) -> tuple[ServiceStatus, str]:
    """
    Classify one HTTP response.

    Returns:
        (status, detail)
    """
    if not 200 <= status_code < 300:
        return ServiceStatus.DEGRADED, f"HTTP {status_code}"

    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None

    if payload is None:
        text = (body or "").strip().lower()
        if text in UNHEALTHY_SIMPLE_BODIES:
            return ServiceStatus.DEGRADED, f"service reports '{text}'"
        return ServiceStatus.UP, f"HTTP {status_code}"

    failures = down_components(payload)
    if failures:
        return ServiceStatus.DEGRADED, ", ".join(failures)
    return ServiceStatus.UP, f"HTTP {status_code}"


class HealthVerifier:
    """HTTP probes with a short timeout, classified into Up/Degraded/Down."""

    def __init__(
        self,
        logger: Optional[DeployLogger] = None,
        timeout: float = HEALTH_PROBE_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.logger = logger
        self.timeout = timeout
        self.sleep = sleep
        self.max_workers = max_workers

    def _probe(
        self, url: str, verify_tls: bool
    ) -> tuple[Optional[requests.Response], ServiceStatus, str]:
        """Response, or None with the status and detail of the failed request."""
        try:
            return requests.get(url, timeout=self.timeout, verify=verify_tls), ServiceStatus.UP, ""
        except requests.exceptions.Timeout:
            return None, ServiceStatus.DOWN, f"timed out after {self.timeout:.0f}s"
        except requests.exceptions.ConnectionError:
            return None, ServiceStatus.DOWN, "connection refused"
        except requests.exceptions.RequestException as e:
            # The host answered, just not with a usable response
            return None, ServiceStatus.DEGRADED, f"{type(e).__name__}: {e}"

    def verify(self, node: Node, endpoint: Optional[Endpoint] = None) -> HealthReport:
        """
        Probe a node's status endpoint once.

        A 404 on the health route falls back to the liveness route.
        """
        endpoint = endpoint or Endpoint.for_node(node)
        url = endpoint.url
        response, status, detail = self._probe(url, endpoint.verify_tls)

        if response is not None and response.status_code == 404 and endpoint.fallback_url:
            url = endpoint.fallback_url
            response, status, detail = self._probe(url, endpoint.verify_tls)

        if response is not None:
            status, detail = classify_response(response.status_code, response.text)

        if self.logger:
            self.logger.log(f"[{node.name}] {url} -> {status.value} ({detail})")

        return HealthReport(node=node, service_status=status, detail=f"{url}: {detail}")

    def verify_with_retry(
        self,
        node: Node,
        endpoint: Optional[Endpoint] = None,
        attempts: int = HEALTH_RETRY_ATTEMPTS,
        delay: float = HEALTH_RETRY_DELAY,
    ) -> HealthReport:
        """Probe until Up or attempts run out; returns the last report."""
        return retry_with_backoff(
            lambda: self.verify(node, endpoint),
            attempts=attempts,
            delay=delay,
            backoff=1.0,
            should_retry=lambda report: not report.is_up,
            sleep=self.sleep,
        )

    def verify_all(
        self,
        nodes: Iterable[Node],
        attempts: int = HEALTH_RETRY_ATTEMPTS,
        delay: float = HEALTH_RETRY_DELAY,
    ) -> list[HealthReport]:
        """Probe every node concurrently, in input order."""
        reports = []
        for node, report, error in run_per_node(
            nodes,
            lambda n: self.verify_with_retry(n, attempts=attempts, delay=delay),
            self.max_workers,
        ):
            if error is not None:
                report = HealthReport(
                    node=node, service_status=ServiceStatus.DOWN, detail=str(error)
                )
            reports.append(report)
        return reports
