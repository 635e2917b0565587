"""Post-deploy health verification.

Combines two independent views of the service:

- HTTP smoke tests against the service address (``/health``, ``/items``
  read and create, plus a non-fatal ``/metrics`` probe), each with bounded
  retries and a fixed backoff;
- the control plane's view (ready replicas, Service endpoints, pod phases and
  the number of error lines in recent logs).

Both signals are reported side by side. The overall result is the AND of a
healthy cluster, passing smoke tests and a tolerable log error count.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from deploykit.errors import ValidationError
from deploykit.kubernetes.cluster import PodSummary
from deploykit.observability.logging import get_logger

if TYPE_CHECKING:
    from deploykit.config.settings import HealthCheckSettings, WorkloadSettings
    from deploykit.kubernetes.cluster import ClusterClient
    from deploykit.models import DeploymentTarget


log = get_logger(__name__)

ERROR_LINE_PATTERN = re.compile(r"error|exception|fatal", re.IGNORECASE)
MAX_REPORTED_ERROR_LINES = 20

SMOKE_TEST_ITEM = {
    "name": "deploykit-smoke-test",
    "description": "Test item from health check",
}


@dataclass
class EndpointCheck:
    """Result of probing one HTTP endpoint."""

    name: str
    url: str
    method: str = "GET"
    expected_status: int = 200
    required: bool = True
    attempts: int = 0
    last_status: int | None = None
    passed: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "method": self.method,
            "expected_status": self.expected_status,
            "required": self.required,
            "attempts": self.attempts,
            "last_status": self.last_status,
            "passed": self.passed,
            "error": self.error,
        }


@dataclass
class ClusterHealth:
    """Control-plane view of the workload."""

    deployment_found: bool = False
    desired: int = 0
    ready: int = 0
    endpoint_count: int = 0
    pods: list[PodSummary] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.deployment_found and self.ready == self.desired and self.endpoint_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_found": self.deployment_found,
            "desired": self.desired,
            "ready": self.ready,
            "endpoint_count": self.endpoint_count,
            "pods": [
                {"name": p.name, "phase": p.phase, "ready": p.ready, "restarts": p.restarts}
                for p in self.pods
            ],
            "passed": self.passed,
        }


@dataclass
class HealthReport:
    """Structured outcome of a health check run."""

    environment: str
    namespace: str
    endpoint: str
    checks: list[EndpointCheck] = field(default_factory=list)
    cluster: ClusterHealth = field(default_factory=ClusterHealth)
    log_error_count: int = 0
    log_error_threshold: int = 0
    log_errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def smoke_tests_passed(self) -> bool:
        return all(check.passed for check in self.checks if check.required)

    @property
    def logs_passed(self) -> bool:
        return self.log_error_count <= self.log_error_threshold

    @property
    def passed(self) -> bool:
        return self.cluster.passed and self.smoke_tests_passed and self.logs_passed

    def failures(self) -> list[str]:
        """Human-readable reasons the report did not pass."""
        reasons = []
        if not self.cluster.deployment_found:
            reasons.append("deployment not found")
        elif self.cluster.ready != self.cluster.desired:
            reasons.append(f"only {self.cluster.ready}/{self.cluster.desired} replicas ready")
        if self.cluster.deployment_found and self.cluster.endpoint_count == 0:
            reasons.append("service has no endpoints")
        reasons.extend(
            f"{check.name} failed ({check.error})"
            for check in self.checks
            if check.required and not check.passed
        )
        if not self.logs_passed:
            reasons.append(f"{self.log_error_count} error lines in recent logs")
        return reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "environment": self.environment,
            "namespace": self.namespace,
            "endpoint": self.endpoint,
            "checks": [check.to_dict() for check in self.checks],
            "cluster": self.cluster.to_dict(),
            "logs": {
                "error_count": self.log_error_count,
                "threshold": self.log_error_threshold,
                "sample": self.log_errors,
                "passed": self.logs_passed,
            },
            "passed": self.passed,
        }

    def render_text(self) -> str:
        """Render the report for terminal output."""
        lines = [
            "=== Health Check Report ===",
            f"Timestamp: {self.timestamp.isoformat()}",
            f"Environment: {self.environment}",
            f"Namespace: {self.namespace}",
            f"Endpoint: {self.endpoint}",
            "",
            "Cluster:",
        ]
        mark = _mark(self.cluster.deployment_found)
        lines.append(f"  {mark} Deployment exists")
        if self.cluster.deployment_found:
            ready_ok = self.cluster.ready == self.cluster.desired
            lines.append(
                f"  {_mark(ready_ok)} Replicas ready: {self.cluster.ready}/{self.cluster.desired}"
            )
            endpoints_ok = self.cluster.endpoint_count > 0
            lines.append(
                f"  {_mark(endpoints_ok)} Service endpoints: {self.cluster.endpoint_count}"
            )
        for pod in self.cluster.pods:
            pod_ok = pod.phase == "Running"
            lines.append(
                f"  {_mark(pod_ok)} Pod {pod.name}: {pod.phase} "
                f"({'ready' if pod.ready else 'not ready'}, {pod.restarts} restarts)"
            )

        lines.extend(["", "Endpoints:"])
        for check in self.checks:
            status = check.last_status if check.last_status is not None else "-"
            suffix = "" if check.required else " (informational)"
            detail = f", {check.error}" if check.error and not check.passed else ""
            lines.append(
                f"  {_mark(check.passed)} {check.method} {check.url} -> {status} "
                f"after {check.attempts} attempt(s){detail}{suffix}"
            )

        lines.extend(["", "Logs:"])
        lines.append(
            f"  {_mark(self.logs_passed)} {self.log_error_count} error lines "
            f"(threshold {self.log_error_threshold})"
        )
        lines.extend(f"    {line}" for line in self.log_errors)

        lines.extend(["", "=== Summary ==="])
        if self.passed:
            lines.append("All health checks passed")
        else:
            lines.append("Some health checks failed:")
            lines.extend(f"  - {reason}" for reason in self.failures())
        return "\n".join(lines)


def _mark(ok: bool) -> str:
    return "✓" if ok else "✗"


def _has_item_list(response: httpx.Response) -> bool:
    try:
        body = response.json()
    except ValueError:
        return False
    if isinstance(body, list):
        return True
    return isinstance(body, dict) and isinstance(body.get("items"), list)


def validate_endpoint(endpoint: str) -> str:
    """Check that the service address is an absolute http(s) URL.

    Raises:
        ValidationError: If the address cannot be used for the smoke tests.
    """
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as e:
        msg = f"Invalid service endpoint {endpoint!r}: {e}"
        raise ValidationError(msg, phase="health_check") from e
    if url.scheme not in ("http", "https") or not url.host:
        msg = f"Invalid service endpoint {endpoint!r}: expected an http(s) URL with a host"
        raise ValidationError(msg, phase="health_check")
    return endpoint


class HealthChecker:
    """Runs smoke tests and the cluster cross-check for one target."""

    def __init__(
        self,
        settings: HealthCheckSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the checker.

        Args:
            settings: Retry, timeout and log-scan configuration.
            transport: Optional httpx transport (used to stub the service in tests).
        """
        self.settings = settings
        self._transport = transport

    async def check_endpoint(
        self,
        http: httpx.AsyncClient,
        check: EndpointCheck,
        *,
        retries: int,
        json_body: dict[str, Any] | None = None,
        expect_item_list: bool = False,
    ) -> EndpointCheck:
        """Probe an endpoint until it answers as expected or retries run out.

        Connection errors and timeouts count as failed attempts; a fixed
        backoff separates attempts.
        """
        for attempt in range(1, retries + 1):
            check.attempts = attempt
            try:
                response = await http.request(check.method, check.url, json=json_body)
            except httpx.HTTPError as e:
                check.error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                log.warning(
                    "endpoint_unreachable",
                    url=check.url,
                    attempt=attempt,
                    retries=retries,
                    error=check.error,
                )
            else:
                check.last_status = response.status_code
                if response.status_code != check.expected_status:
                    check.error = (
                        f"status {response.status_code} (expected {check.expected_status})"
                    )
                elif expect_item_list and not _has_item_list(response):
                    check.error = "response does not carry an item list"
                else:
                    check.passed = True
                    check.error = None
                    log.info("endpoint_ok", url=check.url, status=response.status_code)
                    return check
                log.warning("endpoint_unexpected_response", url=check.url, error=check.error)

            if attempt < retries:
                await asyncio.sleep(self.settings.backoff_seconds)

        log.error("endpoint_failed", url=check.url, attempts=check.attempts, error=check.error)
        return check

    async def run_smoke_tests(
        self,
        base_url: str,
        *,
        expected_status: int,
        retries: int,
        timeout_seconds: float,
    ) -> list[EndpointCheck]:
        """Run the smoke tests against the service.

        Every endpoint is probed even when an earlier one failed, so the
        report shows the full picture.
        """
        base = base_url.rstrip("/")
        metrics_path = "/" + self.settings.metrics_path.lstrip("/")
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds), transport=self._transport
        ) as http:
            health = await self.check_endpoint(
                http,
                EndpointCheck("health", f"{base}/health", expected_status=expected_status),
                retries=retries,
            )
            items = await self.check_endpoint(
                http,
                EndpointCheck("list_items", f"{base}/items", expected_status=expected_status),
                retries=retries,
                expect_item_list=True,
            )
            # creating is not idempotent, so a single attempt
            create = await self.check_endpoint(
                http,
                EndpointCheck(
                    "create_item", f"{base}/items", method="POST", expected_status=expected_status
                ),
                retries=1,
                json_body=SMOKE_TEST_ITEM,
            )
            metrics = await self.check_endpoint(
                http,
                EndpointCheck(
                    "metrics", f"{base}{metrics_path}", expected_status=200, required=False
                ),
                retries=retries,
            )
        return [health, items, create, metrics]

    def check_cluster(
        self,
        cluster: ClusterClient,
        workload: WorkloadSettings,
        namespace: str,
    ) -> tuple[ClusterHealth, list[str]]:
        """Collect the control plane's view of the workload.

        Returns:
            The cluster health and the error lines found in recent logs.
        """
        health = ClusterHealth()
        deployment = cluster.read_deployment(workload.deployment_name, namespace)
        if deployment is None:
            log.error("deployment_not_found", deployment=workload.deployment_name)
            return health, []

        health.deployment_found = True
        health.desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        health.ready = (deployment.status.ready_replicas if deployment.status else None) or 0
        health.endpoint_count = cluster.endpoint_count(workload.deployment_name, namespace)
        health.pods = cluster.pod_summaries(namespace, workload.label_selector)

        lines = cluster.recent_logs(
            namespace,
            workload.label_selector,
            tail_lines=self.settings.log_tail_lines,
            since_seconds=self.settings.log_since_seconds,
        )
        errors = [line for line in lines if ERROR_LINE_PATTERN.search(line)]

        log.info(
            "cluster_health_collected",
            ready=health.ready,
            desired=health.desired,
            endpoints=health.endpoint_count,
            pods=len(health.pods),
            log_errors=len(errors),
        )
        return health, errors

    async def check(
        self,
        target: DeploymentTarget,
        cluster: ClusterClient,
        workload: WorkloadSettings,
        endpoint: str,
        *,
        expected_status: int | None = None,
        retries: int | None = None,
        timeout_seconds: float | None = None,
    ) -> HealthReport:
        """Run the full health check for a target. Never mutates the cluster.

        Raises:
            ValidationError: If the endpoint or an override is unusable.
        """
        validate_endpoint(endpoint)
        if retries is None:
            retries = self.settings.retries
        if retries < 1:
            msg = f"Retries must be at least 1, got {retries}"
            raise ValidationError(msg, phase="health_check")
        if timeout_seconds is None:
            timeout_seconds = self.settings.timeout_seconds
        if timeout_seconds <= 0:
            msg = f"Timeout must be positive, got {timeout_seconds}"
            raise ValidationError(msg, phase="health_check")
        if expected_status is None:
            expected_status = self.settings.expected_status

        report = HealthReport(
            environment=target.environment,
            namespace=target.namespace,
            endpoint=endpoint,
            log_error_threshold=self.settings.log_error_threshold,
        )

        report.cluster, errors = await asyncio.to_thread(
            self.check_cluster, cluster, workload, target.namespace
        )
        report.log_error_count = len(errors)
        report.log_errors = errors[-MAX_REPORTED_ERROR_LINES:]

        report.checks = await self.run_smoke_tests(
            endpoint,
            expected_status=expected_status,
            retries=retries,
            timeout_seconds=timeout_seconds,
        )

        if report.passed:
            log.info("health_check_passed", endpoint=endpoint)
        else:
            log.error("health_check_failed", endpoint=endpoint, reasons=report.failures())
        return report


__all__ = [
    "ClusterHealth",
    "EndpointCheck",
    "HealthChecker",
    "HealthReport",
    "validate_endpoint",
]
