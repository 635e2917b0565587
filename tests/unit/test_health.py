"""Unit tests for post-deploy health verification."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from deploykit.config.settings import HealthCheckSettings, WorkloadSettings
from deploykit.errors import ValidationError
from deploykit.health import (
    ClusterHealth,
    EndpointCheck,
    HealthChecker,
    HealthReport,
    validate_endpoint,
)
from deploykit.kubernetes.cluster import PodSummary
from deploykit.models import DeploymentTarget, ImageReference


BASE_URL = "http://fastapi-service.test"


@pytest.fixture
def health_settings() -> HealthCheckSettings:
    return HealthCheckSettings(retries=3, backoff_seconds=2)


@pytest.fixture
def no_sleep():
    with patch("deploykit.health.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


@pytest.fixture
def target() -> DeploymentTarget:
    return DeploymentTarget(
        "staging", "staging", ImageReference("ghcr.io/yourusername", "fastapi-service", "v1")
    )


def _scripted(*responses: httpx.Response | Exception):
    """Handler returning the given responses in order, then repeating the last."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    return handler


class TestCheckEndpoint:
    """Tests for single endpoint probing with retries."""

    @pytest.mark.asyncio
    async def test_passes_first_attempt(self, health_settings, no_sleep) -> None:
        checker = HealthChecker(health_settings)
        transport = httpx.MockTransport(_scripted(httpx.Response(200)))

        async with httpx.AsyncClient(transport=transport) as http:
            check = await checker.check_endpoint(
                http, EndpointCheck("health", f"{BASE_URL}/health"), retries=3
            )

        assert check.passed is True
        assert check.attempts == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_until_expected_status(self, health_settings, no_sleep) -> None:
        checker = HealthChecker(health_settings)
        transport = httpx.MockTransport(
            _scripted(httpx.Response(503), httpx.Response(503), httpx.Response(200))
        )

        async with httpx.AsyncClient(transport=transport) as http:
            check = await checker.check_endpoint(
                http, EndpointCheck("health", f"{BASE_URL}/health"), retries=3
            )

        assert check.passed is True
        assert check.attempts == 3
        assert check.last_status == 200
        assert check.error is None
        assert no_sleep.await_count == 2
        no_sleep.assert_awaited_with(2)

    @pytest.mark.asyncio
    async def test_connection_refused_counts_as_failed_attempt(
        self, health_settings, no_sleep
    ) -> None:
        checker = HealthChecker(health_settings)
        transport = httpx.MockTransport(_scripted(httpx.ConnectError("Connection refused")))

        async with httpx.AsyncClient(transport=transport) as http:
            check = await checker.check_endpoint(
                http, EndpointCheck("health", f"{BASE_URL}/health"), retries=3
            )

        assert check.passed is False
        assert check.attempts == 3
        assert check.last_status is None
        assert "ConnectError" in check.error
        # no sleep after the final attempt
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_status_fails(self, health_settings, no_sleep) -> None:
        checker = HealthChecker(health_settings)
        transport = httpx.MockTransport(_scripted(httpx.Response(500)))

        async with httpx.AsyncClient(transport=transport) as http:
            check = await checker.check_endpoint(
                http, EndpointCheck("health", f"{BASE_URL}/health"), retries=2
            )

        assert check.passed is False
        assert check.error == "status 500 (expected 200)"

    @pytest.mark.asyncio
    async def test_item_list_required(self, health_settings, no_sleep) -> None:
        checker = HealthChecker(health_settings)
        transport = httpx.MockTransport(_scripted(httpx.Response(200, json={"status": "ok"})))

        async with httpx.AsyncClient(transport=transport) as http:
            check = await checker.check_endpoint(
                http,
                EndpointCheck("list_items", f"{BASE_URL}/items"),
                retries=1,
                expect_item_list=True,
            )

        assert check.passed is False
        assert check.error == "response does not carry an item list"


class TestSmokeTests:
    """Tests for the smoke test suite."""

    @pytest.mark.asyncio
    async def test_all_endpoints_pass(self, health_settings, service_transport, no_sleep) -> None:
        checker = HealthChecker(health_settings, transport=service_transport())

        checks = await checker.run_smoke_tests(
            BASE_URL, expected_status=200, retries=3, timeout_seconds=5
        )

        assert [c.name for c in checks] == ["health", "list_items", "create_item", "metrics"]
        assert all(c.passed for c in checks)
        assert checks[2].method == "POST"

    @pytest.mark.asyncio
    async def test_create_is_attempted_once(
        self, health_settings, service_transport, no_sleep
    ) -> None:
        checker = HealthChecker(health_settings, transport=service_transport(create_status=500))

        checks = await checker.run_smoke_tests(
            BASE_URL, expected_status=200, retries=3, timeout_seconds=5
        )

        create = checks[2]
        assert create.passed is False
        assert create.attempts == 1

    @pytest.mark.asyncio
    async def test_metrics_failure_is_informational(
        self, health_settings, service_transport, no_sleep
    ) -> None:
        checker = HealthChecker(health_settings, transport=service_transport(metrics_status=404))

        checks = await checker.run_smoke_tests(
            BASE_URL, expected_status=200, retries=1, timeout_seconds=5
        )

        metrics = checks[3]
        assert metrics.passed is False
        assert metrics.required is False
        report = HealthReport("staging", "staging", BASE_URL, checks=checks)
        assert report.smoke_tests_passed is True


class TestHealthReport:
    """Tests for HealthReport aggregation and rendering."""

    def _report(self, **overrides) -> HealthReport:
        values = {
            "environment": "staging",
            "namespace": "staging",
            "endpoint": BASE_URL,
            "checks": [EndpointCheck("health", f"{BASE_URL}/health", attempts=1, passed=True)],
            "cluster": ClusterHealth(
                deployment_found=True,
                desired=3,
                ready=3,
                endpoint_count=3,
                pods=[PodSummary("api-0", "Running", True)],
            ),
        }
        values.update(overrides)
        return HealthReport(**values)

    def test_passed(self) -> None:
        report = self._report()
        assert report.passed is True
        assert report.failures() == []
        assert "All health checks passed" in report.render_text()

    def test_http_ok_but_replicas_not_ready(self) -> None:
        report = self._report(cluster=ClusterHealth(True, desired=3, ready=1, endpoint_count=1))

        assert report.smoke_tests_passed is True
        assert report.passed is False
        assert report.failures() == ["only 1/3 replicas ready"]

    def test_no_endpoints(self) -> None:
        report = self._report(cluster=ClusterHealth(True, desired=3, ready=3, endpoint_count=0))
        assert report.failures() == ["service has no endpoints"]

    def test_deployment_missing(self) -> None:
        report = self._report(cluster=ClusterHealth())
        assert report.failures() == ["deployment not found"]

    def test_log_errors_over_threshold(self) -> None:
        report = self._report(log_error_count=2, log_error_threshold=1)
        assert report.logs_passed is False
        assert "2 error lines in recent logs" in report.failures()

    def test_render_text_marks_failures(self) -> None:
        failing = EndpointCheck(
            "health",
            f"{BASE_URL}/health",
            attempts=3,
            last_status=503,
            error="status 503 (expected 200)",
        )
        text = self._report(checks=[failing]).render_text()

        assert "=== Health Check Report ===" in text
        assert f"✗ GET {BASE_URL}/health -> 503 after 3 attempt(s)" in text
        assert "Some health checks failed:" in text

    def test_to_dict(self) -> None:
        payload = self._report().to_dict()

        assert payload["passed"] is True
        assert payload["cluster"]["ready"] == 3
        assert payload["checks"][0]["name"] == "health"
        assert payload["logs"]["error_count"] == 0


class TestHealthChecker:
    """Tests for the combined cluster and HTTP check."""

    @pytest.mark.asyncio
    async def test_check_combines_both_views(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        cluster = cluster_factory(image="ghcr.io/yourusername/fastapi-service:v1")
        cluster.log_lines = ["INFO started", "ERROR failed to reach cache", "INFO request"]
        checker = HealthChecker(
            HealthCheckSettings(log_error_threshold=0), transport=service_transport()
        )

        report = await checker.check(target, cluster, WorkloadSettings(), BASE_URL)

        assert report.cluster.passed is True
        assert report.smoke_tests_passed is True
        assert report.log_error_count == 1
        assert report.log_errors == ["ERROR failed to reach cache"]
        assert report.passed is False
        assert cluster.mutations == []

    @pytest.mark.asyncio
    async def test_check_overrides(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        cluster = cluster_factory(image="ghcr.io/yourusername/fastapi-service:v1")
        checker = HealthChecker(HealthCheckSettings(), transport=service_transport())

        report = await checker.check(
            target, cluster, WorkloadSettings(), BASE_URL, expected_status=201, retries=1
        )

        assert report.passed is False
        assert all(c.attempts == 1 for c in report.checks)

    @pytest.mark.asyncio
    async def test_missing_deployment(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        checker = HealthChecker(HealthCheckSettings(), transport=service_transport())

        report = await checker.check(target, cluster_factory(), WorkloadSettings(), BASE_URL)

        assert report.cluster.deployment_found is False
        assert "deployment not found" in report.failures()

    @pytest.mark.asyncio
    async def test_health_ok_but_items_unavailable(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        """/health answering 200 does not hide a failing /items."""
        cluster = cluster_factory(image="ghcr.io/yourusername/fastapi-service:v1")
        checker = HealthChecker(
            HealthCheckSettings(retries=3), transport=service_transport(items_status=503)
        )

        report = await checker.check(target, cluster, WorkloadSettings(), BASE_URL)

        health, items = report.checks[0], report.checks[1]
        assert health.passed is True
        assert health.last_status == 200
        assert items.passed is False
        assert items.last_status == 503
        assert items.attempts == 3
        assert report.cluster.passed is True
        assert report.passed is False
        text = report.render_text()
        assert f"✓ GET {BASE_URL}/health -> 200" in text
        assert f"✗ GET {BASE_URL}/items -> 503" in text

    @pytest.mark.asyncio
    async def test_malformed_endpoint_is_rejected(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        cluster = cluster_factory(image="ghcr.io/yourusername/fastapi-service:v1")
        checker = HealthChecker(HealthCheckSettings(), transport=service_transport())

        with pytest.raises(ValidationError, match="Invalid service endpoint"):
            await checker.check(target, cluster, WorkloadSettings(), "http://[::1")

    @pytest.mark.asyncio
    async def test_explicit_zero_retries_is_rejected(
        self, cluster_factory, service_transport, target, no_sleep
    ) -> None:
        """An explicit 0 is not mistaken for the configured default."""
        cluster = cluster_factory(image="ghcr.io/yourusername/fastapi-service:v1")
        checker = HealthChecker(HealthCheckSettings(), transport=service_transport())

        with pytest.raises(ValidationError, match="Retries"):
            await checker.check(target, cluster, WorkloadSettings(), BASE_URL, retries=0)

        with pytest.raises(ValidationError, match="Timeout"):
            await checker.check(
                target, cluster, WorkloadSettings(), BASE_URL, timeout_seconds=0
            )


class TestValidateEndpoint:
    """Tests for service address validation."""

    def test_accepts_http_urls(self) -> None:
        assert validate_endpoint(BASE_URL) == BASE_URL
        assert validate_endpoint("https://api.example.com:8443") == "https://api.example.com:8443"

    @pytest.mark.parametrize(
        "endpoint",
        ["http://[::1", "fastapi-service", "ftp://fastapi-service", "http://"],
    )
    def test_rejects_unusable_addresses(self, endpoint: str) -> None:
        with pytest.raises(ValidationError):
            validate_endpoint(endpoint)
