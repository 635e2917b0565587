"""Unit tests for Prometheus metrics."""

from __future__ import annotations

from unittest.mock import patch

from deploykit.observability.metrics import MetricsCollector


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_metrics_collector_creation(self) -> None:
        """Test MetricsCollector can be created."""
        collector = MetricsCollector(namespace="test_deploykit")

        assert collector.namespace == "test_deploykit"

    def test_collectors_are_isolated(self) -> None:
        """Each collector owns its registry, so names never clash."""
        first = MetricsCollector(namespace="same")
        second = MetricsCollector(namespace="same")

        first.record_rollback("staging", "manual")

        labels = {"environment": "staging", "trigger": "manual"}
        assert first.registry.get_sample_value("same_rollbacks_total", labels) == 1
        assert second.registry.get_sample_value("same_rollbacks_total", labels) is None

    def test_set_build_info(self) -> None:
        collector = MetricsCollector(namespace="test_build")

        collector.set_build_info("1.0.0")

        sample = collector.registry.get_sample_value("test_build_build_info", {"version": "1.0.0"})
        assert sample == 1

    def test_record_invocation(self) -> None:
        collector = MetricsCollector(namespace="test_invocation")

        collector.record_invocation("deploy", "production", "Done")
        collector.record_invocation("deploy", "production", "Done")

        labels = {"operation": "deploy", "environment": "production", "outcome": "Done"}
        assert collector.registry.get_sample_value("test_invocation_invocations_total", labels) == 2

    def test_record_rollout(self) -> None:
        collector = MetricsCollector(namespace="test_rollout")

        collector.record_rollout("staging", "Succeeded", 42.0)

        labels = {"environment": "staging", "phase": "Succeeded"}
        assert collector.registry.get_sample_value(
            "test_rollout_rollout_duration_seconds_sum", labels
        ) == 42.0

    def test_record_health_check(self) -> None:
        collector = MetricsCollector(namespace="test_health")

        collector.record_health_check("staging", passed=False)

        labels = {"environment": "staging", "result": "fail"}
        assert collector.registry.get_sample_value("test_health_health_checks_total", labels) == 1

    def test_push(self) -> None:
        collector = MetricsCollector(namespace="test_push")

        with patch("deploykit.observability.metrics.push_to_gateway") as push:
            collector.push("pushgateway:9091")

        push.assert_called_once_with(
            "pushgateway:9091", job="deploykit", registry=collector.registry
        )

    def test_push_failure_is_not_raised(self) -> None:
        collector = MetricsCollector(namespace="test_push_failure")

        with patch(
            "deploykit.observability.metrics.push_to_gateway",
            side_effect=OSError("Connection refused"),
        ):
            collector.push("pushgateway:9091")
