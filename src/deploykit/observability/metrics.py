"""Prometheus metrics for deploykit invocations.

Each CLI invocation is short-lived, so metrics live on a private registry
and are pushed to a Pushgateway at the end of the run when one is configured.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, push_to_gateway

from deploykit.observability.logging import get_logger


log = get_logger(__name__)


class MetricsCollector:
    """Prometheus metrics collector for deploykit.

    Provides metrics for:
    - Workflow invocations and their outcome
    - Rollout convergence duration
    - Rollbacks issued
    - Health check results
    """

    def __init__(self, namespace: str = "deploykit") -> None:
        """Initialize metrics.

        Args:
            namespace: Prometheus namespace prefix for all metrics.
        """
        self.namespace = namespace
        self.registry = CollectorRegistry()

        self.info = Info(
            f"{namespace}_build",
            "deploykit build information",
            registry=self.registry,
        )

        self.invocations_total = Counter(
            f"{namespace}_invocations_total",
            "Total workflow invocations",
            ["operation", "environment", "outcome"],
            registry=self.registry,
        )

        self.rollout_duration = Histogram(
            f"{namespace}_rollout_duration_seconds",
            "Time spent waiting for a rollout to converge",
            ["environment", "phase"],
            buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
            registry=self.registry,
        )

        self.rollbacks_total = Counter(
            f"{namespace}_rollbacks_total",
            "Total rollbacks issued",
            ["environment", "trigger"],  # trigger: manual, automatic
            registry=self.registry,
        )

        self.health_checks_total = Counter(
            f"{namespace}_health_checks_total",
            "Total health checks by result",
            ["environment", "result"],
            registry=self.registry,
        )

    def set_build_info(self, version: str) -> None:
        self.info.info({"version": version})

    def record_invocation(self, operation: str, environment: str, outcome: str) -> None:
        """Record the final outcome of a deploy, rollback or health-check run."""
        self.invocations_total.labels(
            operation=operation,
            environment=environment,
            outcome=outcome,
        ).inc()

    def record_rollout(self, environment: str, phase: str, duration_seconds: float) -> None:
        self.rollout_duration.labels(environment=environment, phase=phase).observe(
            duration_seconds
        )

    def record_rollback(self, environment: str, trigger: str) -> None:
        self.rollbacks_total.labels(environment=environment, trigger=trigger).inc()

    def record_health_check(self, environment: str, passed: bool) -> None:
        result = "pass" if passed else "fail"
        self.health_checks_total.labels(environment=environment, result=result).inc()

    def push(self, gateway: str, job: str = "deploykit") -> None:
        """Push the registry to a Pushgateway.

        Push failures are logged rather than raised: metrics never change
        the outcome of a deploy.
        """
        try:
            push_to_gateway(gateway, job=job, registry=self.registry)
        except OSError as e:
            log.warning("metrics_push_failed", gateway=gateway, error=str(e))
        else:
            log.debug("metrics_pushed", gateway=gateway)


__all__ = ["MetricsCollector"]
