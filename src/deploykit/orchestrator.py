"""Deployment orchestrator.

Drives the three workflows against one target:

- ``deploy``: validate every manifest, apply them in dependency order, point
  the workload at the new image, wait for convergence and verify health.
  A rollout that times out or fails is rolled back exactly once to the
  revision that was live before the deploy.
- ``rollback``: restore a retained revision and wait for convergence.
- ``health_check``: HTTP smoke tests cross-checked with the cluster's view.

Execution is strictly sequential; the only suspension points are API calls
and the sleeps between polls.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from deploykit.errors import (
    BackupFailed,
    ConvergenceTimeout,
    DeployError,
    HealthCheckFailure,
    RollbackFailed,
    RolloutFailed,
    ValidationError,
)
from deploykit.health import HealthChecker, HealthReport
from deploykit.kubernetes.cluster import ApplyResult, ClusterClient, Revision, WorkloadSummary
from deploykit.kubernetes.rollout import RolloutPhase, RolloutResult, wait_for_rollout
from deploykit.manifests import (
    ResourceManifest,
    load_manifests,
    order_manifests,
    render_manifests,
    validate_manifests,
)
from deploykit.observability.logging import LogContext, get_logger

if TYPE_CHECKING:
    from deploykit.config.settings import Settings
    from deploykit.models import DeploymentTarget
    from deploykit.observability.metrics import MetricsCollector


log = get_logger(__name__)


class DeployPhase(str, Enum):
    """States of a deploy invocation."""

    VALIDATING = "Validating"
    APPLYING = "Applying"
    UPDATING_IMAGE = "UpdatingImage"
    AWAITING_ROLLOUT = "AwaitingRollout"
    VERIFYING = "Verifying"
    DONE = "Done"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


TERMINAL_PHASES = frozenset({DeployPhase.DONE, DeployPhase.ROLLED_BACK, DeployPhase.FAILED})


@dataclass
class DeployOutcome:
    """Everything a deploy invocation did, in order."""

    target: DeploymentTarget
    phase: DeployPhase = DeployPhase.VALIDATING
    transitions: list[DeployPhase] = field(default_factory=lambda: [DeployPhase.VALIDATING])
    applied: list[ApplyResult] = field(default_factory=list)
    image_changed: bool = False
    previous_revision: int | None = None
    rollout: RolloutResult | None = None
    rollback_revision: int | None = None
    health: HealthReport | None = None
    backup_path: Path | None = None
    error: DeployError | None = None

    @property
    def succeeded(self) -> bool:
        return self.phase == DeployPhase.DONE

    def advance(self, phase: DeployPhase) -> None:
        log.debug("deploy_phase", previous=self.phase.value, phase=phase.value)
        self.phase = phase
        self.transitions.append(phase)

    def raise_for_error(self) -> None:
        """Raise the recorded error if the deploy did not succeed."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.target.environment,
            "namespace": self.target.namespace,
            "image": str(self.target.image),
            "phase": self.phase.value,
            "transitions": [p.value for p in self.transitions],
            "applied": [
                {"kind": r.kind, "name": r.name, "action": r.action} for r in self.applied
            ],
            "image_changed": self.image_changed,
            "previous_revision": self.previous_revision,
            "rollout": (
                {
                    "phase": self.rollout.phase.value,
                    "elapsed_seconds": round(self.rollout.elapsed_seconds, 2),
                    "status": self.rollout.status.to_dict() if self.rollout.status else None,
                }
                if self.rollout
                else None
            ),
            "rollback_revision": self.rollback_revision,
            "health": self.health.to_dict() if self.health else None,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class RollbackResult:
    """Outcome of a successful rollback."""

    target: DeploymentTarget
    revision: int
    rollout: RolloutResult


class Orchestrator:
    """Sequential workflow driver for deploy, rollback and health-check."""

    def __init__(
        self,
        settings: Settings,
        cluster: ClusterClient | None = None,
        *,
        health_checker: HealthChecker | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Explicit configuration for the whole run.
            cluster: Control-plane adapter (built from settings if omitted).
            health_checker: Health checker (built from settings if omitted).
            metrics: Optional metrics collector.

        The cluster client is built on first use, so local validation works
        without any cluster configuration.
        """
        self.settings = settings
        self._cluster = cluster
        self.health_checker = health_checker or HealthChecker(settings.health)
        self.metrics = metrics

    @property
    def cluster(self) -> ClusterClient:
        """Control-plane adapter.

        Raises:
            ConnectivityError: If no cluster configuration can be loaded.
        """
        if self._cluster is None:
            self._cluster = ClusterClient(self.settings.kubernetes)
        return self._cluster

    @property
    def workload_name(self) -> str:
        return self.settings.workload.deployment_name

    def default_endpoint(self, target: DeploymentTarget) -> str:
        """Service address used for smoke tests when none is given."""
        if self.settings.health.endpoint:
            return self.settings.health.endpoint
        return f"http://{self.workload_name}.{target.namespace}.svc.cluster.local"

    async def _call_api(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run blocking Kubernetes client calls in a thread."""
        return await asyncio.to_thread(func, *args, **kwargs)

    def prepare_manifests(
        self,
        target: DeploymentTarget,
        manifests: Sequence[ResourceManifest] | None = None,
    ) -> tuple[list[ResourceManifest], list[str]]:
        """Load, order, render and locally validate the manifest set.

        Returns:
            The rendered manifests in apply order and the Secrets they
            reference without defining.

        Raises:
            ValidationError: On any malformed manifest or dangling reference.
        """
        if manifests is None:
            manifests = load_manifests(self.settings.manifest_dir)
        ordered = order_manifests(manifests)
        rendered = render_manifests(
            ordered,
            target,
            workload_name=self.workload_name,
            container_name=self.settings.workload.container_name,
            revision_history_limit=self.settings.rollout.revision_history_limit,
        )
        external_secrets = validate_manifests(rendered)
        return rendered, external_secrets

    def validate(
        self,
        target: DeploymentTarget,
        manifests: Sequence[ResourceManifest] | None = None,
        *,
        server: bool = False,
    ) -> list[ResourceManifest]:
        """Validate the manifest set without mutating anything.

        Args:
            target: Deployment target.
            manifests: Manifests to validate (loaded from disk if omitted).
            server: Also run a server-side dry-run of every manifest.
        """
        with LogContext(operation="validate", environment=target.environment):
            rendered, _ = self.prepare_manifests(target, manifests)
            if server:
                self.cluster.verify_connectivity()
                for manifest in rendered:
                    self.cluster.apply(manifest, dry_run=True)
            log.info("manifests_valid", count=len(rendered), server=server)
            return rendered

    async def deploy(
        self,
        target: DeploymentTarget,
        manifests: Sequence[ResourceManifest] | None = None,
    ) -> DeployOutcome:
        """Deploy a target.

        Never raises for workflow failures: the returned outcome carries the
        terminal phase and the error. Use ``outcome.raise_for_error()`` to
        turn it into an exception.
        """
        outcome = DeployOutcome(target=target)
        with LogContext(
            operation="deploy", environment=target.environment, namespace=target.namespace
        ):
            log.info("deploy_started", image=str(target.image))
            try:
                await self._deploy(outcome, manifests)
            except DeployError as e:
                outcome.error = e
                if outcome.phase not in TERMINAL_PHASES:
                    outcome.advance(DeployPhase.FAILED)
                log.error(
                    "deploy_failed",
                    state=outcome.phase.value,
                    code=e.code,
                    failed_in=e.phase,
                    error=e.message,
                )
            else:
                if outcome.succeeded:
                    log.info("deploy_completed", image=str(target.image))

        if self.metrics:
            self.metrics.record_invocation("deploy", target.environment, outcome.phase.value)
        return outcome

    async def _deploy(
        self,
        outcome: DeployOutcome,
        manifests: Sequence[ResourceManifest] | None,
    ) -> None:
        target = outcome.target
        namespace = target.namespace

        await self._call_api(self.cluster.verify_connectivity)
        rendered, external_secrets = self.prepare_manifests(target, manifests)

        has_workload_manifest = any(
            m.kind == "Deployment" and m.name == self.workload_name for m in rendered
        )
        if not has_workload_manifest and not await self._call_api(
            self.cluster.workload_exists, self.workload_name, namespace
        ):
            msg = f"Deployment/{self.workload_name} does not exist and no manifest defines it"
            raise ValidationError(msg, phase="validating")

        await self._call_api(self.cluster.ensure_namespace, namespace)
        await self._call_api(self._warn_missing_secrets, external_secrets, namespace)

        if self.settings.rollout.server_dry_run:
            for manifest in rendered:
                await self._call_api(self.cluster.apply, manifest, dry_run=True)

        outcome.previous_revision = await self._call_api(
            self.cluster.current_revision, self.workload_name, namespace
        )
        if self.settings.backup_dir:
            outcome.backup_path = await self._call_api(
                self._backup_workload, target, self.settings.backup_dir
            )

        outcome.advance(DeployPhase.APPLYING)
        for manifest in rendered:
            outcome.applied.append(await self._call_api(self.cluster.apply, manifest))

        outcome.advance(DeployPhase.UPDATING_IMAGE)
        outcome.image_changed = await self._call_api(
            self.cluster.set_image,
            self.workload_name,
            namespace,
            self.settings.workload.container_name,
            str(target.image),
        )

        outcome.advance(DeployPhase.AWAITING_ROLLOUT)
        outcome.rollout = await self._await_rollout(target)
        if not outcome.rollout.succeeded:
            await self._auto_rollback(outcome, self._rollout_error(outcome.rollout, "deploy"))
            return

        if self.settings.verify_after_deploy:
            outcome.advance(DeployPhase.VERIFYING)
            outcome.health = await self.health_check(target)
            if not outcome.health.passed:
                msg = "Post-deploy health check failed: " + "; ".join(outcome.health.failures())
                raise HealthCheckFailure(
                    msg, phase="verifying", details={"failures": outcome.health.failures()}
                )

        outcome.advance(DeployPhase.DONE)

    def _warn_missing_secrets(self, external_secrets: Sequence[str], namespace: str) -> None:
        names = sorted({*external_secrets, self.settings.workload.secret_name})
        for name in names:
            if not self.cluster.secret_exists(name, namespace):
                log.warning(
                    "secret_missing",
                    secret=name,
                    hint=(
                        f"kubectl create secret generic {name} "
                        f"--from-literal=API_SECRET_KEY=... -n {namespace}"
                    ),
                )

    def _backup_workload(self, target: DeploymentTarget, directory: Path) -> Path | None:
        manifest = self.cluster.export_deployment(self.workload_name, target.namespace)
        if manifest is None:
            log.info("backup_skipped", reason="deployment does not exist yet")
            return None
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        path = directory / f"{self.workload_name}-{target.environment}-{stamp}.yaml"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(yaml.safe_dump(manifest, sort_keys=False), encoding="utf-8")
        except OSError as e:
            msg = f"Cannot write deployment backup to {path}: {e}"
            raise BackupFailed(msg, phase="backing_up", details={"path": str(path)}) from e
        log.info("deployment_backed_up", path=str(path))
        return path

    async def _await_rollout(self, target: DeploymentTarget) -> RolloutResult:
        rollout = self.settings.rollout
        result = await wait_for_rollout(
            lambda: self.cluster.rollout_status(self.workload_name, target.namespace),
            timeout_seconds=self.settings.rollout_timeout_for(target.environment),
            poll_interval_seconds=rollout.poll_interval_seconds,
            success_window_seconds=rollout.success_window_seconds,
        )
        if self.metrics:
            self.metrics.record_rollout(
                target.environment, result.phase.value, result.elapsed_seconds
            )
        return result

    def _rollout_error(self, result: RolloutResult, phase: str) -> DeployError:
        status = result.status.to_dict() if result.status else {}
        if result.phase == RolloutPhase.FAILED:
            msg = f"Rollout of Deployment/{self.workload_name} failed: {result.status.condition}"
            return RolloutFailed(msg, phase=phase, details=status)
        msg = (
            f"Rollout of Deployment/{self.workload_name} did not converge "
            f"within {result.elapsed_seconds:.0f}s"
        )
        return ConvergenceTimeout(msg, phase=phase, details=status)

    async def _auto_rollback(self, outcome: DeployOutcome, cause: DeployError) -> None:
        """Roll back once to the pre-deploy revision, then record the cause.

        Nothing is rolled back when the deploy did not create a new revision:
        the pre-deploy revision is still the live one, so the deploy fails
        with the rollout error as is.
        """
        target = outcome.target
        log.error("rollout_not_converged", error=cause.message)

        current = await self._call_api(
            self.cluster.current_revision, self.workload_name, target.namespace
        )
        previous = outcome.previous_revision
        if previous is not None and current == previous:
            log.warning("rollback_not_needed", revision=previous)
            raise cause

        outcome.advance(DeployPhase.ROLLING_BACK)
        if self.metrics:
            self.metrics.record_rollback(target.environment, "automatic")
        try:
            # a workload created by this deploy has no earlier revision
            result = await self._rollback(target, previous or 0)
        except DeployError as e:
            msg = f"Automatic rollback failed, manual intervention required: {e.message}"
            details = {"cause": cause.to_dict(), "rollback": e.to_dict()}
            raise RollbackFailed(msg, phase="rolling_back", details=details) from e

        outcome.rollback_revision = result.revision
        outcome.error = cause
        outcome.advance(DeployPhase.ROLLED_BACK)
        log.warning("deploy_rolled_back", revision=result.revision)

    async def _rollback(self, target: DeploymentTarget, revision: int) -> RollbackResult:
        number = await self._call_api(
            self.cluster.rollback, self.workload_name, target.namespace, revision
        )
        result = await self._await_rollout(target)
        if not result.succeeded:
            raise self._rollout_error(result, "rolling_back")
        return RollbackResult(target=target, revision=number, rollout=result)

    async def rollback(self, target: DeploymentTarget, revision: int = 0) -> RollbackResult:
        """Roll the workload back to a retained revision.

        Args:
            target: Deployment target.
            revision: 0 for the previous revision, otherwise an absolute revision.

        Raises:
            ValidationError: If the revision is negative.
            RollbackTargetNotFound: If the revision is not retained (no mutation).
            ConvergenceTimeout: If the rolled-back workload does not converge.
        """
        if revision < 0:
            msg = f"Revision must be 0 (previous) or a positive number, got {revision}"
            raise ValidationError(msg, phase="rolling_back")

        with LogContext(
            operation="rollback", environment=target.environment, namespace=target.namespace
        ):
            outcome = "failed"
            try:
                await self._call_api(self.cluster.verify_connectivity)
                log.info("rollback_started", revision=revision or "previous")
                if self.metrics:
                    self.metrics.record_rollback(target.environment, "manual")
                result = await self._rollback(target, revision)
                outcome = "succeeded"
                log.info("rollback_completed", revision=result.revision)
                return result
            finally:
                if self.metrics:
                    self.metrics.record_invocation("rollback", target.environment, outcome)

    async def health_check(
        self,
        target: DeploymentTarget,
        endpoint: str | None = None,
        *,
        expected_status: int | None = None,
        retries: int | None = None,
        timeout_seconds: float | None = None,
    ) -> HealthReport:
        """Check a target's health. Never mutates cluster state."""
        with LogContext(
            operation="health_check", environment=target.environment, namespace=target.namespace
        ):
            report = await self.health_checker.check(
                target,
                self.cluster,
                self.settings.workload,
                endpoint or self.default_endpoint(target),
                expected_status=expected_status,
                retries=retries,
                timeout_seconds=timeout_seconds,
            )
        if self.metrics:
            self.metrics.record_health_check(target.environment, report.passed)
        return report

    def status(self, target: DeploymentTarget) -> WorkloadSummary:
        return self.cluster.describe_workload(
            self.workload_name, target.namespace, self.settings.workload.label_selector
        )

    def history(self, target: DeploymentTarget) -> list[Revision]:
        return self.cluster.list_revisions(self.workload_name, target.namespace)


__all__ = [
    "DeployOutcome",
    "DeployPhase",
    "Orchestrator",
    "RollbackResult",
]
