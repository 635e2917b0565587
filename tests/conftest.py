"""Pytest configuration and fixtures for deploykit tests."""

from __future__ import annotations

import copy
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from deploykit.config.settings import HealthCheckSettings, RolloutSettings, Settings
from deploykit.errors import ConnectivityError, RollbackTargetNotFound, ValidationError
from deploykit.health import HealthChecker
from deploykit.kubernetes.cluster import ApplyResult, PodSummary, Revision, WorkloadSummary
from deploykit.kubernetes.rollout import PROGRESS_DEADLINE_EXCEEDED, RolloutStatus
from deploykit.models import DeploymentTarget
from deploykit.orchestrator import Orchestrator

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    from deploykit.manifests import ResourceManifest


MANIFEST_DIR = Path(__file__).resolve().parent.parent / "k8s"
WORKLOAD = "fastapi-service"
IMAGE_PREFIX = "ghcr.io/yourusername/fastapi-service"


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from deploykit.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeCluster:
    """In-memory stand-in for ``ClusterClient``.

    Tracks applied resources and the workload's revision history. A rollout
    converges unless the current image is listed in ``stuck_images`` (never
    ready) or ``failing_images`` (progress deadline exceeded).
    """

    def __init__(
        self,
        *,
        image: str | None = None,
        replicas: int = 3,
        stuck_images: set[str] | None = None,
        failing_images: set[str] | None = None,
        secrets: set[str] | None = None,
        reachable: bool = True,
    ) -> None:
        self.replicas = replicas
        self.stuck_images = stuck_images or set()
        self.failing_images = failing_images or set()
        self.secrets = {"fastapi-secrets"} if secrets is None else secrets
        self.reachable = reachable
        self.namespaces: set[str] = set()
        self.resources: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.history: list[tuple[int, str]] = []
        self.log_lines: list[str] = []
        self.mutations: list[tuple[Any, ...]] = []
        self.dry_runs: list[str] = []
        self.rollback_calls: list[int] = []
        if image:
            self.history.append((1, image))

    # helpers

    @property
    def current_image(self) -> str | None:
        return self.history[-1][1] if self.history else None

    def _new_revision(self, image: str) -> None:
        number = max(n for n, _ in self.history) + 1 if self.history else 1
        # a template seen before moves its ReplicaSet to the new revision
        self.history = [(n, i) for n, i in self.history if i != image]
        self.history.append((number, image))

    def _status(self) -> RolloutStatus:
        revision = self.history[-1][0] if self.history else None
        if self.current_image in self.failing_images:
            return RolloutStatus(
                desired=self.replicas,
                updated=1,
                condition=PROGRESS_DEADLINE_EXCEEDED,
                revision=revision,
            )
        if self.current_image in self.stuck_images:
            return RolloutStatus(
                desired=self.replicas,
                ready=self.replicas - 1,
                updated=1,
                available=self.replicas - 1,
                condition="ReplicaSetUpdated",
                revision=revision,
            )
        return RolloutStatus(
            desired=self.replicas,
            ready=self.replicas,
            updated=self.replicas,
            available=self.replicas,
            condition="NewReplicaSetAvailable",
            revision=revision,
        )

    # ClusterClient surface

    def verify_connectivity(self) -> str:
        if not self.reachable:
            msg = "Not connected to a Kubernetes cluster: connection refused"
            raise ConnectivityError(msg, phase="connecting")
        return "v1.29.0"

    def ensure_namespace(self, namespace: str) -> bool:
        if namespace in self.namespaces:
            return False
        self.namespaces.add(namespace)
        self.mutations.append(("create_namespace", namespace))
        return True

    def secret_exists(self, name: str, namespace: str) -> bool:
        return name in self.secrets

    def apply(self, manifest: ResourceManifest, *, dry_run: bool = False) -> ApplyResult:
        namespace = manifest.body["metadata"]["namespace"]
        key = (namespace, manifest.kind, manifest.name)
        existing = self.resources.get(key)
        if existing is None:
            action = "created"
        elif existing == manifest.body:
            action = "unchanged"
        else:
            action = "configured"

        if dry_run:
            self.dry_runs.append(str(manifest))
            return ApplyResult(manifest.kind, manifest.name, action, dry_run=True)

        if action != "unchanged":
            self.resources[key] = copy.deepcopy(manifest.body)
            self.mutations.append(("apply", str(manifest)))
            if manifest.kind == "Deployment" and manifest.name == WORKLOAD:
                image = manifest.body["spec"]["template"]["spec"]["containers"][0]["image"]
                if image != self.current_image:
                    self._new_revision(image)
        return ApplyResult(manifest.kind, manifest.name, action)

    def read_deployment(self, name: str, namespace: str) -> Any:
        if not self.history:
            return None
        status = self._status()
        return SimpleNamespace(
            spec=SimpleNamespace(replicas=status.desired),
            status=SimpleNamespace(ready_replicas=status.ready),
        )

    def workload_exists(self, name: str, namespace: str) -> bool:
        return bool(self.history)

    def current_revision(self, name: str, namespace: str) -> int | None:
        return self.history[-1][0] if self.history else None

    def export_deployment(self, name: str, namespace: str) -> dict[str, Any] | None:
        if not self.history:
            return None
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"template": {"spec": {"containers": [{"image": self.current_image}]}}},
        }

    def set_image(self, name: str, namespace: str, container: str, image: str) -> bool:
        if not self.history:
            msg = f"Deployment/{name} not found in {namespace}"
            raise ValidationError(msg, phase="updating_image")
        if image == self.current_image:
            return False
        self.mutations.append(("set_image", image))
        self._new_revision(image)
        return True

    def rollout_status(self, name: str, namespace: str) -> RolloutStatus:
        return self._status()

    def list_revisions(self, name: str, namespace: str) -> list[Revision]:
        return [Revision(number=n, images=(i,)) for n, i in self.history]

    def rollback(self, name: str, namespace: str, revision: int = 0) -> int:
        current = self.history[-1][0] if self.history else 0
        if revision == 0:
            candidates = [h for h in self.history if h[0] < current]
            target = candidates[-1] if candidates else None
        else:
            target = next((h for h in self.history if h[0] == revision), None)
        if target is None or target[0] == current:
            retained = [n for n, _ in self.history]
            msg = f"No revision {revision} available for Deployment/{name} (retained: {retained})"
            raise RollbackTargetNotFound(
                msg, phase="rolling_back", details={"requested": revision, "retained": retained}
            )
        self.rollback_calls.append(target[0])
        self.mutations.append(("rollback", target[0]))
        self._new_revision(target[1])
        return target[0]

    def endpoint_count(self, name: str, namespace: str) -> int:
        return self._status().ready if self.history else 0

    def pod_summaries(self, namespace: str, label_selector: str) -> list[PodSummary]:
        ready = self._status().ready if self.history else 0
        return [PodSummary(f"{WORKLOAD}-{i}", "Running", True) for i in range(ready)]

    def recent_logs(
        self, namespace: str, label_selector: str, *, tail_lines: int, since_seconds: int
    ) -> list[str]:
        return list(self.log_lines)

    def ingress_hosts(self, name: str, namespace: str) -> list[str]:
        return ["api.example.com"]

    def describe_workload(self, name: str, namespace: str, label_selector: str) -> WorkloadSummary:
        if not self.history:
            msg = f"Deployment/{name} not found in {namespace}"
            raise ValidationError(msg, phase="reading")
        return WorkloadSummary(
            name=name,
            namespace=namespace,
            status=self._status(),
            images=[self.current_image],
            pods=self.pod_summaries(namespace, label_selector),
            endpoint_count=self.endpoint_count(name, namespace),
            ingress_hosts=self.ingress_hosts(name, namespace),
        )


def service_handler(
    *,
    health_status: int = 200,
    items_status: int = 200,
    create_status: int = 200,
    metrics_status: int = 200,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build an httpx handler that plays the deployed service."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/health":
            return httpx.Response(health_status, json={"status": "healthy"})
        if path == "/items" and request.method == "POST":
            return httpx.Response(create_status, json={"id": 1, "name": "deploykit-smoke-test"})
        if path == "/items":
            return httpx.Response(items_status, json={"items": [], "total": 0})
        if path == "/metrics":
            return httpx.Response(metrics_status, text="# HELP up\n")
        return httpx.Response(404)

    return handler


def make_settings(**overrides: Any) -> Settings:
    """Settings with fast rollout polling and no HTTP backoff."""
    values: dict[str, Any] = {
        "environment": "staging",
        "manifest_dir": MANIFEST_DIR,
        "rollout": RolloutSettings(
            timeout_seconds=0.05,
            production_timeout_seconds=0.05,
            poll_interval_seconds=0,
            success_window_seconds=0,
        ),
        "health": HealthCheckSettings(
            endpoint="http://fastapi-service.test",
            retries=2,
            backoff_seconds=0,
        ),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_cluster() -> FakeCluster:
    """A cluster already running revision 1 of the service."""
    return FakeCluster(image=f"{IMAGE_PREFIX}:v1")


@pytest.fixture
def staging_target(settings: Settings) -> DeploymentTarget:
    return DeploymentTarget.from_settings(settings, "staging", "v2")


@pytest.fixture
def production_target(settings: Settings) -> DeploymentTarget:
    return DeploymentTarget.from_settings(settings, "production", "v2")


@pytest.fixture
def cluster_factory() -> type[FakeCluster]:
    return FakeCluster


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def service_transport() -> Callable[..., httpx.MockTransport]:
    """Factory for a mock transport serving the service endpoints."""

    def build(**statuses: int) -> httpx.MockTransport:
        return httpx.MockTransport(service_handler(**statuses))

    return build


@pytest.fixture
def make_orchestrator(
    service_transport: Callable[..., httpx.MockTransport],
) -> Callable[..., Orchestrator]:
    """Factory for an orchestrator wired to a fake cluster and a mock service."""

    def build(settings: Settings, cluster: FakeCluster, **statuses: int) -> Orchestrator:
        checker = HealthChecker(settings.health, transport=service_transport(**statuses))
        return Orchestrator(settings, cluster, health_checker=checker)  # type: ignore[arg-type]

    return build
