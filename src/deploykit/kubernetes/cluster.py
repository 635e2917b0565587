"""Kubernetes control-plane adapter.

Wraps the official Kubernetes client behind the handful of operations the
deployment workflow needs: connectivity probe, namespace and secret checks,
create-or-update of manifests (optionally as a server-side dry-run), image
updates, rollout status, revision history and rollback, plus the read-only
signals used by the health check.

Every Kubernetes API failure is translated into the workflow's error
taxonomy: rejected requests become ``ValidationError``, everything else
(server errors, transport failures) becomes ``ConnectivityError``.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import urllib3
from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException

from deploykit.config.settings import KubernetesSettings
from deploykit.errors import ConnectivityError, RollbackTargetNotFound, ValidationError
from deploykit.kubernetes.rollout import REVISION_ANNOTATION, RolloutStatus
from deploykit.manifests import ResourceManifest
from deploykit.observability.logging import get_logger


log = get_logger(__name__)

# HTTP Status Codes
HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404

# Statuses meaning the request itself was rejected
CLIENT_ERROR_STATUSES = frozenset({400, 403, 404, 409, 422})

POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

TRANSPORT_ERRORS = (urllib3.exceptions.HTTPError, OSError)

# kind -> (API attribute, method suffix)
RESOURCE_APIS: dict[str, tuple[str, str]] = {
    "ConfigMap": ("core_api", "config_map"),
    "Secret": ("core_api", "secret"),
    "ServiceAccount": ("core_api", "service_account"),
    "Service": ("core_api", "service"),
    "Role": ("rbac_api", "role"),
    "RoleBinding": ("rbac_api", "role_binding"),
    "NetworkPolicy": ("networking_api", "network_policy"),
    "Ingress": ("networking_api", "ingress"),
    "Deployment": ("apps_api", "deployment"),
    "HorizontalPodAutoscaler": ("autoscaling_api", "horizontal_pod_autoscaler"),
}


@dataclass
class ApplyResult:
    """Result of applying one manifest."""

    kind: str
    name: str
    action: str  # created, configured, unchanged
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return self.action != "unchanged"


@dataclass(frozen=True)
class Revision:
    """One retained rollout revision of a Deployment."""

    number: int
    images: tuple[str, ...] = ()
    created_at: datetime | None = None
    replica_set: str | None = None


@dataclass(frozen=True)
class PodSummary:
    """Pod state as reported by the control plane."""

    name: str
    phase: str
    ready: bool
    restarts: int = 0


@dataclass
class WorkloadSummary:
    """Snapshot of the workload and the resources routing to it."""

    name: str
    namespace: str
    status: RolloutStatus
    images: list[str] = field(default_factory=list)
    pods: list[PodSummary] = field(default_factory=list)
    endpoint_count: int = 0
    ingress_hosts: list[str] = field(default_factory=list)


def _error_message(error: ApiException) -> str:
    try:
        body = json.loads(error.body or "")
    except (TypeError, ValueError):
        return str(error.reason)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(error.reason)


@contextmanager
def _translate_errors(action: str, phase: str) -> Iterator[None]:
    """Map Kubernetes client failures onto the workflow error taxonomy."""
    try:
        yield
    except ApiException as e:
        details = {"action": action, "status": e.status}
        message = f"{action}: {e.status} {_error_message(e)}"
        if e.status in CLIENT_ERROR_STATUSES:
            raise ValidationError(message, phase=phase, details=details) from e
        raise ConnectivityError(message, phase=phase, details=details) from e
    except TRANSPORT_ERRORS as e:
        msg = f"{action}: {e}"
        raise ConnectivityError(msg, phase=phase, details={"action": action}) from e


def _read_or_none(read: Any, **kwargs: Any) -> Any:
    try:
        return read(**kwargs)
    except ApiException as e:
        if e.status == HTTP_NOT_FOUND:
            return None
        raise


def _revision_of(obj: Any) -> int | None:
    annotations = obj.metadata.annotations or {}
    value = annotations.get(REVISION_ANNOTATION, "")
    return int(value) if value.isdigit() else None


class ClusterClient:
    """Synchronous facade over the Kubernetes API for one workflow run.

    Attributes:
        core_api: Kubernetes CoreV1Api client
        apps_api: Kubernetes AppsV1Api client
        networking_api: Kubernetes NetworkingV1Api client
        autoscaling_api: Kubernetes AutoscalingV2Api client
        rbac_api: Kubernetes RbacAuthorizationV1Api client
    """

    def __init__(self, settings: KubernetesSettings | None = None) -> None:
        """Load cluster credentials and build the API clients.

        Raises:
            ConnectivityError: If no usable cluster configuration is found.
        """
        self.settings = settings or KubernetesSettings()
        try:
            if self.settings.in_cluster:
                k8s_config.load_incluster_config()
            else:
                k8s_config.load_kube_config(
                    config_file=self.settings.kubeconfig,
                    context=self.settings.context,
                )
        except (k8s_config.ConfigException, OSError) as e:
            msg = f"Cannot load Kubernetes configuration: {e}"
            raise ConnectivityError(msg, phase="connecting") from e

        self.core_api = client.CoreV1Api()
        self.apps_api = client.AppsV1Api()
        self.networking_api = client.NetworkingV1Api()
        self.autoscaling_api = client.AutoscalingV2Api()
        self.rbac_api = client.RbacAuthorizationV1Api()
        self.version_api = client.VersionApi()
        self._serializer = ApiClient()

    @property
    def timeout(self) -> int:
        return self.settings.api_timeout

    def verify_connectivity(self) -> str:
        """Probe the API server once.

        Returns:
            The server's git version.

        Raises:
            ConnectivityError: If the control plane cannot be reached.
        """
        try:
            info = self.version_api.get_code(_request_timeout=self.timeout)
        except (ApiException, *TRANSPORT_ERRORS) as e:
            msg = f"Not connected to a Kubernetes cluster: {e}"
            raise ConnectivityError(msg, phase="connecting") from e
        log.debug("cluster_reachable", server_version=info.git_version)
        return info.git_version

    def ensure_namespace(self, namespace: str) -> bool:
        """Create the namespace if it does not exist.

        Returns:
            True if the namespace was created.
        """
        with _translate_errors(f"ensure namespace {namespace}", "preparing"):
            existing = _read_or_none(
                self.core_api.read_namespace, name=namespace, _request_timeout=self.timeout
            )
            if existing is not None:
                return False
            self.core_api.create_namespace(
                body={"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}},
                _request_timeout=self.timeout,
            )
        log.warning("namespace_created", namespace=namespace)
        return True

    def secret_exists(self, name: str, namespace: str) -> bool:
        with _translate_errors(f"read Secret/{name}", "preparing"):
            secret = _read_or_none(
                self.core_api.read_namespaced_secret,
                name=name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )
        return secret is not None

    def apply(self, manifest: ResourceManifest, *, dry_run: bool = False) -> ApplyResult:
        """Create or update one resource.

        Existing resources are patched; the result reports ``unchanged`` when
        the server kept the same resource version, so re-applying identical
        manifests is observably a no-op.
        """
        api_attr, suffix = RESOURCE_APIS[manifest.kind]
        api = getattr(self, api_attr)
        namespace = manifest.body["metadata"]["namespace"]
        extra: dict[str, Any] = {"_request_timeout": self.timeout}
        if dry_run:
            extra["dry_run"] = "All"

        phase = "validating" if dry_run else "applying"
        with _translate_errors(f"apply {manifest}", phase):
            current = _read_or_none(
                getattr(api, f"read_namespaced_{suffix}"),
                name=manifest.name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )
            if current is None:
                getattr(api, f"create_namespaced_{suffix}")(
                    namespace=namespace, body=manifest.body, **extra
                )
                action = "created"
            else:
                updated = getattr(api, f"patch_namespaced_{suffix}")(
                    name=manifest.name, namespace=namespace, body=manifest.body, **extra
                )
                unchanged = updated.metadata.resource_version == current.metadata.resource_version
                action = "unchanged" if unchanged else "configured"

        log.info(
            "manifest_dry_run" if dry_run else "manifest_applied",
            resource=str(manifest),
            namespace=namespace,
            action=action,
        )
        return ApplyResult(kind=manifest.kind, name=manifest.name, action=action, dry_run=dry_run)

    def read_deployment(self, name: str, namespace: str) -> Any:
        """Return the ``V1Deployment`` or None if it does not exist."""
        with _translate_errors(f"read Deployment/{name}", "reading"):
            return _read_or_none(
                self.apps_api.read_namespaced_deployment,
                name=name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )

    def workload_exists(self, name: str, namespace: str) -> bool:
        return self.read_deployment(name, namespace) is not None

    def current_revision(self, name: str, namespace: str) -> int | None:
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            return None
        return _revision_of(deployment)

    def export_deployment(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Return the live Deployment as a plain manifest dict."""
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            return None
        return self._serializer.sanitize_for_serialization(deployment)

    def set_image(self, name: str, namespace: str, container: str, image: str) -> bool:
        """Point a Deployment container at a new image.

        Returns:
            True if the template changed, False if the image was already set.

        Raises:
            ValidationError: If the Deployment or container does not exist.
        """
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            msg = f"Deployment/{name} not found in {namespace}"
            raise ValidationError(msg, phase="updating_image")

        current = next(
            (c for c in deployment.spec.template.spec.containers if c.name == container), None
        )
        if current is None:
            msg = f"Deployment/{name} has no container named '{container}'"
            raise ValidationError(msg, phase="updating_image")
        if current.image == image:
            log.info("image_unchanged", deployment=name, image=image)
            return False

        patch_body = {
            "spec": {"template": {"spec": {"containers": [{"name": container, "image": image}]}}}
        }
        with _translate_errors(f"set image on Deployment/{name}", "updating_image"):
            self.apps_api.patch_namespaced_deployment(
                name=name, namespace=namespace, body=patch_body, _request_timeout=self.timeout
            )
        log.info("image_updated", deployment=name, previous=current.image, image=image)
        return True

    def rollout_status(self, name: str, namespace: str) -> RolloutStatus:
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            msg = f"Deployment/{name} disappeared during rollout"
            raise ValidationError(msg, phase="awaiting_rollout")
        return RolloutStatus.from_deployment(deployment)

    def _replica_sets_by_revision(self, deployment: Any) -> list[tuple[int, Any]]:
        name = deployment.metadata.name
        namespace = deployment.metadata.namespace
        selector = ",".join(
            f"{k}={v}" for k, v in (deployment.spec.selector.match_labels or {}).items()
        )
        with _translate_errors(f"list ReplicaSets of Deployment/{name}", "reading"):
            replica_sets = self.apps_api.list_namespaced_replica_set(
                namespace=namespace, label_selector=selector, _request_timeout=self.timeout
            )

        revisions = []
        for rs in replica_sets.items:
            owners = rs.metadata.owner_references or []
            if owners and not any(o.uid == deployment.metadata.uid for o in owners):
                continue
            revision = _revision_of(rs)
            if revision is not None:
                revisions.append((revision, rs))
        revisions.sort(key=lambda x: x[0])
        return revisions

    def list_revisions(self, name: str, namespace: str) -> list[Revision]:
        """Retained revisions, oldest first."""
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            return []
        return [
            Revision(
                number=number,
                images=tuple(c.image for c in rs.spec.template.spec.containers),
                created_at=rs.metadata.creation_timestamp,
                replica_set=rs.metadata.name,
            )
            for number, rs in self._replica_sets_by_revision(deployment)
        ]

    def rollback(self, name: str, namespace: str, revision: int = 0) -> int:
        """Restore the pod template of a retained revision.

        Args:
            name: Deployment name.
            namespace: Deployment namespace.
            revision: 0 for the revision preceding the current one, otherwise
                an absolute revision number.

        Returns:
            The revision number rolled back to.

        Raises:
            RollbackTargetNotFound: If the revision is not retained or is the
                current one. Nothing is mutated in that case.
        """
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            msg = f"Deployment/{name} not found in {namespace}"
            raise RollbackTargetNotFound(msg, phase="rolling_back")

        history = self._replica_sets_by_revision(deployment)
        current = _revision_of(deployment) or (history[-1][0] if history else 0)

        if revision == 0:
            candidates = [(n, rs) for n, rs in history if n < current]
            target = candidates[-1] if candidates else None
        else:
            target = next(((n, rs) for n, rs in history if n == revision), None)

        retained = [n for n, _ in history]
        if target is None or target[0] == current:
            wanted = "previous revision" if revision == 0 else f"revision {revision}"
            msg = f"No {wanted} available for Deployment/{name} (retained: {retained})"
            raise RollbackTargetNotFound(
                msg,
                phase="rolling_back",
                details={"requested": revision, "current": current, "retained": retained},
            )

        number, replica_set = target
        template = self._serializer.sanitize_for_serialization(replica_set.spec.template)
        template.get("metadata", {}).get("labels", {}).pop(POD_TEMPLATE_HASH_LABEL, None)
        patch_body = [{"op": "replace", "path": "/spec/template", "value": template}]

        with _translate_errors(f"roll back Deployment/{name}", "rolling_back"):
            self.apps_api.patch_namespaced_deployment(
                name=name, namespace=namespace, body=patch_body, _request_timeout=self.timeout
            )
        log.info("rollback_applied", deployment=name, from_revision=current, to_revision=number)
        return number

    def endpoint_count(self, name: str, namespace: str) -> int:
        """Number of ready addresses behind a Service."""
        with _translate_errors(f"read Endpoints/{name}", "health_check"):
            endpoints = _read_or_none(
                self.core_api.read_namespaced_endpoints,
                name=name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )
        if endpoints is None:
            return 0
        return sum(len(subset.addresses or []) for subset in endpoints.subsets or [])

    def pod_summaries(self, namespace: str, label_selector: str) -> list[PodSummary]:
        with _translate_errors(f"list pods {label_selector}", "health_check"):
            pods = self.core_api.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector, _request_timeout=self.timeout
            )
        summaries = []
        for pod in pods.items:
            statuses = pod.status.container_statuses or []
            summaries.append(
                PodSummary(
                    name=pod.metadata.name,
                    phase=pod.status.phase or "Unknown",
                    ready=bool(statuses) and all(cs.ready for cs in statuses),
                    restarts=sum(cs.restart_count or 0 for cs in statuses),
                )
            )
        return sorted(summaries, key=lambda p: p.name)

    def recent_logs(
        self,
        namespace: str,
        label_selector: str,
        *,
        tail_lines: int,
        since_seconds: int,
    ) -> list[str]:
        """Recent log lines of every pod matching the selector."""
        lines: list[str] = []
        for pod in self.pod_summaries(namespace, label_selector):
            with _translate_errors(f"read logs of Pod/{pod.name}", "health_check"):
                try:
                    text = self.core_api.read_namespaced_pod_log(
                        name=pod.name,
                        namespace=namespace,
                        tail_lines=tail_lines,
                        since_seconds=since_seconds,
                        _request_timeout=self.timeout,
                    )
                except ApiException as e:
                    # containers still starting answer 400 until they have logs
                    if e.status != HTTP_BAD_REQUEST:
                        raise
                    log.warning("pod_log_unavailable", pod=pod.name, reason=e.reason)
                    continue
            lines.extend(str(text or "").splitlines())
        return lines

    def ingress_hosts(self, name: str, namespace: str) -> list[str]:
        with _translate_errors(f"read Ingress/{name}", "reading"):
            ingress = _read_or_none(
                self.networking_api.read_namespaced_ingress,
                name=name,
                namespace=namespace,
                _request_timeout=self.timeout,
            )
        if ingress is None:
            return []
        return [rule.host for rule in ingress.spec.rules or [] if rule.host]

    def describe_workload(self, name: str, namespace: str, label_selector: str) -> WorkloadSummary:
        """Collect the workload status shown after a deploy.

        Raises:
            ValidationError: If the Deployment does not exist.
        """
        deployment = self.read_deployment(name, namespace)
        if deployment is None:
            msg = f"Deployment/{name} not found in {namespace}"
            raise ValidationError(msg, phase="reading")
        return WorkloadSummary(
            name=name,
            namespace=namespace,
            status=RolloutStatus.from_deployment(deployment),
            images=[c.image for c in deployment.spec.template.spec.containers],
            pods=self.pod_summaries(namespace, label_selector),
            endpoint_count=self.endpoint_count(name, namespace),
            ingress_hosts=self.ingress_hosts(name, namespace),
        )


__all__ = [
    "ApplyResult",
    "ClusterClient",
    "PodSummary",
    "Revision",
    "WorkloadSummary",
]
