"""Service manifests: loading, dependency ordering, rendering and validation.

Manifests are applied in a fixed dependency order so that references always
resolve: configuration and identity objects first, then network policy, the
Service, the Deployment, its autoscaler and finally the Ingress that routes to
the Service. The order on disk never matters.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from deploykit.errors import ValidationError
from deploykit.models import DeploymentTarget
from deploykit.observability.logging import get_logger


log = get_logger(__name__)

# Lower rank is applied first; kinds sharing a rank keep their source order.
APPLY_ORDER: dict[str, int] = {
    "ConfigMap": 0,
    "Secret": 0,
    "ServiceAccount": 1,
    "Role": 1,
    "RoleBinding": 1,
    "NetworkPolicy": 2,
    "Service": 3,
    "Deployment": 4,
    "HorizontalPodAutoscaler": 5,
    "Ingress": 6,
}

MANIFEST_SUFFIXES = (".yaml", ".yml")
DEFAULT_SERVICE_ACCOUNT = "default"
PHASE = "validating"


@dataclass(frozen=True)
class ResourceManifest:
    """Declarative description of one namespaced resource."""

    kind: str
    name: str
    body: dict[str, Any] = field(repr=False, compare=False)
    source: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.name)

    @property
    def rank(self) -> int:
        return APPLY_ORDER[self.kind]

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_dict(cls, body: Any, source: str = "") -> ResourceManifest:
        """Build a manifest from a parsed document, checking its envelope."""
        if not isinstance(body, dict):
            msg = f"{source or 'manifest'}: document is not a mapping"
            raise ValidationError(msg, phase=PHASE, details={"source": source})

        problems = []
        if not isinstance(body.get("apiVersion"), str) or not body.get("apiVersion"):
            problems.append("missing apiVersion")
        kind = body.get("kind")
        if not isinstance(kind, str) or not kind:
            problems.append("missing kind")
        metadata = body.get("metadata")
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if not isinstance(name, str) or not name:
            problems.append("missing metadata.name")
        if problems:
            msg = f"{source or 'manifest'}: {', '.join(problems)}"
            raise ValidationError(msg, phase=PHASE, details={"source": source})

        return cls(kind=kind, name=name, body=body, source=source)


def load_manifests(directory: str | Path) -> list[ResourceManifest]:
    """Load every manifest document from a directory.

    Files are read in name order; multi-document files are supported.
    Namespace documents are skipped because the namespace is ensured
    separately before anything is applied.

    Raises:
        ValidationError: If the directory is missing or a document does not parse.
    """
    path = Path(directory)
    if not path.is_dir():
        msg = f"Manifest directory not found: {path}"
        raise ValidationError(msg, phase=PHASE, details={"directory": str(path)})

    manifests: list[ResourceManifest] = []
    for file in sorted(p for p in path.iterdir() if p.suffix in MANIFEST_SUFFIXES):
        try:
            documents = list(yaml.safe_load_all(file.read_text(encoding="utf-8")))
        except yaml.YAMLError as e:
            msg = f"Invalid manifest: {file.name}: {e}"
            raise ValidationError(msg, phase=PHASE, details={"source": str(file)}) from e

        for index, document in enumerate(documents):
            if document is None:
                continue
            source = file.name if len(documents) == 1 else f"{file.name}#{index}"
            if isinstance(document, dict) and document.get("kind") == "Namespace":
                log.debug("namespace_manifest_skipped", source=source)
                continue
            manifests.append(ResourceManifest.from_dict(document, source=source))

    log.debug("manifests_loaded", directory=str(path), count=len(manifests))
    return manifests


def order_manifests(manifests: Iterable[ResourceManifest]) -> list[ResourceManifest]:
    """Sort manifests into dependency order.

    Raises:
        ValidationError: If a manifest has a kind outside the supported set.
    """
    items = list(manifests)
    unsupported = sorted({m.kind for m in items if m.kind not in APPLY_ORDER})
    if unsupported:
        msg = f"Unsupported resource kinds: {', '.join(unsupported)}"
        raise ValidationError(msg, phase=PHASE, details={"kinds": unsupported})

    # sorted() is stable, so equal ranks stay in source order
    return sorted(items, key=lambda m: m.rank)


def render_manifests(
    manifests: Sequence[ResourceManifest],
    target: DeploymentTarget,
    *,
    workload_name: str,
    container_name: str,
    revision_history_limit: int,
) -> list[ResourceManifest]:
    """Bind manifests to a target.

    Every manifest is moved into the target namespace. The workload
    Deployment gets the resolved image on its container and a bounded
    revision history when it does not declare one.

    Raises:
        ValidationError: If the workload manifest lacks the container.
    """
    rendered = []
    for manifest in manifests:
        body = copy.deepcopy(manifest.body)
        body["metadata"]["namespace"] = target.namespace

        if manifest.kind == "Deployment" and manifest.name == workload_name:
            spec = body.setdefault("spec", {})
            spec.setdefault("revisionHistoryLimit", revision_history_limit)
            containers = _pod_spec(body).get("containers") or []
            container = next((c for c in containers if c.get("name") == container_name), None)
            if container is None:
                msg = f"{manifest}: no container named '{container_name}'"
                raise ValidationError(msg, phase=PHASE, details={"source": manifest.source})
            container["image"] = str(target.image)

        rendered.append(ResourceManifest(manifest.kind, manifest.name, body, manifest.source))
    return rendered


def validate_manifests(manifests: Sequence[ResourceManifest]) -> list[str]:
    """Validate a manifest set without touching the cluster.

    Checks per-kind structure and that every reference between resources
    (ConfigMaps, ServiceAccounts, Roles, scale targets, Ingress backends)
    resolves inside the set. All problems are collected before raising.

    Returns:
        Names of Secrets that are referenced but not defined in the set.
        These are expected to be provisioned out-of-band.

    Raises:
        ValidationError: Listing every problem found.
    """
    problems: list[str] = []
    defined: set[tuple[str, str]] = set()
    for manifest in manifests:
        if manifest.key in defined:
            problems.append(f"{manifest}: defined more than once")
        defined.add(manifest.key)

    external_secrets: set[str] = set()
    for manifest in manifests:
        checker = _CHECKERS.get(manifest.kind)
        if checker is None:
            continue
        for kind, name in checker(manifest, problems):
            if (kind, name) in defined:
                continue
            if kind == "Secret":
                external_secrets.add(name)
            else:
                problems.append(f"{manifest}: references missing {kind} '{name}'")

    if problems:
        log.error("manifest_validation_failed", problems=problems)
        msg = "Invalid manifests: " + "; ".join(problems)
        raise ValidationError(msg, phase=PHASE, details={"problems": problems})

    return sorted(external_secrets)


def _pod_spec(body: dict[str, Any]) -> dict[str, Any]:
    spec = body.get("spec") or {}
    template = spec.get("template") or {}
    return template.get("spec") or {}


def _check_deployment(
    manifest: ResourceManifest, problems: list[str]
) -> list[tuple[str, str]]:
    spec = manifest.body.get("spec") or {}
    if not (spec.get("selector") or {}).get("matchLabels"):
        problems.append(f"{manifest}: missing spec.selector.matchLabels")

    pod_spec = _pod_spec(manifest.body)
    containers = pod_spec.get("containers") or []
    if not containers:
        problems.append(f"{manifest}: no containers in pod template")

    refs: list[tuple[str, str]] = []
    account = pod_spec.get("serviceAccountName")
    if account and account != DEFAULT_SERVICE_ACCOUNT:
        refs.append(("ServiceAccount", account))

    for container in containers:
        if not container.get("name") or not container.get("image"):
            problems.append(f"{manifest}: container without name or image")
        for source in container.get("envFrom") or []:
            for ref_key, kind in (("configMapRef", "ConfigMap"), ("secretRef", "Secret")):
                ref = source.get(ref_key)
                if ref and not ref.get("optional"):
                    refs.append((kind, ref.get("name", "")))
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            for ref_key, kind in (("configMapKeyRef", "ConfigMap"), ("secretKeyRef", "Secret")):
                ref = value_from.get(ref_key)
                if ref and not ref.get("optional"):
                    refs.append((kind, ref.get("name", "")))

    for volume in pod_spec.get("volumes") or []:
        config_map = volume.get("configMap")
        if config_map and not config_map.get("optional"):
            refs.append(("ConfigMap", config_map.get("name", "")))
        secret = volume.get("secret")
        if secret and not secret.get("optional"):
            refs.append(("Secret", secret.get("secretName", "")))
    return refs


def _check_service(manifest: ResourceManifest, problems: list[str]) -> list[tuple[str, str]]:
    spec = manifest.body.get("spec") or {}
    if not spec.get("ports"):
        problems.append(f"{manifest}: no ports")
    return []


def _check_autoscaler(
    manifest: ResourceManifest, problems: list[str]
) -> list[tuple[str, str]]:
    target = (manifest.body.get("spec") or {}).get("scaleTargetRef") or {}
    if not target.get("kind") or not target.get("name"):
        problems.append(f"{manifest}: missing spec.scaleTargetRef")
        return []
    return [(target["kind"], target["name"])]


def _check_ingress(manifest: ResourceManifest, problems: list[str]) -> list[tuple[str, str]]:
    spec = manifest.body.get("spec") or {}
    backends = []
    if spec.get("defaultBackend"):
        backends.append(spec["defaultBackend"])
    for rule in spec.get("rules") or []:
        for path in (rule.get("http") or {}).get("paths") or []:
            backends.append(path.get("backend") or {})

    if not backends:
        problems.append(f"{manifest}: no backends")
    refs = []
    for backend in backends:
        service = backend.get("service") or {}
        if service.get("name"):
            refs.append(("Service", service["name"]))
    return refs


def _check_role_binding(
    manifest: ResourceManifest, problems: list[str]
) -> list[tuple[str, str]]:
    role_ref = manifest.body.get("roleRef") or {}
    if not role_ref.get("name"):
        problems.append(f"{manifest}: missing roleRef")
        return []
    refs = []
    if role_ref.get("kind") == "Role":
        refs.append(("Role", role_ref["name"]))
    for subject in manifest.body.get("subjects") or []:
        # subjects pinned to another namespace are outside the set
        if subject.get("namespace"):
            continue
        if subject.get("kind") == "ServiceAccount" and subject.get("name"):
            refs.append(("ServiceAccount", subject["name"]))
    return refs


_CHECKERS = {
    "Deployment": _check_deployment,
    "Service": _check_service,
    "HorizontalPodAutoscaler": _check_autoscaler,
    "Ingress": _check_ingress,
    "RoleBinding": _check_role_binding,
}


__all__ = [
    "APPLY_ORDER",
    "ResourceManifest",
    "load_manifests",
    "order_manifests",
    "render_manifests",
    "validate_manifests",
]
