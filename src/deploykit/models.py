"""Deployment target value objects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deploykit.config.settings import Settings


@dataclass(frozen=True)
class ImageReference:
    """Container image reference (registry + repository + tag)."""

    registry: str
    repository: str
    tag: str

    def __str__(self) -> str:
        registry = self.registry.rstrip("/")
        if not registry:
            return f"{self.repository}:{self.tag}"
        return f"{registry}/{self.repository}:{self.tag}"


@dataclass(frozen=True)
class DeploymentTarget:
    """Where and what to deploy. Immutable for the whole invocation."""

    environment: str
    namespace: str
    image: ImageReference

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        environment: str | None = None,
        image_tag: str | None = None,
    ) -> DeploymentTarget:
        """Resolve a target from settings, overriding environment and tag."""
        env = environment or settings.environment
        return cls(
            environment=env,
            namespace=settings.resolved_namespace(env),
            image=ImageReference(
                registry=settings.registry.registry,
                repository=settings.registry.repository,
                tag=image_tag or settings.image_tag,
            ),
        )


__all__ = ["DeploymentTarget", "ImageReference"]
