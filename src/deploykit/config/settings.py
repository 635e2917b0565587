"""deploykit settings configuration.

Uses Pydantic Settings for type-safe configuration management
with support for environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deploykit.version import __version__


PRODUCTION_ENVIRONMENT = "production"


class WorkloadSettings(BaseSettings):
    """Deployed workload identity."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_WORKLOAD_",
        extra="ignore",
    )

    deployment_name: str = Field(
        default="fastapi-service",
        description="Name of the Deployment (and its Service/Ingress)",
    )
    container_name: str = Field(
        default="fastapi",
        description="Container whose image is updated on deploy",
    )
    secret_name: str = Field(
        default="fastapi-secrets",
        description="Secret expected to be provisioned out-of-band",
    )
    app_label: str | None = Field(
        default=None,
        description="Value of the 'app' pod label (default: deployment name)",
    )

    @property
    def label_selector(self) -> str:
        return f"app={self.app_label or self.deployment_name}"


class RegistrySettings(BaseSettings):
    """Container registry configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_REGISTRY_",
        extra="ignore",
    )

    registry: str = Field(
        default="ghcr.io/yourusername",
        description="Registry host and owner prefix",
    )
    repository: str = Field(
        default="fastapi-service",
        description="Image repository name",
    )


class KubernetesSettings(BaseSettings):
    """Kubernetes configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_K8S_",
        extra="ignore",
    )

    in_cluster: bool = Field(
        default=False,
        description="Whether running inside a Kubernetes cluster",
    )
    kubeconfig: str | None = Field(
        default=None,
        description="Path to kubeconfig file (if not in-cluster)",
    )
    context: str | None = Field(
        default=None,
        description="Kubernetes context to use",
    )
    api_timeout: int = Field(
        default=30,
        ge=1,
        description="Per-request Kubernetes API timeout in seconds",
    )


class RolloutSettings(BaseSettings):
    """Rollout convergence configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_ROLLOUT_",
        extra="ignore",
    )

    timeout_seconds: float = Field(
        default=300,
        gt=0,
        description="Rollout timeout for non-production environments",
    )
    production_timeout_seconds: float = Field(
        default=600,
        gt=0,
        description="Rollout timeout for the production environment",
    )
    poll_interval_seconds: float = Field(
        default=5,
        ge=0,
        description="Delay between rollout status polls",
    )
    success_window_seconds: float = Field(
        default=10,
        ge=0,
        description="How long ready must equal desired before convergence",
    )
    revision_history_limit: int = Field(
        default=5,
        ge=1,
        description="revisionHistoryLimit set on Deployments that omit it",
    )
    server_dry_run: bool = Field(
        default=True,
        description="Validate manifests with a server-side dry-run before applying",
    )


class HealthCheckSettings(BaseSettings):
    """Post-deploy health check configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_HEALTH_",
        extra="ignore",
    )

    endpoint: str | None = Field(
        default=None,
        description="Base URL of the service (default: in-cluster Service DNS name)",
    )
    expected_status: int = Field(default=200, ge=100, le=599)
    retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per endpoint before it is marked failed",
    )
    timeout_seconds: float = Field(
        default=10,
        gt=0,
        description="Connect/read timeout per HTTP attempt",
    )
    backoff_seconds: float = Field(
        default=5,
        ge=0,
        description="Fixed delay between attempts",
    )
    metrics_path: str = Field(default="/metrics")
    log_tail_lines: int = Field(default=100, ge=1)
    log_since_seconds: int = Field(default=300, ge=1)
    log_error_threshold: int = Field(
        default=0,
        ge=0,
        description="Maximum error lines tolerated in recent logs",
    )


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_OBSERVABILITY_",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    metrics_enabled: bool = Field(
        default=False,
        description="Record Prometheus metrics for each invocation",
    )
    pushgateway_url: str | None = Field(
        default=None,
        description="Prometheus Pushgateway address to push invocation metrics to",
    )


class Settings(BaseSettings):
    """Main deploykit configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    version: str = Field(default=__version__)
    environment: str = Field(
        default=PRODUCTION_ENVIRONMENT,
        min_length=1,
        description="Target environment name",
    )
    namespace: str | None = Field(
        default=None,
        description="Target namespace (default: environment name)",
    )
    image_tag: str = Field(default="latest", min_length=1)
    manifest_dir: Path = Field(
        default=Path("k8s"),
        description="Directory holding the service manifests",
    )
    backup_dir: Path | None = Field(
        default=None,
        description="Write a YAML backup of the live Deployment here before deploying",
    )
    verify_after_deploy: bool = Field(
        default=True,
        description="Run the health check once the rollout converged",
    )

    workload: WorkloadSettings = Field(default_factory=WorkloadSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    rollout: RolloutSettings = Field(default_factory=RolloutSettings)
    health: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @field_validator("namespace", mode="after")
    @classmethod
    def validate_namespace(cls, v: str | None) -> str | None:
        """Treat an empty namespace as unset."""
        return v or None

    def resolved_namespace(self, environment: str | None = None) -> str:
        """Namespace for an environment; defaults to the environment name."""
        return self.namespace or environment or self.environment

    def rollout_timeout_for(self, environment: str) -> float:
        """Rollout timeout for the given environment."""
        if environment == PRODUCTION_ENVIRONMENT:
            return self.rollout.production_timeout_seconds
        return self.rollout.timeout_seconds


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are cached after first load; the CLI builds the target
    from this instance and passes it explicitly through the workflow.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()
