"""Structured errors for the deployment workflow.

Every failure path of deploy, rollback and health-check surfaces as a
``DeployError`` subclass. The CLI turns these into a labelled message and a
nonzero exit code.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


class DeployError(RuntimeError):
    """Structured exception for deployment workflow failures."""

    code = "deploy_error"

    def __init__(
        self,
        message: str,
        *,
        phase: str = "unknown",
        details: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.message = message
        self.details = details or {}
        self.timestamp = timestamp or datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/status surfaces."""
        return {
            "code": self.code,
            "phase": self.phase,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class ValidationError(DeployError):
    """A manifest is malformed or references something that does not exist."""

    code = "validation_error"


class ConnectivityError(DeployError):
    """The control plane is unreachable or failed to serve a request."""

    code = "connectivity_error"


class ConvergenceTimeout(DeployError):
    """The rollout did not reach the desired state within the timeout."""

    code = "convergence_timeout"


class RolloutFailed(DeployError):
    """The control plane reported the rollout as failed before the timeout."""

    code = "rollout_failed"


class RollbackTargetNotFound(DeployError):
    """The requested revision is not in the retained rollout history."""

    code = "rollback_target_not_found"


class RollbackFailed(DeployError):
    """A rollback was issued but did not converge."""

    code = "rollback_failed"


class BackupFailed(DeployError):
    """The live workload could not be written to the backup directory."""

    code = "backup_failed"


class HealthCheckFailure(DeployError):
    """Smoke tests, cluster health or log checks did not pass."""

    code = "health_check_failure"


__all__ = [
    "BackupFailed",
    "ConnectivityError",
    "ConvergenceTimeout",
    "DeployError",
    "HealthCheckFailure",
    "RollbackFailed",
    "RollbackTargetNotFound",
    "RolloutFailed",
    "ValidationError",
]
