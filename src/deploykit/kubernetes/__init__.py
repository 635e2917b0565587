"""deploykit Kubernetes package.

Control-plane access and rollout convergence tracking.
"""

from deploykit.kubernetes.cluster import (
    ApplyResult,
    ClusterClient,
    PodSummary,
    Revision,
    WorkloadSummary,
)
from deploykit.kubernetes.rollout import (
    RolloutPhase,
    RolloutResult,
    RolloutStatus,
    wait_for_rollout,
)


__all__ = [
    "ApplyResult",
    "ClusterClient",
    "PodSummary",
    "Revision",
    "RolloutPhase",
    "RolloutResult",
    "RolloutStatus",
    "WorkloadSummary",
    "wait_for_rollout",
]
