"""Rollout status model and convergence polling.

A rollout has converged once the Deployment controller has observed the
latest spec and every desired replica is updated, ready and available, and
that has held for the configured success window. A ``ProgressDeadlineExceeded``
condition ends the wait early as a failure.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from deploykit.observability.logging import get_logger


log = get_logger(__name__)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
PROGRESS_DEADLINE_EXCEEDED = "ProgressDeadlineExceeded"


class RolloutPhase(str, Enum):
    """Phase of a rollout wait."""

    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"


@dataclass(frozen=True)
class RolloutStatus:
    """Replica counts and progress condition of a Deployment."""

    desired: int
    ready: int = 0
    updated: int = 0
    available: int = 0
    observed: bool = True
    condition: str | None = None
    revision: int | None = None

    @property
    def is_complete(self) -> bool:
        return (
            self.observed
            and self.updated == self.desired
            and self.ready == self.desired
            and self.available == self.desired
        )

    @property
    def has_failed(self) -> bool:
        return self.condition == PROGRESS_DEADLINE_EXCEEDED

    @classmethod
    def from_deployment(cls, deployment: Any) -> RolloutStatus:
        """Build a status from a ``V1Deployment``."""
        spec = deployment.spec
        status = deployment.status
        metadata = deployment.metadata

        desired = spec.replicas if spec.replicas is not None else 1
        generation = metadata.generation or 0
        observed_generation = (status.observed_generation if status else None) or 0

        condition = None
        for cond in (status.conditions if status else None) or []:
            if cond.type == "Progressing":
                condition = cond.reason
                break

        revision = None
        annotations = metadata.annotations or {}
        if annotations.get(REVISION_ANNOTATION, "").isdigit():
            revision = int(annotations[REVISION_ANNOTATION])

        return cls(
            desired=desired,
            ready=(status.ready_replicas if status else None) or 0,
            updated=(status.updated_replicas if status else None) or 0,
            available=(status.available_replicas if status else None) or 0,
            observed=observed_generation >= generation,
            condition=condition,
            revision=revision,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "desired": self.desired,
            "ready": self.ready,
            "updated": self.updated,
            "available": self.available,
            "observed": self.observed,
            "condition": self.condition,
            "revision": self.revision,
        }


@dataclass
class RolloutResult:
    """Outcome of waiting for a rollout."""

    phase: RolloutPhase
    status: RolloutStatus | None
    elapsed_seconds: float
    polls: int

    @property
    def succeeded(self) -> bool:
        return self.phase == RolloutPhase.SUCCEEDED


async def wait_for_rollout(
    get_status: Callable[[], RolloutStatus],
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    success_window_seconds: float = 0,
    clock: Callable[[], float] = time.monotonic,
) -> RolloutResult:
    """Poll a rollout until it converges, fails or times out.

    Args:
        get_status: Blocking call returning the current rollout status; run in a
            worker thread once per poll.
        timeout_seconds: Hard bound on the whole wait.
        poll_interval_seconds: Sleep between polls.
        success_window_seconds: How long a complete status must hold.
        clock: Monotonic clock (injectable for tests).

    Returns:
        RolloutResult: Terminal phase with the last observed status.
    """
    start = clock()
    stable_since: float | None = None
    polls = 0
    status: RolloutStatus | None = None

    while True:
        status = await asyncio.to_thread(get_status)
        polls += 1
        now = clock()
        elapsed = now - start

        log.debug(
            "rollout_poll",
            poll=polls,
            desired=status.desired,
            ready=status.ready,
            updated=status.updated,
            condition=status.condition,
        )

        if status.has_failed:
            log.warning("rollout_failed", condition=status.condition, elapsed=round(elapsed, 1))
            return RolloutResult(RolloutPhase.FAILED, status, elapsed, polls)

        if status.is_complete:
            if stable_since is None:
                stable_since = now
            if now - stable_since >= success_window_seconds:
                log.info(
                    "rollout_converged",
                    replicas=status.ready,
                    revision=status.revision,
                    elapsed=round(elapsed, 1),
                )
                return RolloutResult(RolloutPhase.SUCCEEDED, status, elapsed, polls)
        else:
            stable_since = None

        if elapsed >= timeout_seconds:
            log.warning(
                "rollout_timed_out",
                ready=status.ready,
                desired=status.desired,
                timeout=timeout_seconds,
            )
            return RolloutResult(RolloutPhase.TIMED_OUT, status, elapsed, polls)

        await asyncio.sleep(poll_interval_seconds)


__all__ = [
    "PROGRESS_DEADLINE_EXCEEDED",
    "REVISION_ANNOTATION",
    "RolloutPhase",
    "RolloutResult",
    "RolloutStatus",
    "wait_for_rollout",
]
