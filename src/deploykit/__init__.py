"""deploykit - Kubernetes deployment orchestrator.

Applies a service's manifests in dependency order, rolls out a new image,
waits for convergence, verifies health and rolls back on failure.
"""

from deploykit.version import __version__


__all__ = ["__version__"]
