"""deploykit observability package.

Structured logging and Prometheus metrics for deploy invocations.
"""

from deploykit.observability.logging import LogContext, configure_logging, get_logger
from deploykit.observability.metrics import MetricsCollector

__all__ = ["LogContext", "MetricsCollector", "configure_logging", "get_logger"]
