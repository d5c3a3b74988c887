"""Observability: structured logging, correlation ids, metrics and health checks."""

from .correlation import correlation_id_var, generate_correlation_id, get_correlation_id, set_correlation_id
from .logging_config import configure_logging

__all__ = [
    "configure_logging",
    "correlation_id_var",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]
