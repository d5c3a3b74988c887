"""Correlation ID propagation.

The correlation id follows one unit of work (HTTP call, inbound event, timer)
through every log line. It is distinct from the travel ``request_id``, which
is logged as a regular ``extra`` field.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Current correlation id, or "no-correlation-id" if not set."""
    return correlation_id_var.get() or "no-correlation-id"


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)
