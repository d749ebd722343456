"""Observability helpers."""

from backend.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_recalculation,
    record_warning,
    record_webhook_event,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_recalculation",
    "record_warning",
    "record_webhook_event",
]
