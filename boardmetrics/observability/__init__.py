"""Observability helpers."""

from boardmetrics.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_pass,
    record_source_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_pass",
    "record_source_failure",
]
