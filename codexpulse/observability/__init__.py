"""Observability helpers."""

from codexpulse.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_entries,
    record_parser_failure,
    record_session_rotation,
    record_status_write,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_entries",
    "record_parser_failure",
    "record_session_rotation",
    "record_status_write",
]
