"""
Distributed tracing using OpenTelemetry.

Instruments:
- Connection pool acquisition and connects
- Synchronization runs, extraction, bucket scoring and repair
- Custom application spans

Exporters are configured by initialize_tracing(); without one, spans are
created but go nowhere.
"""

from .context import add_span_attributes, add_span_event, trace_operation
from .decorators import trace_function
from .tracer import get_tracer, initialize_tracing, shutdown_tracing

__all__ = [
    "initialize_tracing",
    "get_tracer",
    "shutdown_tracing",
    "trace_operation",
    "trace_function",
    "add_span_attributes",
    "add_span_event",
]
