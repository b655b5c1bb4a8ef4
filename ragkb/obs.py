"""Observability utilities providing OpenTelemetry spans.

Spans wrap document ingestion, embedding batches and retrieval. Without a
configured tracer provider OpenTelemetry's default no-op provider is used; set
OTEL_CONSOLE_EXPORT to install a basic console exporter, or configure an OTLP
exporter externally.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from ragkb.config import settings

_otel_inited: bool = False
_otel_lock = threading.Lock()


def _init_otel() -> None:
    """Install a console-exporting tracer provider once, when enabled in settings."""
    global _otel_inited
    if _otel_inited:
        return
    with _otel_lock:
        if _otel_inited:
            return
        if settings.OTEL_CONSOLE_EXPORT:
            tp = TracerProvider()
            tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            trace.set_tracer_provider(tp)
        _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[trace.Span]:
    """Run the enclosed block inside an OpenTelemetry span.

    Args:
        name: Span name, e.g. "ingest.document".
        attributes: Primitive attribute values to attach; None values are skipped.
    """
    _init_otel()
    tracer = trace.get_tracer("ragkb")
    attrs = {k: v for k, v in (attributes or {}).items() if v is not None}
    with tracer.start_as_current_span(name, attributes=attrs) as otel_span:
        yield otel_span
