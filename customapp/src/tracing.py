from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, format_trace_id

from customapp.src.metrics import METRICS
from customapp.src.model import ResourceRef

LOGGER = logging.getLogger("customapp.reconcile")
# A proxy until the host installs a TracerProvider; spans are no-ops before that.
TRACER = trace.get_tracer("customapp.reconcile")

_FAILED_OUTCOMES = frozenset({"error", "fatal", "terminal"})


@dataclass
class ReconcileSpan:
    """One reconcile attempt: the key, its outcome, and how long it took."""

    ref: ResourceRef
    outcome: str = "unknown"
    duration_seconds: float = 0.0
    trace_id: str | None = None


@contextmanager
def reconcile_span(ref: ResourceRef) -> Iterator[ReconcileSpan]:
    """Wrap one reconcile attempt in an OpenTelemetry ``reconcile`` span.

    The caller sets ``span.outcome``; an exception escaping the block marks
    it ``error``.  The outcome ends up as the ``customapp.outcome`` span
    attribute, failed outcomes set an ERROR status, and the duration feeds
    the reconcile latency histogram.  A summary log line carries the trace
    id so logs and traces can be joined.
    """
    span = ReconcileSpan(ref=ref)
    METRICS.reconcile_attempts_total.labels(kind=ref.kind).inc()
    started = time.monotonic()
    with TRACER.start_as_current_span(
        "reconcile",
        attributes={"customapp.ref": str(ref), "customapp.kind": ref.kind},
    ) as otel_span:
        context = otel_span.get_span_context()
        if context.is_valid:
            span.trace_id = format_trace_id(context.trace_id)
        try:
            yield span
        except BaseException:
            span.outcome = "error"
            raise
        finally:
            span.duration_seconds = time.monotonic() - started
            otel_span.set_attribute("customapp.outcome", span.outcome)
            if span.outcome in _FAILED_OUTCOMES:
                otel_span.set_status(Status(StatusCode.ERROR, span.outcome))
            METRICS.reconcile_duration_seconds.labels(kind=ref.kind).observe(
                span.duration_seconds
            )
            LOGGER.info(
                "reconcile %s outcome=%s duration=%.3fs",
                ref,
                span.outcome,
                span.duration_seconds,
                extra={
                    "reconcile_ref": str(ref),
                    "reconcile_outcome": span.outcome,
                    "reconcile_duration_seconds": round(span.duration_seconds, 6),
                    "trace_id": span.trace_id,
                },
            )
