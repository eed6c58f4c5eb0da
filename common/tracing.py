"""
Lightweight request tracing for the webhook and ledger services.

Spans are emitted as one structured log line each ("TRACE: {...}"). An
incoming X-Trace-ID header is honoured so a provider delivery or an operator
call can be followed across both services.
"""
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

class TraceSpan:

    def __init__(self, name: str, service: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None):
        self.name = name
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.span_id = uuid.uuid4().hex[:8]
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {"service.name": service}
        self.logs: List[Dict[str, Any]] = []
        self.status = "ok"
        self._started = time.perf_counter()
        self.start_time = time.time()

    def add_tag(self, key: str, value) -> "TraceSpan":
        self.tags[key] = value
        return self

    def add_log(self, message: str, level: str = "info") -> "TraceSpan":
        self.logs.append({"at": round(time.perf_counter() - self._started, 4), "level": level, "message": message})
        return self

    def set_error(self, error: BaseException) -> "TraceSpan":
        self.status = "error"
        self.tags.update({"error": True, "error.type": type(error).__name__, "error.message": str(error)})
        return self

    def finish(self) -> "TraceSpan":
        record = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round((time.perf_counter() - self._started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
            "logs": self.logs,
            "timestamp": self.start_time,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.set_error(exc_val)
        self.finish()

class Tracer:

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None) -> TraceSpan:
        return TraceSpan(name, self.service_name, trace_id, parent_span_id)

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        span = self.start_span(operation_name, request.headers.get(TRACE_HEADER), request.headers.get(SPAN_HEADER))
        return span.add_tag("http.method", request.method).add_tag("http.path", request.url.path)

webhook_tracer = Tracer("webhook-service")
ledger_tracer = Tracer("ledger-service")
reconciliation_tracer = Tracer("reconciliation")

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """Wrap every request in a span and echo its ids on the response"""
    with tracer.start_span_from_request(request, f"{request.method} {request.url.path}") as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
        return response
