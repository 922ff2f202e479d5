from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealflow.context import reset_actor_user_id, reset_correlation_id, set_actor_user_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get(CORRELATION_HEADER) or "").strip()
        correlation_id = incoming[:128] if incoming else str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        # every request starts without an actor; auth binds one
        actor_token = set_actor_user_id(None)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_actor_user_id(actor_token)
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
