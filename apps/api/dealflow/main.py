from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealflow import events
from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.core.context import RequestContextMiddleware
from dealflow.core.database import SessionLocal, get_db
from dealflow.crm.registry import ENTITY_TYPES
from dealflow.crm.seed import field_seed_helper
from dealflow.events import DomainEvent
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")
_subscriptions_registered = False

_logged_event_types = [
    "crm.lead.created",
    "crm.investor.created",
    "crm.lead.promoted",
    "crm.import.completed",
]


def _on_domain_event(event: DomainEvent) -> None:
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "entity_type": event.payload.get("entity_type"),
            "investor_id": event.payload.get("investor_id"),
        },
    )


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _seed_defaults() -> None:
    try:
        with _session_scope() as session:
            for entity_type in ENTITY_TYPES:
                field_seed_helper.ensure_defaults(session, entity_type)
    except Exception as exc:
        logger.exception("seed_on_startup_failed", extra={"error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_type in _logged_event_types:
            events.subscribe(event_type, _on_domain_event)
        _subscriptions_registered = True
    if get_settings().seed_on_startup:
        _seed_defaults()
    yield


app = FastAPI(title="Dealflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("dealflow-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
