from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.core.context import RequestContextMiddleware
from dealflow.core.events import InternalEvent, event_bus
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")
_subscriptions_registered = False

_deal_event_types = [
    "crm.deal.stage_changed",
    "crm.deal.value_changed",
    "crm.deal.rotten",
    "crm.contact.lifecycle_changed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    payload = event.payload.get("payload") or {}
    logger.info(
        "crm.event",
        extra={
            "event_name": event.name,
            "deal_id": payload.get("deal_id"),
            "contact_id": payload.get("contact_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _deal_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
