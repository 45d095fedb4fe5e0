from __future__ import annotations

import logging

from prometheus_client import start_http_server

from crmcore.core.config import get_settings
from crmcore.core.database import new_session
from crmcore.core.events import event_bus
from crmcore.logging import configure_logging
from crmcore.otel import setup_otel
from crmcore.relationships.handlers import RECORD_DELETED_EVENT, RecordDeletedHandler, SessionFactory

logger = logging.getLogger("crmcore.lifecycle")

_registered_handler: RecordDeletedHandler | None = None
_metrics_server_started = False


def register_subscriptions(session_factory: SessionFactory = new_session) -> RecordDeletedHandler:
    """Subscribe delete-driven reference cleanup to the in-process event bus. Idempotent."""

    global _registered_handler
    if _registered_handler is not None:
        return _registered_handler

    handler = RecordDeletedHandler(session_factory)
    event_bus.subscribe(RECORD_DELETED_EVENT, handler)
    _registered_handler = handler
    return handler


def unregister_subscriptions() -> None:
    global _registered_handler
    if _registered_handler is None:
        return
    event_bus.unsubscribe(RECORD_DELETED_EVENT, _registered_handler)
    _registered_handler = None


def configure(session_factory: SessionFactory = new_session) -> None:
    """Process start-up: logging, tracing, the metrics endpoint and event subscriptions."""

    global _metrics_server_started

    configure_logging()
    settings = get_settings()
    setup_otel("crmcore", settings.otel_enabled)

    if settings.metrics_enabled and not _metrics_server_started:
        start_http_server(settings.metrics_port)
        _metrics_server_started = True

    if settings.cleanup_on_delete_events:
        register_subscriptions(session_factory)

    logger.info("crmcore_started", extra={"event_name": "crmcore.started"})
