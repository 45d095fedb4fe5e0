from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.orm import Session

from crmcore.core.config import get_settings
from crmcore.core.database import new_session
from crmcore.core.events import InternalEvent
from crmcore.relationships.schemas import CleanupResult
from crmcore.relationships.service import relationship_service

logger = logging.getLogger(__name__)

RECORD_DELETED_EVENT = "crm.record.deleted"

SessionFactory = Callable[[], Session]


class RecordDeletedHandler:
    """Runs reference cleanup when a ``crm.record.deleted`` envelope is published.

    The envelope carries ``tenant_id`` and either top-level or nested
    (``payload``) ``entity_type`` and ``record_id`` keys.
    """

    def __init__(self, session_factory: SessionFactory = new_session) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def __call__(self, event: InternalEvent) -> CleanupResult | None:
        if not get_settings().cleanup_on_delete_events:
            return None
        if not isinstance(event.payload, dict):
            return None

        envelope: dict[str, Any] = event.payload
        body = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else envelope
        tenant_id = envelope.get("tenant_id")
        entity_type = body.get("entity_type")
        record_id = body.get("record_id")
        if not isinstance(tenant_id, str) or not isinstance(entity_type, str) or not record_id:
            logger.warning(
                "record_deleted_event_incomplete",
                extra={"event_name": event.name, "entity_type": entity_type},
            )
            return None

        try:
            with self._session_scope() as session:
                return relationship_service.cleanup(session, tenant_id, entity_type, str(record_id))
        except Exception as exc:
            logger.exception(
                "record_deleted_cleanup_failed",
                extra={"event_name": event.name, "tenant_id": tenant_id, "record_id": str(record_id), "error": str(exc)[:500]},
            )
            return None
