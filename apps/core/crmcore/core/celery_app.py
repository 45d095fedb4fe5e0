from __future__ import annotations

from typing import Any

from celery import Celery
from celery.signals import worker_init

from crmcore.context import reset_tenant_id, set_tenant_id
from crmcore.core.config import get_settings
from crmcore.core.database import new_session
from crmcore.logging import configure_logging
from crmcore.services import calculate_segment_members, cleanup_orphaned_relationships

settings = get_settings()

celery_app = Celery("crmcore", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.on_after_configure.connect
def _configure_worker_logging(sender: Any, **kwargs: Any) -> None:
    configure_logging()


@worker_init.connect
def _configure_worker(**kwargs: Any) -> None:
    from crmcore.bootstrap import configure

    configure()


@celery_app.task(name="crmcore.segments.recalculate")
def recalculate_segment_task(tenant_id: str, segment_id: str) -> dict[str, Any]:
    token = set_tenant_id(tenant_id)
    session = new_session()
    try:
        result = calculate_segment_members(session, tenant_id, segment_id)
    finally:
        session.close()
        reset_tenant_id(token)
    return result.model_dump(mode="json")


@celery_app.task(name="crmcore.relationships.cleanup")
def cleanup_relationships_task(tenant_id: str, deleted_entity_type: str, deleted_id: str) -> dict[str, Any]:
    token = set_tenant_id(tenant_id)
    session = new_session()
    try:
        result = cleanup_orphaned_relationships(session, tenant_id, deleted_entity_type, deleted_id)
    finally:
        session.close()
        reset_tenant_id(token)
    return result.model_dump(mode="json")
