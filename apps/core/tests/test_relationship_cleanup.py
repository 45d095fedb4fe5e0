from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, event, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore import audit, events, models  # noqa: F401
from crmcore.bootstrap import register_subscriptions, unregister_subscriptions
from crmcore.core.database import Base
from crmcore.errors import TransactionError
from crmcore.fields.models import CRMFieldDefinition
from crmcore.fields.registry import field_registry
from crmcore.records.models import CRMAccount, CRMContact, CRMCustomModule, CRMCustomModuleRecord, CRMLead, CRMOpportunity
from crmcore.records.repository import BuiltInEntityRepository
from crmcore.services import cleanup_orphaned_relationships, get_referencing_records


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite only honours SAVEPOINT when the driver leaves transaction control to SQLAlchemy.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")

    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    field_registry.cache.clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    unregister_subscriptions()
    field_registry.cache.clear()
    audit.audit_entries.clear()
    events.published_events.clear()


def _relationship_field(
    session: Session,
    field_key: str,
    related_module: str,
    *,
    entity_type: str | None = "LEAD",
    custom_module_id: uuid.UUID | None = None,
    tenant_id: str = "tenant-a",
) -> None:
    session.add(
        CRMFieldDefinition(
            tenant_id=tenant_id,
            entity_type=entity_type,
            custom_module_id=custom_module_id,
            field_key=field_key,
            label=field_key,
            data_type="relationship",
            related_module=related_module,
        )
    )
    session.commit()


def _lead(session: Session, name: str, custom_fields: dict[str, object], tenant_id: str = "tenant-a") -> CRMLead:
    lead = CRMLead(tenant_id=tenant_id, first_name=name, last_name="Lead", custom_fields=custom_fields)
    session.add(lead)
    session.commit()
    return lead


def test_deleting_account_cleans_three_lead_references(db_session: Session) -> None:
    account = CRMAccount(tenant_id="tenant-a", name="Account A")
    other = CRMAccount(tenant_id="tenant-a", name="Account B")
    db_session.add_all([account, other])
    db_session.commit()
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")

    referencing = [_lead(db_session, f"Lead {index}", {"primaryAccount": str(account.id), "tier": "gold"}) for index in range(3)]
    untouched = _lead(db_session, "Other", {"primaryAccount": str(other.id)})
    account_id = str(account.id)
    db_session.delete(account)
    db_session.commit()

    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", account_id)

    assert result.cleaned_count == 3
    assert result.errors == []
    for lead in referencing:
        db_session.refresh(lead)
        assert lead.custom_fields == {"primaryAccount": None, "tier": "gold"}
    db_session.refresh(untouched)
    assert untouched.custom_fields["primaryAccount"] == str(other.id)


def test_cleanup_is_complete_for_reverse_lookup(db_session: Session) -> None:
    module = CRMCustomModule(tenant_id="tenant-a", slug="projects", name="Projects")
    account = CRMAccount(tenant_id="tenant-a", name="Acme")
    db_session.add_all([module, account])
    db_session.commit()
    _relationship_field(db_session, "primaryAccount", "accounts")
    _relationship_field(db_session, "sponsor", "ACCOUNT", entity_type="CONTACT")
    _relationship_field(db_session, "client", "account", entity_type=None, custom_module_id=module.id)

    _lead(db_session, "Ada", {"primaryAccount": str(account.id)})
    contact = CRMContact(tenant_id="tenant-a", first_name="Grace", last_name="Hopper", custom_fields={"sponsor": str(account.id)})
    project = CRMCustomModuleRecord(tenant_id="tenant-a", module_id=module.id, data={"client": str(account.id)})
    db_session.add_all([contact, project])
    db_session.commit()

    before = get_referencing_records(db_session, "tenant-a", "ACCOUNT", str(account.id))
    assert {(item.entity_type, item.field_key) for item in before} == {
        ("LEAD", "primaryAccount"),
        ("CONTACT", "sponsor"),
        ("projects", "client"),
    }

    result = cleanup_orphaned_relationships(db_session, "tenant-a", "Account", str(account.id))

    assert result.cleaned_count == 3
    assert {item.record_id for item in result.references} == {item.record_id for item in before}
    assert get_referencing_records(db_session, "tenant-a", "ACCOUNT", str(account.id)) == []
    db_session.refresh(project)
    assert project.data == {"client": None}


def test_cleanup_is_tenant_scoped(db_session: Session) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    _relationship_field(db_session, "primaryAccount", "ACCOUNT", tenant_id="tenant-b")
    _lead(db_session, "Mine", {"primaryAccount": target_id})
    foreign = _lead(db_session, "Theirs", {"primaryAccount": target_id}, tenant_id="tenant-b")

    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", target_id)

    assert result.cleaned_count == 1
    db_session.refresh(foreign)
    assert foreign.custom_fields["primaryAccount"] == target_id


def test_field_failures_are_reported_without_aborting(db_session: Session) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "ghostAccount", "ACCOUNT", entity_type="ghosts")
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    lead = _lead(db_session, "Ada", {"primaryAccount": target_id})

    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", target_id)

    assert result.cleaned_count == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to clean field ghostAccount:")
    db_session.refresh(lead)
    assert lead.custom_fields["primaryAccount"] is None


def test_failing_field_rolls_back_only_its_own_changes(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "altAccount", "ACCOUNT", entity_type="OPPORTUNITY")
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    opportunity = CRMOpportunity(tenant_id="tenant-a", name="Deal", custom_fields={"altAccount": target_id})
    db_session.add(opportunity)
    db_session.commit()
    lead = _lead(db_session, "Ada", {"primaryAccount": target_id})

    find_by_reference = BuiltInEntityRepository.find_by_reference

    def broken_opportunity_scan(
        self: BuiltInEntityRepository,
        session: Session,
        tenant_id: str,
        field_key: str,
        record_id: Any,
    ) -> list[Any]:
        rows = find_by_reference(self, session, tenant_id, field_key, record_id)
        if self.entity_type != "OPPORTUNITY":
            return rows
        for row in rows:
            self.write_attributes(row, self.read_attributes(row).with_null(field_key))
        session.flush()
        session.execute(text("SELECT missing_column FROM crm_opportunity"))
        return rows

    monkeypatch.setattr(BuiltInEntityRepository, "find_by_reference", broken_opportunity_scan)

    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", target_id)

    assert result.cleaned_count == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to clean field altAccount:")
    db_session.refresh(opportunity)
    db_session.refresh(lead)
    assert opportunity.custom_fields["altAccount"] == target_id
    assert lead.custom_fields["primaryAccount"] is None


def test_upper_case_references_are_found_and_cleaned(db_session: Session) -> None:
    account = CRMAccount(tenant_id="tenant-a", name="Acme")
    db_session.add(account)
    db_session.commit()
    account_id = str(account.id)
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    lead = _lead(db_session, "Ada", {"primaryAccount": account_id.upper()})

    references = get_referencing_records(db_session, "tenant-a", "ACCOUNT", account_id)
    assert [reference.record_id for reference in references] == [str(lead.id)]

    db_session.delete(account)
    db_session.commit()
    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", account_id.upper())

    assert result.cleaned_count == 1
    db_session.refresh(lead)
    assert lead.custom_fields["primaryAccount"] is None
    assert events.published_events[-1]["payload"]["deleted_id"] == account_id


def test_cleanup_records_audit_and_publishes_event(db_session: Session) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    lead = _lead(db_session, "Ada", {"primaryAccount": target_id})

    cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", target_id)

    assert audit.audit_entries[-1]["entity_id"] == str(lead.id)
    assert audit.audit_entries[-1]["before"] == {"primaryAccount": target_id}
    assert audit.audit_entries[-1]["after"] == {"primaryAccount": None}
    envelope = events.published_events[-1]
    assert envelope["event_type"] == "crm.relationships.cleaned"
    assert envelope["tenant_id"] == "tenant-a"
    assert envelope["payload"]["cleaned_count"] == 1


def test_nothing_to_clean_publishes_nothing(db_session: Session) -> None:
    result = cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", str(uuid.uuid4()))

    assert result.cleaned_count == 0
    assert result.errors == []
    assert events.published_events == []


def test_commit_failure_rolls_back_and_raises(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    lead = _lead(db_session, "Ada", {"primaryAccount": target_id})

    def failing_commit() -> None:
        raise OperationalError("UPDATE crm_lead", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(TransactionError):
        cleanup_orphaned_relationships(db_session, "tenant-a", "ACCOUNT", target_id)

    monkeypatch.undo()
    db_session.refresh(lead)
    assert lead.custom_fields["primaryAccount"] == target_id
    assert audit.audit_entries == []


def test_record_deleted_event_triggers_cleanup(session_factory: sessionmaker[Session], db_session: Session) -> None:
    target_id = str(uuid.uuid4())
    _relationship_field(db_session, "primaryAccount", "ACCOUNT")
    lead = _lead(db_session, "Ada", {"primaryAccount": target_id})
    register_subscriptions(session_factory)

    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": "crm.record.deleted",
            "tenant_id": "tenant-a",
            "payload": {"entity_type": "ACCOUNT", "record_id": target_id},
        }
    )

    db_session.expire_all()
    refreshed = db_session.scalar(select(CRMLead).where(CRMLead.id == lead.id))
    assert refreshed is not None
    assert refreshed.custom_fields["primaryAccount"] is None
    assert any(envelope["event_type"] == "crm.relationships.cleaned" for envelope in events.published_events)


def test_incomplete_delete_event_is_ignored(session_factory: sessionmaker[Session], db_session: Session) -> None:
    handler = register_subscriptions(session_factory)

    events.publish({"event_type": "crm.record.deleted", "tenant_id": "tenant-a", "payload": {"entity_type": "ACCOUNT"}})

    assert handler is register_subscriptions(session_factory)
    assert [envelope["event_type"] for envelope in events.published_events] == ["crm.record.deleted"]
