from __future__ import annotations

import time
import uuid
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmcore import audit, events, models  # noqa: F401
from crmcore.core.config import get_settings
from crmcore.core.database import Base
from crmcore.errors import ConcurrencyConflictError, SegmentNotFoundError, TransactionError, ValidationError
from crmcore.records.models import CRMAccount, CRMContact, CRMLead
from crmcore.segments.locks import SegmentLockRegistry
from crmcore.segments.models import CRMSegment, CRMSegmentMember
from crmcore.segments.schemas import CalculationResult, SegmentCreate, SegmentRule
from crmcore.segments.service import SegmentService, segment_service
from crmcore.services import calculate_segment_members, preview_segment_members


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def contacts(db_session: Session) -> list[CRMContact]:
    acme = CRMAccount(tenant_id="tenant-a", name="Acme Corp", industry="Manufacturing")
    globex = CRMAccount(tenant_id="tenant-a", name="Globex", industry="Energy")
    db_session.add_all([acme, globex])
    db_session.flush()

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    rows = [
        CRMContact(tenant_id="tenant-a", account_id=acme.id, first_name="Ada", last_name="Lovelace", email="ada@acme.test", title="CTO"),
        CRMContact(tenant_id="tenant-a", account_id=acme.id, first_name="Bob", last_name="Stone", email="bob@acme.test", title="Engineer"),
        CRMContact(tenant_id="tenant-a", account_id=globex.id, first_name="Cyd", last_name="Park", email="cyd@globex.test", title="CTO"),
        CRMContact(tenant_id="tenant-a", account_id=globex.id, first_name="Dee", last_name="Ray", email="dee@globex.test"),
        CRMContact(tenant_id="tenant-a", first_name="Eli", last_name="Moss", email=None),
    ]
    for offset, row in enumerate(rows):
        row.created_at = base + timedelta(days=offset)
    db_session.add_all(rows)
    db_session.add(CRMContact(tenant_id="tenant-b", first_name="Ada", last_name="Other", email="ada@acme.test"))
    db_session.commit()
    return rows


def _dynamic_segment(
    session: Session,
    rules: list[dict[str, object]],
    logic: str = "AND",
    target_entity: str = "CONTACT",
) -> CRMSegment:
    segment = CRMSegment(
        tenant_id="tenant-a",
        name="Segment",
        segment_type="DYNAMIC",
        target_entity=target_entity,
        rules=rules,
        rule_logic=logic,
    )
    session.add(segment)
    session.commit()
    return segment


def _member_ids(session: Session, segment: CRMSegment) -> set[uuid.UUID]:
    return set(
        session.scalars(select(CRMSegmentMember.contact_id).where(CRMSegmentMember.segment_id == segment.id)).all()
    )


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_company_rule_matches_account_name(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "company", "operator": "contains", "value": "Acme"}])

    result = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert result.member_count == 2
    assert result.added == 2
    assert result.removed == 0
    assert _member_ids(db_session, segment) == {contacts[0].id, contacts[1].id}
    db_session.refresh(segment)
    assert segment.member_count == 2
    assert segment.last_calculated_at is not None


def test_and_is_intersection_and_or_is_union(db_session: Session, contacts: list[CRMContact]) -> None:
    rules = [
        {"field": "company", "operator": "contains", "value": "Acme"},
        {"field": "title", "operator": "equals", "value": "CTO"},
    ]
    intersection = _dynamic_segment(db_session, rules, logic="AND")
    union = _dynamic_segment(db_session, rules, logic="OR")

    calculate_segment_members(db_session, "tenant-a", intersection.id)
    calculate_segment_members(db_session, "tenant-a", union.id)

    assert _member_ids(db_session, intersection) == {contacts[0].id}
    assert _member_ids(db_session, union) == {contacts[0].id, contacts[1].id, contacts[2].id}


def test_recalculation_is_idempotent(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "title", "operator": "equals", "value": "CTO"}])

    first = calculate_segment_members(db_session, "tenant-a", segment.id)
    second = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert (first.added, first.removed, first.member_count) == (2, 0, 2)
    assert (second.added, second.removed, second.member_count) == (0, 0, 2)
    count = db_session.scalar(
        select(func.count()).select_from(CRMSegmentMember).where(CRMSegmentMember.segment_id == segment.id)
    )
    assert count == 2


def test_recalculation_applies_the_diff(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "title", "operator": "equals", "value": "CTO"}])
    calculate_segment_members(db_session, "tenant-a", segment.id)

    contacts[2].title = "Advisor"
    contacts[3].title = "CTO"
    db_session.commit()

    result = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert (result.added, result.removed, result.member_count) == (1, 1, 2)
    assert _member_ids(db_session, segment) == {contacts[0].id, contacts[3].id}


def test_zero_valid_rules_match_the_whole_tenant(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "shoeSize", "operator": "equals", "value": "42"}])

    result = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert result.member_count == 5


def test_static_segment_keeps_existing_tenant_records(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = segment_service.create_segment(
        db_session,
        "tenant-a",
        SegmentCreate(
            name="Hand picked",
            segment_type="STATIC",
            target_entity="CONTACT",
            static_member_ids=[str(contacts[0].id), str(contacts[4].id), str(contacts[0].id), str(uuid.uuid4())],
        ),
    )

    result = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert len(segment.static_member_ids) == 3
    assert segment.static_member_ids[:2] == [str(contacts[0].id), str(contacts[4].id)]
    assert result.member_count == 2
    stored = db_session.get(CRMSegment, segment.id)
    assert stored is not None
    assert _member_ids(db_session, stored) == {contacts[0].id, contacts[4].id}


def test_lead_segments_use_lead_membership(db_session: Session) -> None:
    db_session.add_all(
        [
            CRMLead(tenant_id="tenant-a", first_name="Fay", last_name="One", status="QUALIFIED"),
            CRMLead(tenant_id="tenant-a", first_name="Gus", last_name="Two", status="NEW"),
        ]
    )
    db_session.commit()
    segment = _dynamic_segment(
        db_session,
        [{"field": "status", "operator": "equals", "value": "QUALIFIED"}],
        target_entity="LEAD",
    )

    result = calculate_segment_members(db_session, "tenant-a", segment.id)

    assert result.member_count == 1
    members = db_session.scalars(select(CRMSegmentMember).where(CRMSegmentMember.segment_id == segment.id)).all()
    assert len(members) == 1
    assert members[0].lead_id is not None
    assert members[0].contact_id is None


def test_missing_segment_raises(db_session: Session) -> None:
    with pytest.raises(SegmentNotFoundError):
        calculate_segment_members(db_session, "tenant-a", uuid.uuid4())
    with pytest.raises(SegmentNotFoundError):
        calculate_segment_members(db_session, "tenant-a", "not-a-uuid")


def test_other_tenant_cannot_recalculate(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [])

    with pytest.raises(SegmentNotFoundError):
        calculate_segment_members(db_session, "tenant-b", segment.id)


def test_concurrent_recalculation_is_rejected(
    db_session: Session,
    contacts: list[CRMContact],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SEGMENT_LOCK_TIMEOUT_SECONDS", "0")
    get_settings.cache_clear()
    locks = SegmentLockRegistry()
    service = SegmentService(locks=locks)
    segment = _dynamic_segment(db_session, [])

    with locks.hold("tenant-a", str(segment.id)):
        with pytest.raises(ConcurrencyConflictError):
            service.calculate_segment_members(db_session, "tenant-a", segment.id)
        assert locks.users("tenant-a", str(segment.id)) == 1

    assert service.calculate_segment_members(db_session, "tenant-a", segment.id).member_count == 5


def test_released_segment_locks_are_evicted() -> None:
    locks = SegmentLockRegistry()

    with locks.hold("tenant-a", "segment-1"):
        assert len(locks) == 1
        assert locks.users("tenant-a", "segment-1") == 1
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("tenant-a", "segment-2"):
            raise RuntimeError("boom")
    assert len(locks) == 0
    assert locks.users("tenant-a", "segment-2") == 0


def test_failed_commit_leaves_membership_untouched(
    db_session: Session,
    contacts: list[CRMContact],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    segment = _dynamic_segment(db_session, [{"field": "title", "operator": "equals", "value": "CTO"}])
    calculate_segment_members(db_session, "tenant-a", segment.id)
    db_session.refresh(segment)
    calculated_at = segment.last_calculated_at

    contacts[2].title = "Advisor"
    contacts[3].title = "CTO"
    db_session.commit()
    failed_before = _sample("crm_segment_recalculations_total", {"segment_type": "DYNAMIC", "status": "failed"})

    def failing_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(TransactionError):
        calculate_segment_members(db_session, "tenant-a", segment.id)
    monkeypatch.undo()

    stored = db_session.get(CRMSegment, segment.id)
    assert stored is not None
    assert stored.member_count == 2
    assert stored.last_calculated_at == calculated_at
    assert _member_ids(db_session, stored) == {contacts[0].id, contacts[2].id}
    assert _sample("crm_segment_recalculations_total", {"segment_type": "DYNAMIC", "status": "failed"}) == failed_before + 1


def test_waiting_recalculation_diffs_against_committed_membership(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SEGMENT_LOCK_TIMEOUT_SECONDS", "10")
    get_settings.cache_clear()
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'segments.db'}",
        connect_args={"check_same_thread": False},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    locks = SegmentLockRegistry()
    service = SegmentService(locks=locks)

    try:
        with SessionLocal() as session:
            session.add_all(
                [
                    CRMContact(tenant_id="tenant-a", first_name="Ada", last_name="Lovelace", title="CTO"),
                    CRMContact(tenant_id="tenant-a", first_name="Cyd", last_name="Park", title="CTO"),
                    CRMContact(tenant_id="tenant-a", first_name="Bob", last_name="Stone", title="Engineer"),
                ]
            )
            session.commit()
            segment_id = _dynamic_segment(session, [{"field": "title", "operator": "equals", "value": "CTO"}]).id

        def recalculate_in_worker() -> CalculationResult:
            with SessionLocal() as worker_session:
                return service.calculate_segment_members(worker_session, "tenant-a", segment_id)

        with ThreadPoolExecutor(max_workers=1) as executor:
            with locks.hold("tenant-a", str(segment_id)):
                waiting = executor.submit(recalculate_in_worker)
                deadline = time.monotonic() + 5
                while locks.users("tenant-a", str(segment_id)) < 2:
                    assert time.monotonic() < deadline, "worker never queued for the segment lock"
                    time.sleep(0.01)
                assert not waiting.done()

                with SessionLocal() as session:
                    first = service._recalculate(session, "tenant-a", segment_id)

            second = waiting.result(timeout=10)

        assert (first.added, first.removed, first.member_count) == (2, 0, 2)
        assert (second.added, second.removed, second.member_count) == (0, 0, 2)
        with SessionLocal() as session:
            count = session.scalar(
                select(func.count()).select_from(CRMSegmentMember).where(CRMSegmentMember.segment_id == segment_id)
            )
        assert count == 2
        assert len(locks) == 0
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_preview_rejects_unknown_rule_logic(db_session: Session, contacts: list[CRMContact]) -> None:
    with pytest.raises(ValidationError):
        preview_segment_members(db_session, "tenant-a", "CONTACT", [], logic="XOR")


def test_recalculation_emits_event_and_metrics(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "title", "operator": "equals", "value": "CTO"}])
    labels = {"segment_type": "DYNAMIC", "status": "success"}
    before = _sample("crm_segment_recalculations_total", labels)
    added_before = _sample("crm_segment_membership_changes_total", {"change": "added"})

    calculate_segment_members(db_session, "tenant-a", segment.id)

    assert _sample("crm_segment_recalculations_total", labels) == before + 1
    assert _sample("crm_segment_membership_changes_total", {"change": "added"}) == added_before + 2
    event = events.published_events[-1]
    assert event["event_type"] == "marketing.segment.recalculated"
    assert event["tenant_id"] == "tenant-a"
    assert event["payload"] == {"segment_id": str(segment.id), "member_count": 2, "added": 2, "removed": 0}


def test_preview_counts_and_samples(db_session: Session, contacts: list[CRMContact]) -> None:
    preview = preview_segment_members(
        db_session,
        "tenant-a",
        "CONTACT",
        [SegmentRule(field="company", operator="contains", value="acme")],
    )

    assert preview.count == 2
    assert [item.name for item in preview.sample] == ["Ada Lovelace", "Bob Stone"]
    assert preview.sample[0].email == "ada@acme.test"
    assert db_session.scalar(select(func.count()).select_from(CRMSegmentMember)) == 0


def test_preview_limit_defaults_and_caps(
    db_session: Session,
    contacts: list[CRMContact],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SEGMENT_PREVIEW_DEFAULT_LIMIT", "3")
    monkeypatch.setenv("SEGMENT_PREVIEW_MAX_LIMIT", "4")
    get_settings.cache_clear()

    default = preview_segment_members(db_session, "tenant-a", "CONTACT", [])
    capped = preview_segment_members(db_session, "tenant-a", "CONTACT", [], limit=50)
    none = preview_segment_members(db_session, "tenant-a", "CONTACT", [], limit=0)

    assert (default.count, len(default.sample)) == (5, 3)
    assert (capped.count, len(capped.sample)) == (5, 4)
    assert (none.count, none.sample) == (5, [])


def test_create_segment_rejects_invalid_rules(db_session: Session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        segment_service.create_segment(
            db_session,
            "tenant-a",
            SegmentCreate(
                name="Broken",
                target_entity="CONTACT",
                rules=[SegmentRule(field="shoeSize", operator="equals", value="42")],
            ),
        )

    assert exc_info.value.details[0]["reason"] == "unknown_field"
    assert db_session.scalar(select(func.count()).select_from(CRMSegment)) == 0


def test_create_segment_rejects_malformed_static_ids(db_session: Session) -> None:
    with pytest.raises(ValidationError):
        segment_service.create_segment(
            db_session,
            "tenant-a",
            SegmentCreate(name="Static", segment_type="STATIC", target_entity="CONTACT", static_member_ids=["nope"]),
        )


def test_create_segment_records_audit(db_session: Session) -> None:
    segment = segment_service.create_segment(
        db_session,
        "tenant-a",
        SegmentCreate(
            name="CTOs",
            target_entity="CONTACT",
            rules=[SegmentRule(field="title", operator="equals", value="CTO")],
        ),
    )

    assert segment.rules[0].field == "title"
    assert segment.member_count == 0
    assert audit.audit_entries[-1]["action"] == "create"
    assert audit.audit_entries[-1]["entity_id"] == str(segment.id)
    assert segment_service.get_segment(db_session, "tenant-a", segment.id).name == "CTOs"


def test_list_segment_members(db_session: Session, contacts: list[CRMContact]) -> None:
    segment = _dynamic_segment(db_session, [{"field": "company", "operator": "contains", "value": "Globex"}])
    calculate_segment_members(db_session, "tenant-a", segment.id)

    members = segment_service.list_segment_members(db_session, "tenant-a", segment.id)

    assert {member.name for member in members} == {"Cyd Park", "Dee Ray"}
    assert {member.id for member in members} == {str(contacts[2].id), str(contacts[3].id)}
