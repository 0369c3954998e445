import json
import logging

import pytest

from healthgate.access.service import ConsentService
from healthgate.audit.models import AuditAction, ImmutableAuditEntry
from healthgate.audit.service import AuditLedger, serialize_entry
from healthgate.errors import ValidationError
from healthgate.identity.service import IdentityService

from conftest import DOCTOR_WALLET, PATIENT_WALLET


@pytest.mark.asyncio
async def test_append_requires_known_action(session):
    ledger = AuditLedger(session)
    with pytest.raises(ValidationError):
        await ledger.append("", target_type="user")
    with pytest.raises(ValidationError):
        await ledger.append("made_up_action", target_type="user")


@pytest.mark.asyncio
async def test_append_accepts_tag_string(session, accounts):
    ledger = AuditLedger(session)
    entry = await ledger.append(
        "qr_generated", actor_id=accounts["patient"].id, target_type="qr", target_id="q1"
    )
    await session.commit()
    assert entry.action == AuditAction.QR_GENERATED
    assert serialize_entry(entry)["action"] == "qr_generated"


@pytest.mark.asyncio
async def test_entries_cannot_be_modified(session, accounts):
    entries = await AuditLedger(session).query_by_actor(accounts["patient"].id)
    entry = entries[0]
    entry.target_type = "tampered"
    with pytest.raises(ImmutableAuditEntry):
        await session.flush()
    await session.rollback()


@pytest.mark.asyncio
async def test_entries_cannot_be_deleted(session, accounts):
    entries = await AuditLedger(session).query_by_actor(accounts["patient"].id)
    await session.delete(entries[0])
    with pytest.raises(ImmutableAuditEntry):
        await session.flush()
    await session.rollback()


@pytest.mark.asyncio
async def test_log_line_redacts_sensitive_metadata(session, accounts, caplog):
    caplog.set_level(logging.INFO, logger="healthgate.audit.service")
    await AuditLedger(session).append(
        AuditAction.ACCESS_REQUESTED,
        actor_id=accounts["doctor"].id,
        target_type="access",
        target_id="g1",
        metadata={"reason": "chest pain", "patient_id": accounts["patient"].id},
    )
    await session.commit()

    lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("audit_event=")]
    payload = json.loads(lines[-1].split("=", 1)[1])
    assert payload["details"]["reason"] == "[REDACTED]"
    assert payload["details"]["patient_id"] == accounts["patient"].id

    stored = await AuditLedger(session).query_by_target("access", "g1")
    assert stored[0].details["reason"] == "chest pain"


@pytest.mark.asyncio
async def test_consent_scenario_ledger_order(session, settings):
    ids = IdentityService(session, settings)
    patient = await ids.resolve(PATIENT_WALLET)
    doctor = await ids.resolve(DOCTOR_WALLET)
    consent = ConsentService(session, settings)

    grant = await consent.request_access(doctor, patient.id, justification="consult")
    await consent.approve(grant.id, actor_id=patient.id)
    await consent.revoke(grant.id, actor_id=patient.id)

    entries = list(reversed(await AuditLedger(session).query_recent()))
    assert [e.action for e in entries] == [
        AuditAction.USER_REGISTERED,
        AuditAction.USER_REGISTERED,
        AuditAction.ACCESS_REQUESTED,
        AuditAction.ACCESS_GRANTED,
        AuditAction.ACCESS_REVOKED,
    ]
    assert entries[0].actor_id == patient.id
    assert entries[1].actor_id == doctor.id
    assert entries[2].actor_id == doctor.id
    assert entries[3].actor_id == patient.id


@pytest.mark.asyncio
async def test_query_by_actor_limit_and_filter(session, accounts, settings):
    ids = IdentityService(session, settings)
    for name in ("one", "two", "three"):
        await ids.update_info(accounts["patient"], username=name)
    ledger = AuditLedger(session)
    latest = await ledger.query_by_actor(accounts["patient"].id, limit=2)
    assert len(latest) == 2
    assert all(e.action == AuditAction.USER_INFO_UPDATED for e in latest)
    registered = await ledger.query_by_actor(
        accounts["patient"].id, action=AuditAction.USER_REGISTERED
    )
    assert len(registered) == 1
