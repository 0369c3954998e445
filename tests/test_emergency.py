import json

import jwt
import pytest

from healthgate.audit.models import AuditAction
from healthgate.audit.service import AuditLedger
from healthgate.emergency.seal import check_seal, payload_digest, seal_payload
from healthgate.emergency.service import SIMULATED_SIGNATURE, EmergencyCredentialService
from healthgate.errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from healthgate.identity.models import AccountStatus, Role
from healthgate.identity.service import IdentityService
from healthgate.records.service import RecordCatalog
from healthgate.verification.service import VerificationService

from conftest import TEST_QR_KEY, make_settings


def test_seal_roundtrip_and_tamper_detection():
    payload = {"uid": "HID123456789", "username": "alice", "timestamp": 1}
    seal = seal_payload(payload, TEST_QR_KEY)
    claims = check_seal(payload, seal, TEST_QR_KEY)
    assert claims["digest"] == payload_digest(payload)

    with pytest.raises(ValidationError):
        check_seal({**payload, "username": "mallory"}, seal, TEST_QR_KEY)
    with pytest.raises(ValidationError):
        check_seal({**payload, "uid": "HID999999999"}, seal, TEST_QR_KEY)
    with pytest.raises(ValidationError):
        check_seal(payload, seal, "another-key-that-is-long-enough-for-hs256")


def test_expired_seal_rejected():
    payload = {"uid": "HID123456789"}
    token = jwt.encode(
        {"sub": payload["uid"], "type": "emergency_qr", "digest": payload_digest(payload), "exp": 1},
        TEST_QR_KEY,
        algorithm="HS256",
    )
    with pytest.raises(ValidationError):
        check_seal(payload, token, TEST_QR_KEY)


@pytest.mark.asyncio
async def test_generate_snapshots_profile(session, accounts, settings):
    patient = accounts["patient"]
    await IdentityService(session, settings).upsert_health_profile(
        patient, {"blood_type": "AB-", "allergies": ["latex"]}
    )
    svc = EmergencyCredentialService(session, settings)
    credential = await svc.generate(patient)
    assert credential.signed_token == SIMULATED_SIGNATURE

    payload = json.loads(credential.qr_data)
    assert payload["uid"] == patient.uid
    assert payload["role"] == "patient"
    assert payload["emergency_details"]["blood_type"] == "AB-"
    assert payload["emergency_details"]["allergies"] == ["latex"]
    assert isinstance(payload["timestamp"], int)
    assert "seal" in payload

    # later edits do not change the issued credential
    await IdentityService(session, settings).upsert_health_profile(patient, {"blood_type": "O-"})
    assert json.loads((await svc.get_for_account(patient.id)).qr_data) == payload


@pytest.mark.asyncio
async def test_snapshot_uses_kyc_institution(session, accounts, settings):
    await VerificationService(session).submit_kyc(
        accounts["doctor"], {"full_name": "Dr. Who", "institution_name": "Central Clinic"}
    )
    credential = await EmergencyCredentialService(session, settings).generate(
        accounts["doctor"], signature="0xsig"
    )
    assert credential.signed_token == "0xsig"
    assert json.loads(credential.qr_data)["hospital_name"] == "Central Clinic"


@pytest.mark.asyncio
async def test_verify_counts_scans_and_audits(session, accounts, settings):
    svc = EmergencyCredentialService(session, settings)
    patient, responder = accounts["patient"], accounts["responder"]
    credential = await svc.generate(patient)

    data = await svc.verify(credential.qr_data, responder)
    issued = json.loads(credential.qr_data)
    assert data == {k: v for k, v in issued.items() if k != "seal"}
    assert data["uid"] == patient.uid
    await svc.verify(credential.qr_data, responder)
    assert await svc.scan_count(patient.id) == 2

    scans = await svc.scans_by(responder.id)
    assert len(scans) == 2
    assert scans[0].action == AuditAction.QR_SCANNED
    assert scans[0].target_id == patient.id
    assert scans[0].details["patient_uid"] == patient.uid


@pytest.mark.asyncio
async def test_verify_rejects_bad_payloads(session, accounts, settings):
    svc = EmergencyCredentialService(session, settings)
    responder = accounts["responder"]
    with pytest.raises(ValidationError):
        await svc.verify("", responder)
    with pytest.raises(ValidationError):
        await svc.verify("{not json", responder)
    with pytest.raises(ValidationError):
        await svc.verify(json.dumps({"username": "x"}), responder)
    with pytest.raises(NotFoundError):
        await svc.verify(json.dumps({"uid": "HID000000001"}), responder)

    forged = json.dumps({"uid": accounts["patient"].uid, "username": "forged"})
    with pytest.raises(ValidationError):
        await svc.verify(forged, responder)


@pytest.mark.asyncio
async def test_verify_rejects_altered_and_superseded(session, accounts, settings):
    svc = EmergencyCredentialService(session, settings)
    patient = accounts["patient"]
    first = await svc.generate(patient)

    altered = json.loads(first.qr_data)
    altered["emergency_details"] = {"blood_type": "B+"}
    with pytest.raises(ValidationError):
        await svc.verify(json.dumps(altered), accounts["responder"])

    old_payload = first.qr_data
    await IdentityService(session, settings).upsert_health_profile(patient, {"blood_type": "A+"})
    await svc.generate(patient)
    with pytest.raises(ValidationError):
        await svc.verify(old_payload, accounts["responder"])
    assert await svc.scan_count(patient.id) == 0


@pytest.mark.asyncio
async def test_unsealed_mode_accepts_plain_payload(session, accounts):
    svc = EmergencyCredentialService(session, make_settings(qr_require_seal=False))
    await svc.generate(accounts["patient"])
    plain = json.dumps({"uid": accounts["patient"].uid, "username": "anything"})
    data = await svc.verify(plain, accounts["responder"])
    assert data["username"] == "anything"
    assert await svc.scan_count(accounts["patient"].id) == 1


@pytest.mark.asyncio
async def test_emergency_records_fast_path(session, accounts, settings):
    patient, responder = accounts["patient"], accounts["responder"]
    catalog = RecordCatalog(session, settings)
    await catalog.upload(patient, "full history", {"title": "History", "record_type": "note"})
    flagged = await catalog.upload(
        patient, "diabetic", {"title": "Conditions", "record_type": "note", "is_emergency": True}
    )
    svc = EmergencyCredentialService(session, settings)
    credential = await svc.generate(patient)

    # unverified responder refused before the scan is counted
    with pytest.raises(AuthorizationError):
        await svc.release_emergency_records(credential.qr_data, responder, catalog)
    with pytest.raises(AuthorizationError):
        await svc.release_emergency_records(credential.qr_data, accounts["doctor"], catalog)
    assert await svc.scan_count(patient.id) == 0

    await VerificationService(session).grant_role(
        responder.id, Role.EMERGENCY_RESPONDER, accounts["admin"]
    )
    assert responder.status == AccountStatus.VERIFIED
    snapshot, records = await svc.release_emergency_records(credential.qr_data, responder, catalog)
    assert snapshot["uid"] == patient.uid
    assert [r.id for r in records] == [flagged.id]

    viewed = await AuditLedger(session).query_by_actor(
        responder.id, action=AuditAction.EMERGENCY_RECORDS_VIEWED
    )
    assert viewed[0].details["record_ids"] == [flagged.id]


@pytest.mark.asyncio
async def test_failed_scan_audit_does_not_count(session, accounts, settings, monkeypatch):
    svc = EmergencyCredentialService(session, settings)
    patient_id, responder_id = accounts["patient"].id, accounts["responder"].id
    credential = await svc.generate(accounts["patient"])

    async def failing_append(self, action, **kwargs):
        raise StorageError("audit store unavailable")

    monkeypatch.setattr(AuditLedger, "append", failing_append)
    with pytest.raises(StorageError):
        await svc.verify(credential.qr_data, accounts["responder"])
    monkeypatch.undo()

    assert await svc.scan_count(patient_id) == 0
    assert await svc.scans_by(responder_id) == []
