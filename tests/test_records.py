import pytest
from cryptography.fernet import Fernet

from healthgate.access.service import ConsentService
from healthgate.audit.models import AuditAction
from healthgate.audit.service import AuditLedger
from healthgate.errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from healthgate.records.service import RecordCatalog, content_hash, serialize_record

from conftest import make_settings


async def _seed(catalog, owner):
    labs = await catalog.upload(owner, "cbc results", {"title": "Labs", "record_type": "lab"})
    allergy = await catalog.upload(
        owner,
        "penicillin allergy",
        {"title": "Allergy card", "record_type": "allergy", "is_emergency": True},
    )
    return labs, allergy


@pytest.mark.asyncio
async def test_upload_hashes_and_addresses(session, accounts, settings):
    catalog = RecordCatalog(session, settings)
    record = await catalog.upload(
        accounts["patient"], "scan data", {"title": "MRI", "record_type": "imaging"}
    )
    assert record.content_address.startswith("Qm")
    assert record.content_hash == content_hash("scan data")
    assert record.is_encrypted is False
    assert catalog.verify_integrity(record) is True
    data = serialize_record(record)
    assert data["file_cid"] == record.content_address
    assert "file_data" not in data


@pytest.mark.asyncio
async def test_upload_requires_content_and_metadata(session, accounts, settings):
    catalog = RecordCatalog(session, settings)
    with pytest.raises(ValidationError):
        await catalog.upload(accounts["patient"], "", {"title": "t", "record_type": "lab"})
    with pytest.raises(ValidationError):
        await catalog.upload(accounts["patient"], "data", {"title": "", "record_type": "lab"})


@pytest.mark.asyncio
async def test_encrypted_at_rest(session, accounts):
    key = Fernet.generate_key().decode()
    catalog = RecordCatalog(session, make_settings(record_encryption_key=key))
    record = await catalog.upload(
        accounts["patient"], "secret note", {"title": "Note", "record_type": "note"}
    )
    assert record.is_encrypted is True
    assert record.file_data != "secret note"
    assert catalog.read_content(record) == "secret note"
    assert catalog.verify_integrity(record) is True

    keyless = RecordCatalog(session, make_settings())
    with pytest.raises(StorageError):
        keyless.read_content(record)
    other_key = RecordCatalog(
        session, make_settings(record_encryption_key=Fernet.generate_key().decode())
    )
    with pytest.raises(StorageError):
        other_key.read_content(record)


@pytest.mark.asyncio
async def test_release_requires_granted_access(session, accounts, settings):
    catalog = RecordCatalog(session, settings)
    consent = ConsentService(session, settings)
    patient, doctor = accounts["patient"], accounts["doctor"]
    await _seed(catalog, patient)

    assert len(await catalog.release_to(patient, patient.id, consent)) == 2
    with pytest.raises(AuthorizationError):
        await catalog.release_to(doctor, patient.id, consent)
    with pytest.raises(NotFoundError):
        await catalog.release_to(doctor, "missing", consent)

    grant = await consent.request_access(doctor, patient.id)
    await consent.approve(grant.id)
    released = await catalog.release_to(doctor, patient.id, consent)
    assert {r.title for r in released} == {"Labs", "Allergy card"}

    entries = await AuditLedger(session).query_by_actor(doctor.id, action=AuditAction.RECORDS_VIEWED)
    assert len(entries) == 1
    assert sorted(entries[0].details["record_ids"]) == sorted(r.id for r in released)


@pytest.mark.asyncio
async def test_release_respects_scope(session, accounts, settings):
    catalog = RecordCatalog(session, settings)
    consent = ConsentService(session, settings)
    patient = accounts["patient"]
    labs, allergy = await _seed(catalog, patient)

    emergency = await consent.request_access(accounts["responder"], patient.id, is_emergency=True)
    await consent.approve(emergency.id)
    released = await catalog.release_to(accounts["responder"], patient.id, consent)
    assert [r.id for r in released] == [allergy.id]

    specific = await consent.request_access(
        accounts["doctor"], patient.id, scope="specific_record", record_id=labs.id
    )
    await consent.approve(specific.id)
    released = await catalog.release_to(accounts["doctor"], patient.id, consent)
    assert [r.id for r in released] == [labs.id]


@pytest.mark.asyncio
async def test_emergency_records_only_flagged(session, accounts, settings):
    catalog = RecordCatalog(session, settings)
    _, allergy = await _seed(catalog, accounts["patient"])
    assert [r.id for r in await catalog.emergency_records(accounts["patient"].id)] == [allergy.id]
