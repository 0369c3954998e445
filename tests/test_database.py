import pytest
from sqlalchemy import func, select

from healthgate.database import build_engine, unit_of_work
from healthgate.errors import ConflictError, ValidationError
from healthgate.identity.models import Account, Role

from conftest import PATIENT_WALLET


def test_in_memory_sqlite_uses_static_pool():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    assert type(engine.pool).__name__ == "StaticPool"
    file_engine = build_engine("sqlite+aiosqlite:///./local.db")
    assert type(file_engine.pool).__name__ != "StaticPool"


@pytest.mark.asyncio
async def test_unit_of_work_maps_integrity_errors(session, accounts):
    with pytest.raises(ConflictError):
        async with unit_of_work(session):
            session.add(
                Account(
                    wallet_address=PATIENT_WALLET,
                    uid="HID111111111",
                    username="dupe",
                    role=Role.PATIENT,
                )
            )
    assert await session.scalar(select(func.count()).select_from(Account)) == 5


@pytest.mark.asyncio
async def test_unit_of_work_rolls_back_on_domain_errors(session, accounts):
    with pytest.raises(ValidationError):
        async with unit_of_work(session):
            session.add(
                Account(
                    wallet_address="0x" + "ee" * 20,
                    uid="HID222222222",
                    username="ghost",
                    role=Role.PATIENT,
                )
            )
            await session.flush()
            raise ValidationError("abort")
    async with unit_of_work(session):
        pass
    assert await session.scalar(select(Account).where(Account.username == "ghost")) is None
