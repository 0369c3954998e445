import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from healthgate.config import Settings
from healthgate.database import build_engine, init_schema
from healthgate.identity.service import IdentityService

ADMIN_WALLET = "0x" + "ad" * 20
PATIENT_WALLET = "0x" + "a1" * 20
DOCTOR_WALLET = "0x" + "b2" * 20
RESPONDER_WALLET = "0x" + "c3" * 20
STRANGER_WALLET = "0x" + "d4" * 20

TEST_QR_KEY = "test-qr-signing-key-that-is-long-enough-for-hs256"


def make_settings(**overrides) -> Settings:
    values = {
        "admin_credentials": frozenset({ADMIN_WALLET}),
        "qr_signing_key": TEST_QR_KEY,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def session():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_schema(engine)
    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as s:
        yield s
    await engine.dispose()


@pytest_asyncio.fixture
async def accounts(session, settings):
    """Admin, patient, doctor, responder and an unrelated account."""
    ids = IdentityService(session, settings)
    return {
        "admin": await ids.resolve(ADMIN_WALLET),
        "patient": await ids.resolve(PATIENT_WALLET),
        "doctor": await ids.resolve(DOCTOR_WALLET),
        "responder": await ids.resolve(RESPONDER_WALLET),
        "stranger": await ids.resolve(STRANGER_WALLET),
    }


@pytest_asyncio.fixture
async def session_pair(tmp_path):
    """Two independent sessions on one file-backed database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}")
    await init_schema(engine)
    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as first, maker() as second:
        yield first, second
    await engine.dispose()
