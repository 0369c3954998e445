import dataclasses

import pytest

from healthgate.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults(monkeypatch):
    for name in ("ADMIN_CREDENTIALS", "QR_REQUIRE_SEAL", "QR_TTL_HOURS", "RECORD_ENC_KEY"):
        monkeypatch.delenv(name, raising=False)
    settings = get_settings()
    assert settings.admin_credentials == frozenset()
    assert settings.qr_require_seal is True
    assert settings.qr_ttl_hours is None
    assert settings.max_avatar_bytes == 10 * 1024 * 1024
    assert settings.uid_max_attempts == 10


def test_from_env(monkeypatch):
    monkeypatch.setenv("ADMIN_CREDENTIALS", " 0xAB , ,0xCD ")
    monkeypatch.setenv("QR_REQUIRE_SEAL", "false")
    monkeypatch.setenv("QR_TTL_HOURS", "24")
    monkeypatch.setenv("ACCESS_GRANT_TTL_HOURS", "not-a-number")
    settings = get_settings()
    assert settings.admin_credentials == frozenset({"0xab", "0xcd"})
    assert settings.is_admin_credential("0xAB")
    assert settings.qr_require_seal is False
    assert settings.qr_ttl_hours == 24.0
    assert settings.access_grant_ttl_hours is None


def test_settings_are_cached_and_frozen(monkeypatch):
    monkeypatch.setenv("ADMIN_CREDENTIALS", "0xab")
    settings = get_settings()
    monkeypatch.setenv("ADMIN_CREDENTIALS", "0xcd")
    assert get_settings() is settings
    with pytest.raises(dataclasses.FrozenInstanceError):
        settings.admin_credentials = frozenset()  # type: ignore[misc]
    assert isinstance(settings, Settings)
