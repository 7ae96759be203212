"""Settings validation tests."""

import pytest
from pydantic import ValidationError

from keygate.config import DEFAULT_JWT_SECRET, Settings


def test_defaults_are_valid_in_development():
    settings = Settings(environment="development")
    assert settings.jwt_secret == DEFAULT_JWT_SECRET
    assert settings.rate_limits["chat.send"].limit == 5
    assert settings.rate_limits["chat.send"].window_ms == 1000


def test_default_secret_rejected_in_production():
    with pytest.raises(ValidationError, match="KEYGATE_JWT_SECRET"):
        Settings(environment="production")


def test_production_with_real_secret():
    settings = Settings(environment="production", jwt_secret="s" * 48)
    assert settings.environment == "production"


def test_unknown_store_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(environment="test", store_backend="memcached")


@pytest.mark.parametrize(
    "rp_id,origin",
    [
        ("example.com", "https://example.com"),
        ("example.com", "https://login.example.com"),
        ("localhost", "http://localhost:5173"),
    ],
)
def test_rp_id_matching_origin(rp_id, origin):
    assert Settings(environment="test", rp_id=rp_id, origin=origin).rp_id == rp_id


@pytest.mark.parametrize(
    "rp_id,origin",
    [
        ("example.com", "https://example.org"),
        ("login.example.com", "https://example.com"),
        ("ample.com", "https://example.com"),
    ],
)
def test_rp_id_not_matching_origin(rp_id, origin):
    with pytest.raises(ValidationError, match="KEYGATE_RP_ID"):
        Settings(environment="test", rp_id=rp_id, origin=origin)


def test_rate_limits_from_env(monkeypatch):
    monkeypatch.setenv(
        "KEYGATE_RATE_LIMITS", '{"chat.send": {"limit": 9, "window_ms": 2000}}'
    )
    settings = Settings(environment="test")
    assert settings.rate_limits["chat.send"].limit == 9
    assert "register.start" not in settings.rate_limits
