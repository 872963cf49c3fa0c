import pytest
from pydantic import ValidationError

from cajauth import config as config_module
from cajauth.config import (
    DEV_JWT_SECRET,
    JwtAlgorithm,
    Settings,
    get_settings,
    reset_settings_cache,
)
from conftest import TEST_SECRET, make_settings


def test_defaults():
    settings = make_settings()
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
    assert settings.jwt_algorithm is JwtAlgorithm.HS256
    assert settings.access_cookie_name == "cajpro_auth_token"
    assert settings.refresh_cookie_name == "cajpro_refresh_token"
    assert settings.password_min_length == 6


def test_settings_are_frozen():
    settings = make_settings()
    with pytest.raises(ValidationError):
        settings.jwt_secret = "changed"


def test_development_tolerates_dev_secret():
    settings = Settings(environment="development", jwt_secret=DEV_JWT_SECRET)
    assert settings.jwt_secret == DEV_JWT_SECRET
    assert not settings.is_production


@pytest.mark.parametrize("secret", ["", DEV_JWT_SECRET])
def test_production_requires_real_secret(secret):
    with pytest.raises(ValidationError):
        Settings(environment="production", jwt_secret=secret)


def test_production_rejects_short_secret():
    with pytest.raises(ValidationError):
        Settings(environment="production", jwt_secret="too-short")


def test_production_accepts_long_secret():
    settings = Settings(environment=" Production ", jwt_secret=TEST_SECRET)
    assert settings.environment == "production"
    assert settings.is_production


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds):
    with pytest.raises(ValidationError):
        make_settings(bcrypt_rounds=rounds)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("JWT_EXPIRATION", "120")
    monkeypatch.setenv("REFRESH_TOKEN_EXPIRATION", "600")
    monkeypatch.setenv("JWT_ALGORITHM", "HS512")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test ,")

    settings = Settings.from_env()

    assert settings.environment == "test"
    assert settings.access_token_ttl_seconds == 120
    assert settings.refresh_token_ttl_seconds == 600
    assert settings.jwt_algorithm is JwtAlgorithm.HS512
    assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]


def test_from_env_rejects_unknown_algorithm(monkeypatch):
    monkeypatch.setenv("JWT_ALGORITHM", "none")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
    reset_settings_cache()
    assert get_settings() is get_settings()


def test_app_reads_shared_settings(monkeypatch):
    from fastapi.testclient import TestClient

    from cajauth import app as app_module

    client = TestClient(app_module.app, base_url="https://testserver")
    assert "Strict-Transport-Security" not in client.get("/healthz").headers

    monkeypatch.setattr(
        config_module,
        "_settings_cache",
        make_settings(environment="production", jwt_secret=TEST_SECRET),
    )
    response = client.get("/healthz")
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")
