import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from tenantauth.config import Settings, SigningAlgorithm
from tenantauth.logging import _redact_sensitive, log_security_event


def _settings(**overrides):
    base = dict(
        jwt_secret="a" * 40,
        refresh_token_secret="b" * 40,
    )
    base.update(overrides)
    return Settings(**base)


def test_defaults():
    settings = _settings()
    assert settings.jwt_algorithm is SigningAlgorithm.HS256
    assert settings.access_token_ttl_seconds == 7200
    assert settings.refresh_token_ttl_seconds == 30 * 24 * 3600
    assert settings.refresh_hash_algorithm == "sha256"


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None, refresh_token_secret=None)
    second = Settings(jwt_secret=None, refresh_token_secret=None)

    assert first.jwt_secret == second.jwt_secret
    assert first.refresh_token_secret == second.refresh_token_secret
    assert first.jwt_secret != first.refresh_token_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_secrets_must_differ():
    with pytest.raises(ValidationError):
        _settings(refresh_token_secret="a" * 40)


@pytest.mark.parametrize(
    "field,value",
    [
        ("access_token_ttl_seconds", 0),
        ("refresh_token_ttl_seconds", -5),
        ("jwt_leeway_seconds", -1),
        ("refresh_hash_algorithm", "crc32"),
        ("jwt_algorithm", "none"),
    ],
)
def test_invalid_values(field, value):
    with pytest.raises(ValidationError):
        _settings(**{field: value})


def test_from_env_reads_aliases(monkeypatch):
    monkeypatch.setenv("AUTH_LIMITER_MAX", "3")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("JWT_ALGORITHM", "HS512")

    settings = Settings.from_env()

    assert settings.auth_rate_limit_max == 3
    assert settings.redis_url is None
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.jwt_algorithm is SigningAlgorithm.HS512


def test_redaction_masks_credentials():
    event = _redact_sensitive(
        None,
        "info",
        {
            "event": "token_issued",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "password": "abc",
            "principal_id": "p-1",
        },
    )
    assert event["refresh_token"] == "ey***ig"
    assert event["password"] == "***"
    assert event["principal_id"] == "p-1"
    assert event["event"] == "token_issued"


def test_security_event_is_tagged():
    with capture_logs() as logs:
        log_security_event(
            "refresh_token_reuse_detected", principal_id="p-1", reason="hash_mismatch"
        )
        log_security_event("signing_key_leak", severity="critical")

    assert logs[0]["event"] == "security_event"
    assert logs[0]["security"] is True
    assert logs[0]["security_event"] == "refresh_token_reuse_detected"
    assert logs[0]["log_level"] == "warning"
    assert logs[1]["log_level"] == "critical"
