"""Tests for configuration validation and health checks."""

from __future__ import annotations

from dataclasses import replace

from app.config import Settings, admin_email_set, validate_settings


def _settings(**overrides) -> Settings:
    values = {
        "environment": "dev",
        "database_url": "postgresql+psycopg://db.internal/ayatbits",
        "admin_emails": "owner@ayatbits.test",
        "identity_jwt_secret": "identity-secret",
        "stripe_secret_key": "sk_test",
        "stripe_webhook_secret": "whsec_test",
        "processor_fallback_enabled": True,
    }
    values.update(overrides)
    return replace(Settings(), **values)


class TestValidateSettings:
    def test_no_warnings_when_configured(self) -> None:
        assert validate_settings(_settings()) == []

    def test_missing_identity_secret(self) -> None:
        warnings = validate_settings(_settings(identity_jwt_secret=""))
        assert any("IDENTITY_JWT_SECRET" in w for w in warnings)

    def test_missing_webhook_secret(self) -> None:
        warnings = validate_settings(_settings(stripe_webhook_secret=""))
        assert any("STRIPE_WEBHOOK_SECRET" in w for w in warnings)

    def test_missing_secret_key_only_matters_with_fallback(self) -> None:
        with_fallback = validate_settings(_settings(stripe_secret_key=""))
        without_fallback = validate_settings(
            _settings(stripe_secret_key="", processor_fallback_enabled=False)
        )
        assert any("STRIPE_SECRET_KEY" in w for w in with_fallback)
        assert without_fallback == []

    def test_empty_admin_allowlist(self) -> None:
        warnings = validate_settings(_settings(admin_emails=""))
        assert any("ADMIN_EMAILS" in w for w in warnings)

    def test_localhost_database_in_production(self) -> None:
        warnings = validate_settings(
            _settings(
                environment="production",
                database_url="postgresql+psycopg://postgres@localhost:5432/ayatbits",
            )
        )
        assert any("localhost" in w for w in warnings)


def test_admin_email_set_normalizes() -> None:
    s = _settings(admin_emails=" Owner@AyatBits.test, ,second@example.com ")
    assert admin_email_set(s) == frozenset({"owner@ayatbits.test", "second@example.com"})


class TestHealthCheck:
    """Test the health endpoint response format."""

    def test_liveness_always_ok(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_readiness_checks_database(self, client) -> None:
        resp = client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"]["database"] == "ok"
