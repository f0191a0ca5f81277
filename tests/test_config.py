from bookingdesk.config import Settings, get_settings, reset_settings_cache


def test_defaults(monkeypatch):
    for name in ("BOOKING_LIMIT", "CORS_ALLOW_ORIGINS", "SITE_CACHE_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.booking_limit == 500
    assert settings.site_cache_ttl_seconds == 300
    assert settings.cors_allow_origins == ["http://localhost:5173"]


def test_env_overrides_and_splits_origins(monkeypatch):
    monkeypatch.setenv("BOOKING_LIMIT", "50")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

    settings = Settings.from_env()

    assert settings.booking_limit == 50
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_blank_values_are_unset(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "  ")
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "")

    settings = Settings.from_env()

    assert settings.redis_url is None
    assert settings.notify_webhook_url is None


def test_settings_cache_reset(monkeypatch):
    monkeypatch.setenv("MFA_ISSUER", "First")
    reset_settings_cache()
    assert get_settings().mfa_issuer == "First"

    monkeypatch.setenv("MFA_ISSUER", "Second")
    assert get_settings().mfa_issuer == "First"

    reset_settings_cache()
    assert get_settings().mfa_issuer == "Second"
    monkeypatch.delenv("MFA_ISSUER")
    reset_settings_cache()
