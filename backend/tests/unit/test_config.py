from __future__ import annotations

from retail_sync.core.config import Settings, get_cors_origins


def test_cors_wildcard() -> None:
    assert get_cors_origins("*") == ["*"]


def test_cors_json_list() -> None:
    assert get_cors_origins('["http://a.test", "http://b.test"]') == ["http://a.test", "http://b.test"]


def test_cors_comma_separated() -> None:
    assert get_cors_origins("http://a.test, http://b.test,") == ["http://a.test", "http://b.test"]


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("REMOTE_PAGE_SIZE", "100")
    monkeypatch.setenv("LEGACY_DB_NAME", "legacy")

    settings = Settings()

    assert settings.REMOTE_PAGE_SIZE == 100
    assert settings.LEGACY_DB_NAME == "legacy"
    assert settings.REMOTE_MAX_RETRIES == 3
