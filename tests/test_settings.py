"""Tests for application settings parsing."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rate_extract.core.config import Settings, get_settings, get_version


class TestSettingsDefaults:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.API_V1_STR == "/api/v1"
        assert settings.SECTION_TIMEOUT_SECONDS == 300.0
        assert settings.SECTION_DELAY_SECONDS == 3.0
        assert settings.SECTION_DELAY_HEAVY_SECONDS == 5.0
        assert settings.HEAVY_TOKEN_THRESHOLD == 10_000

    def test_redis_urls_are_derived(self):
        settings = Settings(_env_file=None, REDIS_HOST="cache", REDIS_PORT=6380, REDIS_DB=2)
        assert settings.REDIS_URL == "redis://cache:6380/2"
        assert settings.CELERY_BROKER_URL == settings.REDIS_URL
        assert settings.CELERY_RESULT_BACKEND == settings.REDIS_URL


class TestSectionTimeouts:
    def test_override_applies_to_named_section(self):
        settings = Settings(_env_file=None, SECTION_TIMEOUTS={"BaseRates": 600})
        assert settings.section_timeout("BaseRates") == 600.0
        assert settings.section_timeout("Surcharges") == 300.0

    def test_json_string_from_environment(self, monkeypatch):
        monkeypatch.setenv("SECTION_TIMEOUTS", '{"BaseRates": 900, "Surcharges": 120}')
        settings = Settings(_env_file=None)
        assert settings.section_timeout("BaseRates") == 900.0
        assert settings.section_timeout("Surcharges") == 120.0

    def test_blank_string_means_no_overrides(self):
        settings = Settings(_env_file=None, SECTION_TIMEOUTS="  ")
        assert settings.SECTION_TIMEOUTS == {}


class TestStoreBackend:
    def test_normalised(self):
        assert Settings(_env_file=None, STORE_BACKEND=" Memory ").STORE_BACKEND == "memory"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, STORE_BACKEND="postgres")


class TestListParsing:
    def test_cors_origins_from_json(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", '["https://a.example", "https://b.example"]')
        assert Settings(_env_file=None).CORS_ORIGINS == [
            "https://a.example",
            "https://b.example",
        ]

    def test_allowed_domains_list(self):
        settings = Settings(_env_file=None, ALLOWED_URL_DOMAINS=" hooks.example.com , ,api.example.org")
        assert settings.allowed_url_domains_list == ["hooks.example.com", "api.example.org"]

    def test_exempt_hostnames_lowercased(self):
        settings = Settings(_env_file=None, SSRF_EXEMPT_HOSTNAMES="Receiver,  ")
        assert settings.ssrf_exempt_hostnames_list == ["receiver"]

    def test_empty_lists(self):
        settings = Settings(_env_file=None)
        assert settings.allowed_url_domains_list == []
        assert settings.ssrf_exempt_hostnames_list == []


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_get_version_returns_string():
    assert isinstance(get_version(), str)
    assert get_version()
