"""Unit tests for environment-driven settings."""

from __future__ import annotations

import pydantic
import pytest

from webtoepub.config.settings import Settings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ALLOW_INTERNAL_IPS",
        "CLIENT_URL",
        "PORT",
        "BATCH_CONCURRENCY",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestDefaults:
    def test_hardened_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.allow_internal_ips is False
        assert settings.port == 3000
        assert settings.host == "0.0.0.0"
        assert settings.batch_concurrency == 4
        assert settings.allowed_origins == ["*"]


class TestEnvironment:
    def test_allow_internal_ips_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ALLOW_INTERNAL_IPS", "true")

        assert Settings(_env_file=None).allow_internal_ips is True

    def test_port_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PORT", "8080")

        assert Settings(_env_file=None).port == 8080

    def test_client_url_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CLIENT_URL", "https://a.example, https://b.example")

        assert Settings(_env_file=None).allowed_origins == [
            "https://a.example",
            "https://b.example",
        ]

    def test_batch_concurrency_bounds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BATCH_CONCURRENCY", "0")

        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()
