"""Tests for settings clamps and production validation."""

from __future__ import annotations

import pytest

from aigate.core import config
from aigate.core.config import Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestClamps:
    def test_timeouts_have_a_floor(self):
        s = _settings(ai_timeout_ms=10, usage_timeout_ms=0, usage_increment_timeout_ms=-5)
        assert s.ai_timeout_ms == 250
        assert s.usage_timeout_ms == 250
        assert s.usage_increment_timeout_ms == 250

    def test_window_and_max_have_a_floor(self):
        s = _settings(rate_limit_window_ms=1, rate_limit_chat_max=0)
        assert s.rate_limit_window_ms == 250
        assert s.rate_limit_chat_max == 1

    def test_body_cap_has_a_floor(self):
        assert _settings(max_body_bytes=10).max_body_bytes == 1024

    def test_values_above_floor_are_kept(self):
        s = _settings(ai_timeout_ms=30_000, max_body_bytes=4096)
        assert s.ai_timeout_ms == 30_000
        assert s.max_body_bytes == 4096


class TestProductionValidation:
    def test_development_is_not_checked(self, monkeypatch):
        monkeypatch.setattr(config, "settings", _settings(app_env="development"))
        config.validate_settings_for_production()

    def test_production_defaults_are_rejected(self, monkeypatch):
        monkeypatch.setattr(config, "settings", _settings(app_env="production"))
        with pytest.raises(SystemExit) as exc_info:
            config.validate_settings_for_production()

        message = str(exc_info.value)
        assert "JWT_SECRET_KEY" in message
        assert "ALLOWED_ORIGINS" in message
        assert "USAGE_ORACLE_URL" in message

    def test_production_ready(self, monkeypatch):
        monkeypatch.setattr(
            config,
            "settings",
            _settings(
                app_env="production",
                app_debug=False,
                jwt_secret_key="x" * 48,
                allowed_origins="https://app.example.com",
                usage_oracle_url="https://ledger.example.com",
                gemini_api_key="g-key",
            ),
        )
        config.validate_settings_for_production()
