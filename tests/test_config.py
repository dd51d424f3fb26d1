"""
Tests for environment-driven Settings.
"""

import os

import pytest

from pairbot.config.config import Settings, env_bool


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No PB_* variables and no stray .env file."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("PB_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestEnvBool:

    @pytest.mark.parametrize("raw, expected", [
        ("1", True), ("true", True), ("YES", True), ("y", True),
        ("0", False), ("false", False), ("no", False),
    ])
    def test_values(self, monkeypatch, raw, expected):
        monkeypatch.setenv("PB_FLAG", raw)
        assert env_bool("PB_FLAG", not expected) is expected

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("PB_FLAG", raising=False)
        assert env_bool("PB_FLAG", True) is True
        monkeypatch.setenv("PB_FLAG", "")
        assert env_bool("PB_FLAG", False) is False


class TestSettingsLoad:

    def test_defaults(self, clean_env):
        cfg = Settings.load()
        assert cfg.symbol == "XAUUSDm"
        assert cfg.broker == "paper"
        assert cfg.leg2_confirm_ms == 3_000
        assert cfg.entry_timeout_ms == 20_000
        assert cfg.sync_grace_ms == 5_000
        assert cfg.external_min_age_ms == 3_000
        assert cfg.recent_ticket_ttl_ms == 15_000
        assert cfg.partial_ratio == 0.5
        assert cfg.trailing_mode == "static"
        assert cfg.close_unknown_age is True

    def test_overrides(self, clean_env):
        clean_env.setenv("PB_SYMBOL", "EURUSD")
        clean_env.setenv("PB_FIXED_LOT", "0.1")
        clean_env.setenv("PB_LEG2_CONFIRM_MS", "4000")
        clean_env.setenv("PB_TRAILING_MODE", "STEP")
        clean_env.setenv("PB_CLOSE_UNKNOWN_AGE", "0")
        clean_env.setenv("PB_MISSING_CONFIRMATIONS", "5")
        clean_env.setenv("PB_NOTIFY_WEBHOOK_URL", "https://hooks.example/abc")
        cfg = Settings.load()
        assert cfg.symbol == "EURUSD"
        assert cfg.fixed_lot == 0.1
        assert cfg.leg2_confirm_ms == 4000
        assert cfg.trailing_mode == "step"
        assert cfg.close_unknown_age is False
        assert cfg.missing_confirmations == 5
        assert cfg.notify_webhook_url == "https://hooks.example/abc"

    @pytest.mark.parametrize("key, value", [
        ("PB_PARTIAL_RATIO", "1.5"),
        ("PB_TRAILING_MODE", "atr"),
        ("PB_MAX_PER_CATEGORY", "0"),
        ("PB_FIXED_LOT", "0"),
        ("PB_ENTRY_TIMEOUT_MS", "2000"),
        ("PB_NOTIFY_WEBHOOK_TYPE", "slack"),
        ("PB_MISSING_CONFIRMATIONS", "0"),
    ])
    def test_invalid_values_rejected(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_telegram_requires_chat_id(self, clean_env):
        clean_env.setenv("PB_NOTIFY_WEBHOOK_URL", "https://api.telegram.org/botX/sendMessage")
        clean_env.setenv("PB_NOTIFY_WEBHOOK_TYPE", "telegram")
        with pytest.raises(ValueError):
            Settings.load()
        clean_env.setenv("PB_TELEGRAM_CHAT_ID", "123")
        assert Settings.load().telegram_chat_id == "123"

    def test_settings_are_frozen(self):
        cfg = Settings()
        with pytest.raises(Exception):
            cfg.symbol = "EURUSD"

    def test_dump(self):
        data = Settings().dump()
        assert data["symbol"] == "XAUUSDm"
        assert "leg2_match_window_ms" in data
