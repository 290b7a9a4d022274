"""Tests for application settings."""

from src.config import Settings


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        for name in ("WEBHOOK_BATCH_SIZE", "WEBHOOK_DB_PATH", "WEBHOOK_RECOVER_ON_START"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.WEBHOOK_BATCH_SIZE == 10
        assert settings.WEBHOOK_DB_PATH is None
        assert settings.WEBHOOK_RECOVER_ON_START is True
        assert settings.WEBHOOK_USER_AGENT == "WebhookRelay/1.0"

    def test_from_env(self, monkeypatch):
        """Test values are read and typed."""
        monkeypatch.setenv("WEBHOOK_BATCH_SIZE", "25")
        monkeypatch.setenv("WEBHOOK_TICK_INTERVAL", "0.5")
        monkeypatch.setenv("WEBHOOK_BLOCK_PRIVATE_TARGETS", "yes")
        monkeypatch.setenv("WEBHOOK_RECOVER_ON_START", "off")
        monkeypatch.setenv("WEBHOOK_DB_PATH", "/tmp/hooks.db")

        settings = Settings.from_env()

        assert settings.WEBHOOK_BATCH_SIZE == 25
        assert settings.WEBHOOK_TICK_INTERVAL == 0.5
        assert settings.WEBHOOK_BLOCK_PRIVATE_TARGETS is True
        assert settings.WEBHOOK_RECOVER_ON_START is False
        assert settings.WEBHOOK_DB_PATH == "/tmp/hooks.db"

    def test_bad_numbers_fall_back(self, monkeypatch):
        """Test malformed numbers keep their defaults."""
        monkeypatch.setenv("WEBHOOK_QUEUE_MAX_SIZE", "lots")
        monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT", "")

        settings = Settings.from_env()

        assert settings.WEBHOOK_QUEUE_MAX_SIZE == 10000
        assert settings.WEBHOOK_REQUEST_TIMEOUT == 30.0
