"""
Unit tests for configuration module.
"""

import os
from unittest.mock import patch

import pytest

from cortexflow.config import Settings, get_settings


@pytest.mark.unit
class TestSettings:
    """Tests for Settings class."""

    def test_defaults(self, test_settings):
        """Settings should provide defaults for everything but the data dir."""
        assert test_settings.rag_db_filename == "rag.sqlite"
        assert test_settings.embedding_timeout == 5.0
        assert test_settings.log_level == "INFO"
        assert test_settings.openai_api_key is None

    def test_data_dir_from_env_is_resolved(self, test_settings, tmp_path):
        """CORTEXFLOW_DATA_DIR should be resolved to an absolute path."""
        assert test_settings.data_dir == (tmp_path / "data").resolve()
        assert test_settings.data_dir.is_absolute()
        assert test_settings.rag_db_path == test_settings.data_dir / "rag.sqlite"

    def test_api_keys_are_secret(self, test_settings, monkeypatch):
        """API keys should be stored as SecretStr and revealed only on request."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
        settings = Settings(_env_file=None)

        assert "sk-test-openai" not in str(settings.openai_api_key)
        assert settings.api_key_for("openai") == "sk-test-openai"
        assert settings.api_key_for("voyage") is None
        assert settings.api_key_for("custom") is None

    def test_log_level_is_case_insensitive(self, test_settings, monkeypatch):
        """LOG_LEVEL should accept lower-case values."""
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings(_env_file=None).log_level == "DEBUG"

    def test_invalid_timeout_rejected(self):
        """EMBEDDING_TIMEOUT must be positive."""
        with patch.dict(os.environ, {"EMBEDDING_TIMEOUT": "0"}):
            with pytest.raises(Exception):  # ValidationError
                Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        """get_settings should return cached instance."""
        get_settings.cache_clear()

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2
