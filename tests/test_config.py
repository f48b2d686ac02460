"""
Tests for settings loading and credential validation.
"""

import json

import pytest

from okrlens.core.config import (
    DEFAULT_BASE_URL,
    DEFAULT_PARENT_FIELDS,
    Settings,
    load_settings,
    validate_account_id,
    validate_api_token,
)
from okrlens.core.errors import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "api_token": "file-token-0123456789",
                "account_id": "file-account",
                "sessions": ["Q4 2024"],
                "lookback_days": 14,
                "skip_history": True,
            }
        )
    )
    return path


class TestLoadSettings:
    def test_defaults_without_file_or_env(self, tmp_path):
        settings = load_settings(path=tmp_path / "missing.json", env={})

        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.lookback_days == 7
        assert settings.chunk_size == 25
        assert settings.chunk_delay == 0.1
        assert settings.sparkline_width == 10
        assert settings.parent_fields == DEFAULT_PARENT_FIELDS
        assert settings.sessions == []

    def test_file_values(self, config_file):
        settings = load_settings(path=config_file, env={})

        assert settings.api_token == "file-token-0123456789"
        assert settings.sessions == ["Q4 2024"]
        assert settings.lookback_days == 14
        assert settings.skip_history is True

    def test_env_overrides_file(self, config_file):
        env = {
            "QUANTIVE_API_TOKEN": "env-token-0123456789",
            "QUANTIVE_SESSIONS": "Q1 2025, Q2 2025",
            "LOOKBACK_DAYS": "3",
            "SKIP_HISTORY": "false",
            "CHUNK_DELAY_MS": "250",
            "PARENT_FIELDS": "alignedTo,parentId",
        }
        settings = load_settings(path=config_file, env=env)

        assert settings.api_token == "env-token-0123456789"
        assert settings.account_id == "file-account"
        assert settings.sessions == ["Q1 2025", "Q2 2025"]
        assert settings.lookback_days == 3
        assert settings.skip_history is False
        assert settings.chunk_delay == 0.25
        assert settings.parent_fields == ["alignedTo", "parentId"]

    def test_session_id_env(self, tmp_path):
        settings = load_settings(path=tmp_path / "none.json", env={"SESSION_ID": "abc-123"})
        assert settings.sessions == ["abc-123"]

    def test_invalid_number_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(path=tmp_path / "none.json", env={"CHUNK_SIZE": "lots"})

    def test_broken_json_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{nope")
        with pytest.raises(ConfigurationError):
            load_settings(path=path, env={})


class TestValidation:
    @pytest.mark.parametrize("token", ["", "   ", None])
    def test_empty_token(self, token):
        with pytest.raises(ConfigurationError, match="non-empty"):
            validate_api_token(token)

    def test_placeholder_token(self):
        with pytest.raises(ConfigurationError, match="placeholder"):
            validate_api_token("your-api-token-here")

    def test_short_token(self):
        with pytest.raises(ConfigurationError, match="too short"):
            validate_api_token("abc")

    def test_placeholder_account(self):
        with pytest.raises(ConfigurationError, match="placeholder"):
            validate_account_id("your-account-id-here")

    def test_valid_settings(self, settings):
        settings.validate()

    def test_sessions_required(self, settings):
        settings.sessions = []
        with pytest.raises(ConfigurationError):
            settings.validate()
        settings.validate(require_sessions=False)

    def test_lookback_must_be_positive(self, settings):
        settings.lookback_days = 0
        with pytest.raises(ConfigurationError):
            settings.validate()

    def test_missing_token_fails_first(self):
        with pytest.raises(ConfigurationError, match="API token"):
            Settings(account_id="acct", sessions=["x"]).validate()
