"""
Unit tests for configuration loading and validation.

Tests defaults, strict key/type validation and error handling.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from ai_coach_guard.config.loader import (
    AIConfig,
    ChatConfig,
    CoachConfig,
    CreditConfig,
    RateLimitBackend,
    RateLimitConfig,
    StorageConfig,
    load_coach_config,
    load_config_or_default,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "rate_limit": {"window_seconds": 5, "max_requests": 2, "backend": "SHARED"},
            "credits": {"hourly_pool": 10, "daily_cap": 40, "reset_timezone": "Europe/Berlin"},
            "errors": {"retention_days": 14},
            "ai": {"model": "gpt-4o", "timeout_seconds": 12.5, "temperature": 0.2},
            "chat": {"max_age_seconds": 1800, "sweep_interval_seconds": 600},
            "storage": {"db_path": "coach.db", "persist_retries": 5},
        }

        config = load_coach_config(self._write_config(config_data))

        assert config.rate_limit.window_seconds == 5
        assert config.rate_limit.max_requests == 2
        assert config.rate_limit.backend == RateLimitBackend.SHARED
        assert config.credits.hourly_pool == 10
        assert config.credits.daily_cap == 40
        assert str(config.credits.tz) == "Europe/Berlin"
        assert config.errors.retention_days == 14
        assert config.ai.model == "gpt-4o"
        assert config.ai.timeout_seconds == 12.5
        assert config.ai.max_output_tokens == 200
        assert config.storage.db_path == "coach.db"
        assert config.storage.persist_retries == 5
        assert config.chat.max_age_seconds == 1800
        assert config.chat.sweep_interval_seconds == 600

    def test_partial_config_keeps_defaults(self):
        config = load_coach_config(self._write_config({"credits": {"daily_cap": 30}}))

        assert config.credits.daily_cap == 30
        assert config.credits.hourly_pool == 5
        assert config.rate_limit == RateLimitConfig()

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        assert load_coach_config(config_path) == CoachConfig()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_coach_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("credits: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_coach_config(config_path)

    def test_non_dict_config(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_coach_config(self._write_config(["a", "b"]))

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_coach_config(self._write_config({"budget": {}}))

    def test_unknown_section_key(self):
        """Test a typo never falls back to a default."""
        with pytest.raises(ValueError, match="Unknown keys in credits"):
            load_coach_config(self._write_config({"credits": {"hourly_pol": 5}}))

    def test_section_must_be_dict(self):
        with pytest.raises(ValueError, match="'ai' must be a dictionary"):
            load_coach_config(self._write_config({"ai": "gpt-4o"}))

    def test_wrong_type(self):
        with pytest.raises(ValueError, match="'daily_cap' in credits must be int"):
            load_coach_config(self._write_config({"credits": {"daily_cap": "20"}}))

    def test_bool_is_not_int(self):
        with pytest.raises(ValueError, match="'max_requests' in rate_limit must be int"):
            load_coach_config(self._write_config({"rate_limit": {"max_requests": True}}))

    def test_invalid_backend(self):
        with pytest.raises(ValueError, match="must be one of"):
            load_coach_config(self._write_config({"rate_limit": {"backend": "redis"}}))

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError, match="hourly_pool must be > 0"):
            load_coach_config(self._write_config({"credits": {"hourly_pool": 0}}))

    def test_load_config_or_default(self):
        assert load_config_or_default(None) == CoachConfig()


class TestConfigValidation:
    """Test dataclass validation."""

    def test_defaults(self):
        config = CoachConfig()

        assert config.rate_limit.window_seconds == 10
        assert config.rate_limit.max_requests == 1
        assert config.rate_limit.sweep_interval_seconds == 3600
        assert config.credits.hourly_pool == 5
        assert config.credits.daily_cap == 20
        assert config.errors.retention_days == 30
        assert config.ai.max_question_length == 500
        assert config.chat.max_age_seconds == 3600
        assert config.chat.sweep_interval_seconds == 3600

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="Unknown reset_timezone"):
            CreditConfig(reset_timezone="Mars/Olympus_Mons")

    def test_rate_limit_values(self):
        with pytest.raises(ValueError, match="window_seconds"):
            RateLimitConfig(window_seconds=0)
        with pytest.raises(ValueError, match="max_requests"):
            RateLimitConfig(max_requests=0)

    def test_ai_values(self):
        with pytest.raises(ValueError, match="temperature"):
            AIConfig(temperature=2.5)
        with pytest.raises(ValueError, match="model is required"):
            AIConfig(model=" ")

    def test_storage_values(self):
        with pytest.raises(ValueError, match="persist_retries"):
            StorageConfig(persist_retries=0)

    def test_chat_values(self):
        with pytest.raises(ValueError, match="max_age_seconds"):
            ChatConfig(max_age_seconds=0)
        with pytest.raises(ValueError, match="sweep_interval_seconds"):
            ChatConfig(sweep_interval_seconds=-1)
