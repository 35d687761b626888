"""
Tests for Configuration Validation

Tests cover validate_settings error collection and the configuration
summary used for startup logging.
"""

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.validators import validate_settings, get_config_summary
from utils.exceptions import ConfigurationError


class TestValidateSettings:
    """Tests for validate_settings."""

    def test_valid_settings_pass(self, mock_settings):
        assert validate_settings() is True

    def test_bad_instance_url(self, mock_settings):
        mock_settings.PIXELFED_INSTANCE = "pixelfed.test"
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings()
        assert "PIXELFED_INSTANCE" in str(exc_info.value)

    def test_collects_every_problem(self, mock_settings):
        """All problems are reported in one error."""
        mock_settings.ALBUMS_DB_PATH = ""
        mock_settings.JITTER_PERCENTAGE = 90.0
        mock_settings.HTTP_TIMEOUT_SECONDS = 0
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings()
        message = str(exc_info.value)
        assert "ALBUMS_DB_PATH" in message
        assert "JITTER_PERCENTAGE" in message
        assert "HTTP_TIMEOUT_SECONDS" in message

    def test_backoff_base_above_max(self, mock_settings):
        mock_settings.BASE_BACKOFF_SECONDS = 100000.0
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings()
        assert "BASE_BACKOFF_SECONDS must not exceed" in str(exc_info.value)

    def test_negative_album_delay(self, mock_settings):
        mock_settings.SCHEDULER_ALBUM_DELAY_SECONDS = -1
        with pytest.raises(ConfigurationError):
            validate_settings()


class TestConfigSummary:
    """Tests for get_config_summary."""

    def test_summary_hides_token(self, mock_settings):
        summary = get_config_summary()
        assert summary["instance"]["token_configured"] is True
        assert "test-token" not in str(summary)

    def test_summary_sections(self, mock_settings):
        summary = get_config_summary()
        assert summary["database"]["path"] == ":memory:"
        assert summary["query"]["limit_range"] == [1, 40]
        assert summary["scheduler"]["jitter"] == "10%"
