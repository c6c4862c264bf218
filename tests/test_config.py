"""
Tests for settings and logging setup.
"""

from unittest.mock import patch

from crm.utils.config import get_settings, settings, setup_logging


class TestSettings:

    def test_defaults(self):
        assert get_settings() is settings

    @patch("crm.utils.config.logging.basicConfig")
    def test_setup_logging_uses_settings_level(self, mock_config):
        with patch.object(settings, "LOG_LEVEL", "warning"):
            setup_logging()

        assert mock_config.call_args.kwargs["level"] == "WARNING"

    @patch("crm.utils.config.logging.basicConfig")
    def test_setup_logging_explicit_level(self, mock_config):
        setup_logging("debug")

        kwargs = mock_config.call_args.kwargs
        assert kwargs["level"] == "DEBUG"
        assert "%(name)s" in kwargs["format"]
