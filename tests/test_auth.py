"""
Tests for Access Token Providers
"""

import json
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.auth import StaticTokenProvider, FileTokenProvider
from utils.exceptions import AuthenticationError


class TestStaticTokenProvider:
    """Tests for StaticTokenProvider."""

    def test_returns_token(self):
        assert StaticTokenProvider("abc").get_access_token() == "abc"

    def test_empty_token(self):
        with pytest.raises(AuthenticationError, match="Not authenticated"):
            StaticTokenProvider("").get_access_token()


class TestFileTokenProvider:
    """Tests for FileTokenProvider."""

    def test_reads_token_file(self, tmp_path):
        token_file = tmp_path / "token.json"
        token_file.write_text(json.dumps({"access_token": "from-file", "token_type": "Bearer"}))

        provider = FileTokenProvider(str(token_file), fallback_token="fallback")

        assert provider.get_access_token() == "from-file"

    def test_falls_back_when_missing(self, tmp_path):
        provider = FileTokenProvider(str(tmp_path / "missing.json"), fallback_token="fallback")
        assert provider.get_access_token() == "fallback"

    def test_falls_back_on_corrupt_file(self, tmp_path, capture_logs):
        token_file = tmp_path / "token.json"
        token_file.write_text("{not json")

        provider = FileTokenProvider(str(token_file), fallback_token="fallback")

        assert provider.get_access_token() == "fallback"
        assert any("Could not read token file" in r.getMessage() for r in capture_logs)

    def test_no_token_anywhere(self, tmp_path):
        provider = FileTokenProvider(str(tmp_path / "missing.json"), fallback_token="")
        with pytest.raises(AuthenticationError):
            provider.get_access_token()
