"""
Access Token Providers

The OAuth flow that produces tokens lives outside this application; the
providers here only hand out a bearer token for remote API calls.
"""

import json
import os
from typing import Optional

from config import settings
from utils.exceptions import AuthenticationError
from utils.logger import get_logger

logger = get_logger(__name__)


class StaticTokenProvider:
    """Token provider returning a fixed token."""

    def __init__(self, token: Optional[str]):
        self.token = token

    def get_access_token(self) -> str:
        if not self.token:
            raise AuthenticationError("Not authenticated")
        return self.token


class FileTokenProvider:
    """Token provider reading the persisted OAuth token file.

    The file is the JSON body of the instance's ``/oauth/token`` response;
    only ``access_token`` is used. ``PIXELFED_ACCESS_TOKEN`` serves as a
    fallback when the file is missing or unreadable.
    """

    def __init__(self, token_file: Optional[str] = None, fallback_token: Optional[str] = None):
        self.token_file = token_file or settings.TOKEN_FILE
        self.fallback_token = settings.PIXELFED_ACCESS_TOKEN if fallback_token is None else fallback_token

    def _read_token_file(self) -> Optional[str]:
        if not self.token_file or not os.path.exists(self.token_file):
            return None
        try:
            with open(self.token_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read token file {self.token_file}: {e}")
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        return token or None

    def get_access_token(self) -> str:
        """
        Return the stored access token.

        Returns:
            str: Bearer token.

        Raises:
            AuthenticationError: If neither the token file nor the fallback has a token.
        """
        token = self._read_token_file() or self.fallback_token
        if not token:
            raise AuthenticationError("Not authenticated")
        return token
