"""
Pixelfed Client Module

This module talks to the remote Pixelfed (Mastodon-compatible) API. It
fetches single pages of hashtag timelines and account statuses, resolves
account handles to ids, and classifies failures into the application's
typed errors:

- 429            -> RateLimitError (with Retry-After when the server sends one)
- 5xx / network  -> UpstreamError (retried a few times in-process)
- other 4xx      -> treated as "no results"
"""

import math
import threading
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from config import settings
from data.models import Photo
from services.post_normalizer import statuses_to_photos
from services.protocols import TokenProvider
from utils.exceptions import NotFoundError, RateLimitError, UpstreamError, ValidationError
from utils.helpers import is_account_id, normalize_acct, normalize_tag, retry, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header given either as seconds or as an HTTP date.

    Returns:
        Optional[float]: Seconds to wait, or None if absent or unparseable.
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - utc_now()).total_seconds()
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


class PixelfedClient:
    """Client for the remote instance's timeline and account endpoints."""

    def __init__(self, token_provider: TokenProvider, base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: Optional[float] = None,
                 max_attempts: Optional[int] = None, retry_delay: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the client.

        Args:
            token_provider: Supplies the bearer token for every request.
            base_url: Instance URL; defaults to ``settings.PIXELFED_INSTANCE``.
            session: requests session to reuse (a new one is created if omitted).
            timeout: Per-request timeout in seconds.
            max_attempts: Attempts for transient upstream failures.
            retry_delay: Initial delay between attempts in seconds.
            sleep: Sleep function used between attempts.
        """
        self.token_provider = token_provider
        self.base_url = (base_url or settings.PIXELFED_INSTANCE).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_attempts = settings.HTTP_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.retry_delay = settings.HTTP_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._sleep = sleep
        self._account_cache: Dict[str, str] = {}
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_provider.get_access_token()}",
            "Accept": "application/json",
            "User-Agent": settings.USER_AGENT,
        }

    def _request(self, path: str, params: Dict[str, Any], context: Dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        clean = {k: v for k, v in params.items() if v is not None and v != ""}
        headers = self._headers()
        try:
            response = self.session.get(url, params=clean, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Request to {path} failed: {e}")
            raise UpstreamError("Unable to reach the remote instance",
                                {**context, "cause": str(e)}) from e

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Rate limited on {path} (retry after {retry_after})")
            raise RateLimitError("Rate limited by the remote instance", dict(context),
                                 retry_after_seconds=retry_after)
        if response.status_code >= 500:
            logger.warning(f"Remote instance error {response.status_code} on {path}")
            raise UpstreamError("Remote instance error", {**context, "status": response.status_code})
        return response

    def _get(self, path: str, params: Dict[str, Any], context: Dict[str, Any]) -> requests.Response:
        return retry(
            lambda: self._request(path, params, context),
            max_attempts=self.max_attempts,
            delay=self.retry_delay,
            exceptions=(UpstreamError,),
            sleep=self._sleep,
        )

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # -------------------------------------------------------------------------
    # Timelines
    # -------------------------------------------------------------------------

    def fetch_tag_page(self, tag: str, limit: int = 20, since_id: Optional[str] = None,
                       max_id: Optional[str] = None) -> List[Photo]:
        """
        Fetch one page of a hashtag timeline.

        Args:
            tag: Hashtag, with or without ``#``.
            limit: Page size requested.
            since_id: Return only posts newer than this id.
            max_id: Return only posts older than this id.

        Returns:
            List[Photo]: Image attachments on the page; empty for a non-429 4xx.

        Raises:
            ValidationError: If the tag is empty.
            RateLimitError: On HTTP 429.
            UpstreamError: On network failure or 5xx after retries.
        """
        key = normalize_tag(tag)
        if not key:
            raise ValidationError("tag must not be empty", {"tag": tag})

        response = self._get(
            f"/api/v1/timelines/tag/{quote(key, safe='')}",
            {"limit": int(limit), "since_id": since_id, "max_id": max_id},
            {"tag": key},
        )
        if not response.ok:
            logger.debug(f"Tag timeline #{key} returned {response.status_code}; treating as empty")
            return []

        data = self._json(response)
        photos = statuses_to_photos(data if isinstance(data, list) else [])
        logger.debug(f"Fetched {len(photos)} photos for #{key}")
        return photos

    def fetch_user_page(self, account_id: str, limit: int = 20,
                        since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Fetch one page of an account's statuses, replies excluded.

        Returns:
            List[Dict[str, Any]]: Raw statuses; empty for a non-429 4xx.
        """
        response = self._get(
            f"/api/v1/accounts/{quote(str(account_id), safe='')}/statuses",
            {"limit": int(limit), "exclude_replies": "true", "since_id": since_id},
            {"account_id": str(account_id)},
        )
        if not response.ok:
            logger.debug(f"Statuses for account {account_id} returned {response.status_code}; treating as empty")
            return []

        data = self._json(response)
        statuses = [s for s in data if isinstance(s, dict)] if isinstance(data, list) else []
        logger.debug(f"Fetched {len(statuses)} statuses for account {account_id}")
        return statuses

    # -------------------------------------------------------------------------
    # Account resolution
    # -------------------------------------------------------------------------

    def resolve_account_id(self, acct: str) -> str:
        """
        Resolve an account handle to its numeric id on the instance.

        Accepts ``name``, ``@name``, ``name@host``, ``@name@host`` and
        profile URLs. Numeric ids are returned unchanged. Strategies, in
        order: v2 search with ``resolve=true``, v1 lookup (local handles
        only), v1 account search.

        Raises:
            ValidationError: If the handle is malformed.
            NotFoundError: If no strategy finds the account.
            RateLimitError: On HTTP 429.
            UpstreamError: On network failure or 5xx.
        """
        if is_account_id(acct):
            return str(acct).strip()

        clean = normalize_acct(acct)
        with self._cache_lock:
            cached = self._account_cache.get(clean)
        if cached:
            return cached

        account_id = self._lookup_account(clean)
        if not account_id:
            raise NotFoundError("Account not found on the remote instance", {"acct": clean})

        with self._cache_lock:
            self._account_cache[clean] = account_id
        logger.info(f"Resolved account {clean} -> {account_id}")
        return account_id

    def _lookup_account(self, clean: str) -> Optional[str]:
        context = {"acct": clean}

        response = self._get("/api/v2/search",
                             {"q": clean, "resolve": "true", "type": "accounts", "limit": 1}, context)
        data = self._json(response) if response.ok else None
        if isinstance(data, dict):
            accounts = data.get("accounts") or []
            if accounts and isinstance(accounts[0], dict) and accounts[0].get("id"):
                return str(accounts[0]["id"])

        if "@" not in clean:
            response = self._get("/api/v1/accounts/lookup", {"acct": clean}, context)
            data = self._json(response) if response.ok else None
            if isinstance(data, dict) and data.get("id"):
                return str(data["id"])

        response = self._get("/api/v1/accounts/search", {"q": clean, "limit": 1}, context)
        data = self._json(response) if response.ok else None
        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("id"):
            return str(data[0]["id"])
        return None

    def resolve_many(self, accts: Iterable[str]) -> List[str]:
        """Resolve several handles, returning unique ids in input order."""
        resolved: Dict[str, None] = {}
        for raw in accts or []:
            value = str(raw or "").strip()
            if value:
                resolved.setdefault(self.resolve_account_id(value), None)
        return list(resolved)
