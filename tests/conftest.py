"""
Shared Test Fixtures for Album Sync Application

This module provides common fixtures used across all test modules.
Fixtures include a settings mock, an in-memory metadata store, a fake
clock, a fake timeline client, HTTP response mocks, and data factories
for photos and remote statuses.
"""

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Sequence
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def mock_settings():
    """
    Mock the settings module with test configuration values.

    Only code that looks settings up at call time (such as
    config.validators) sees the mock.

    Returns:
        MagicMock: A mock settings object with default test values.
    """
    with patch('config.settings') as mock_settings_module:
        # Remote instance
        mock_settings_module.PIXELFED_INSTANCE = "https://pixelfed.test"
        mock_settings_module.PIXELFED_ACCESS_TOKEN = "test-token"
        mock_settings_module.HTTP_TIMEOUT_SECONDS = 15.0
        mock_settings_module.HTTP_MAX_ATTEMPTS = 3
        mock_settings_module.HTTP_RETRY_DELAY_SECONDS = 0.4

        # Database
        mock_settings_module.ALBUMS_DB_PATH = ":memory:"

        # Query
        mock_settings_module.DEFAULT_QUERY_LIMIT = 20
        mock_settings_module.MIN_QUERY_LIMIT = 1
        mock_settings_module.MAX_QUERY_LIMIT = 40
        mock_settings_module.TAG_HEADROOM_CAP = 200
        mock_settings_module.COMPOUND_HEADROOM_CAP = 120
        mock_settings_module.FETCH_MAX_WORKERS = 8

        # Scheduler
        mock_settings_module.SCHEDULER_TICK_SECONDS = 60.0
        mock_settings_module.SCHEDULER_ALBUM_DELAY_SECONDS = 1.0
        mock_settings_module.JITTER_PERCENTAGE = 10.0
        mock_settings_module.BASE_BACKOFF_SECONDS = 60.0
        mock_settings_module.MAX_BACKOFF_SECONDS = 21600.0
        mock_settings_module.DEFAULT_REFRESH_INTERVAL_MS = 600000

        yield mock_settings_module


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def store():
    """
    Provide a MetadataStore backed by a private in-memory SQLite database.

    Returns:
        MetadataStore: A connected store, closed after the test.
    """
    from data.database import MetadataStore

    metadata_store = MetadataStore(":memory:")
    metadata_store.connect()
    yield metadata_store
    metadata_store.close()


@pytest.fixture
def tag_album(store):
    """An enabled tag album for #italy + #travel (all), limit 20."""
    from data.models import TagQuery

    return store.create_album(
        "Italy trips",
        TagQuery(tags=("italy", "travel"), tagmode="all", limit=20),
        refresh={"interval_ms": 600000},
    )


# =============================================================================
# Logging Fixtures
# =============================================================================

@pytest.fixture
def capture_logs():
    """
    Capture log messages for assertion in tests.

    Returns:
        list: A list that will contain captured log records.
    """
    import logging

    class LogCapture(logging.Handler):
        def __init__(self):
            super().__init__()
            self.records = []

        def emit(self, record):
            self.records.append(record)

    handler = LogCapture()
    handler.setLevel(logging.DEBUG)

    app_logger = logging.getLogger("albums")
    original_level = app_logger.level
    app_logger.setLevel(logging.DEBUG)
    app_logger.addHandler(handler)

    yield handler.records

    app_logger.removeHandler(handler)
    app_logger.setLevel(original_level)


# =============================================================================
# Time Fixtures
# =============================================================================

class FakeClock:
    """Callable clock returning a controllable aware UTC time."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_clock():
    """
    Provide a FakeClock starting at 2024-01-15 10:00 UTC.

    Usage:
        def test_due(fake_clock):
            fake_clock.advance(minutes=11)
    """
    return FakeClock()


# =============================================================================
# HTTP Response Fixtures
# =============================================================================

@pytest.fixture
def mock_http_response():
    """
    Factory fixture for creating mock HTTP responses.

    Usage:
        def test_http_request(mock_http_response):
            response = mock_http_response(
                status_code=200,
                json_data=[{'id': '1'}],
                headers={'Retry-After': '30'}
            )

    Returns:
        callable: A factory function for creating mock responses.
    """
    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> MagicMock:
        """
        Create a mock HTTP response object.

        Args:
            status_code: HTTP status code (default 200).
            json_data: Value to return from response.json(); None makes json() raise.
            headers: Response headers dictionary.

        Returns:
            MagicMock: A mock response object mimicking requests.Response.
        """
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.headers = headers or {'Content-Type': 'application/json'}
        mock_response.ok = 200 <= status_code < 300

        if json_data is not None:
            mock_response.json.return_value = json_data
        else:
            mock_response.json.side_effect = ValueError("No JSON data")

        return mock_response

    return _create_response


@pytest.fixture
def mock_session():
    """
    Provide a MagicMock standing in for requests.Session.

    Usage:
        def test_call(mock_session, mock_http_response):
            mock_session.get.return_value = mock_http_response(json_data=[])
    """
    return MagicMock()


# =============================================================================
# Data Model Factories
# =============================================================================

@pytest.fixture
def photo_factory():
    """
    Factory fixture for creating Photo test objects.

    Usage:
        def test_photo(photo_factory):
            photo = photo_factory("101", minutes=5, tags=("italy",))

    Returns:
        callable: A factory function for creating Photo objects.
    """
    from data.models import Author, Photo

    def _create_photo(
        status_id: str = "1",
        minutes: int = 0,
        tags: Sequence[str] = (),
        url: Optional[str] = None,
        preview_url: Optional[str] = None,
        author_acct: str = "alice@pixelfed.test",
        caption: str = "<p>caption</p>",
    ) -> Photo:
        """
        Create a Photo created ``minutes`` after BASE_TIME.

        Args:
            status_id: Remote status id.
            minutes: Offset from BASE_TIME; larger is newer.
            tags: Photo tags.
            url: Full-size URL (derived from the id if omitted).
            preview_url: Preview URL (derived from the id if omitted).
            author_acct: Author handle.
            caption: Caption HTML.

        Returns:
            Photo: A configured Photo instance.
        """
        return Photo(
            status_id=str(status_id),
            created_at=BASE_TIME + timedelta(minutes=minutes),
            url=url or f"https://cdn.pixelfed.test/{status_id}.jpg",
            preview_url=preview_url or f"https://cdn.pixelfed.test/{status_id}_thumb.jpg",
            author=Author(id="7", acct=author_acct, username=author_acct.split("@")[0],
                          display_name="Alice", avatar_url="https://cdn.pixelfed.test/a.png"),
            caption_html=caption,
            post_url=f"https://pixelfed.test/p/alice/{status_id}",
            tags=tuple(tags),
        )

    return _create_photo


@pytest.fixture
def status_factory():
    """
    Factory fixture for creating raw remote status dictionaries.

    Usage:
        def test_status(status_factory):
            status = status_factory("55", tags=["Italy"], media_types=["image", "video"])

    Returns:
        callable: A factory function for creating status dicts.
    """
    def _create_status(
        status_id: str = "1",
        minutes: int = 0,
        tags: Sequence[Any] = (),
        media_types: Sequence[Optional[str]] = ("image",),
        account: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        created = (BASE_TIME + timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        media = []
        for index, media_type in enumerate(media_types):
            item = {
                "id": f"{status_id}-{index}",
                "url": f"https://cdn.pixelfed.test/{status_id}-{index}.jpg",
                "preview_url": f"https://cdn.pixelfed.test/{status_id}-{index}_thumb.jpg",
            }
            if media_type is not None:
                item["type"] = media_type
            media.append(item)
        return {
            "id": str(status_id),
            "created_at": created,
            "content": f"<p>post {status_id}</p>",
            "url": f"https://pixelfed.test/p/alice/{status_id}",
            "account": account or {
                "id": "7",
                "acct": "alice",
                "username": "alice",
                "display_name": "Alice",
                "avatar": "https://cdn.pixelfed.test/a.png",
            },
            "tags": [t if isinstance(t, dict) else {"name": t} for t in tags],
            "media_attachments": media,
        }

    return _create_status


# =============================================================================
# Dependency Injection Fixtures
# =============================================================================

class FakeTimelineClient:
    """Fake implementation of the TimelineClient protocol for testing.

    Pages are configured per tag / account id; configuring an exception
    instead of a list makes that fetch raise it.

    Usage:
        def test_with_di(fake_client):
            fake_client.tag_pages["italy"] = [photo]
            resolver = QueryResolver(fake_client)
    """

    def __init__(self):
        """Initialize empty pages and call tracking."""
        self.tag_pages: Dict[str, Any] = {}
        self.user_pages: Dict[str, Any] = {}
        self.accounts: Dict[str, Any] = {}
        self.tag_calls: List[Dict[str, Any]] = []
        self.user_calls: List[Dict[str, Any]] = []

    def fetch_tag_page(self, tag, limit=20, since_id=None, max_id=None):
        self.tag_calls.append({"tag": tag, "limit": limit, "since_id": since_id, "max_id": max_id})
        page = self.tag_pages.get(tag, [])
        if isinstance(page, Exception):
            raise page
        return list(page)

    def fetch_user_page(self, account_id, limit=20, since_id=None):
        self.user_calls.append({"account_id": account_id, "limit": limit, "since_id": since_id})
        page = self.user_pages.get(account_id, [])
        if isinstance(page, Exception):
            raise page
        return list(page)

    def resolve_account_id(self, acct):
        if str(acct).isdigit():
            return str(acct)
        value = self.accounts.get(acct)
        if isinstance(value, Exception):
            raise value
        if value is None:
            from utils.exceptions import NotFoundError
            raise NotFoundError("Account not found on the remote instance", {"acct": acct})
        return value


@pytest.fixture
def fake_client():
    """
    Provide a FakeTimelineClient for resolver and scheduler tests.

    Returns:
        FakeTimelineClient: A fresh fake client.
    """
    return FakeTimelineClient()
