"""
Data Models for Album Sync Application

This module contains the data classes used throughout the application:
albums and their saved queries, refresh state, and the canonical photo record.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar, Union

from config import settings
from utils.exceptions import ValidationError
from utils.helpers import clamp, format_timestamp, normalize_tags, parse_timestamp

TAGMODES = ("any", "all")
QUERY_TYPES = ("tag", "user", "compound")

T = TypeVar("T")

MAX_RETRY_COUNT = 64                 # Backoff saturates long before this


def clamp_limit(limit: Any) -> int:
    """Clamp a requested photo count into the remote API's page bounds."""
    return clamp(limit, settings.MIN_QUERY_LIMIT, settings.MAX_QUERY_LIMIT,
                 default=settings.DEFAULT_QUERY_LIMIT)


def _normalize_tagmode(tagmode: Any) -> str:
    mode = str(tagmode or "any").strip().lower()
    if mode not in TAGMODES:
        raise ValidationError('tagmode must be "any" | "all"', {"tagmode": tagmode})
    return mode


def _normalize_users(users: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    if not users:
        return ()
    if isinstance(users, str):
        users = [users]
    seen: Dict[str, None] = {}
    for user in users:
        value = str(user or "").strip()
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


# =============================================================================
# Album Queries
# =============================================================================

@dataclass(frozen=True)
class TagQuery:
    """Photos carrying any/all of the given hashtags."""
    tags: Tuple[str, ...]
    tagmode: str = "any"
    limit: int = settings.DEFAULT_QUERY_LIMIT
    type: ClassVar[str] = "tag"


@dataclass(frozen=True)
class UserQuery:
    """Photos posted by any of the given accounts (handles or ids)."""
    users: Tuple[str, ...]
    limit: int = settings.DEFAULT_QUERY_LIMIT
    type: ClassVar[str] = "user"


@dataclass(frozen=True)
class CompoundQuery:
    """Photos posted by the given accounts that also match the tag filter."""
    tags: Tuple[str, ...]
    users: Tuple[str, ...]
    tagmode: str = "any"
    limit: int = settings.DEFAULT_QUERY_LIMIT
    type: ClassVar[str] = "compound"


AlbumQuery = Union[TagQuery, UserQuery, CompoundQuery]


def build_query(query_type: Any, tags: Optional[Iterable[Any]] = None,
                users: Optional[Iterable[Any]] = None, tagmode: Any = "any",
                limit: Any = None, require_both: bool = True) -> AlbumQuery:
    """
    Build a validated, normalized album query.

    Args:
        query_type: ``"tag"``, ``"user"`` or ``"compound"``.
        tags: Raw hashtags; normalized to lowercase without ``#``.
        users: Account handles or numeric ids.
        tagmode: ``"any"`` (OR) or ``"all"`` (AND).
        limit: Requested photo count, clamped to the allowed range.
        require_both: When True a compound query needs both tags and users.
            Ad hoc queries pass False and degrade to a single criterion.

    Returns:
        AlbumQuery: One of TagQuery, UserQuery or CompoundQuery.

    Raises:
        ValidationError: If the type is unknown or required fields are empty.
    """
    kind = str(query_type or "").strip().lower()
    if kind not in QUERY_TYPES:
        raise ValidationError('query.type must be "tag" | "user" | "compound"', {"type": query_type})

    clean_tags = tuple(normalize_tags(tags))
    clean_users = _normalize_users(users)
    mode = _normalize_tagmode(tagmode)
    size = clamp_limit(settings.DEFAULT_QUERY_LIMIT if limit is None else limit)

    if kind == "tag":
        if not clean_tags:
            raise ValidationError('query.tags must be a non-empty array for type "tag"')
        return TagQuery(tags=clean_tags, tagmode=mode, limit=size)

    if kind == "user":
        if not clean_users:
            raise ValidationError('query.users must be a non-empty array for type "user"')
        return UserQuery(users=clean_users, limit=size)

    if require_both:
        if not clean_tags:
            raise ValidationError("compound query requires non-empty tags")
        if not clean_users:
            raise ValidationError("compound query requires non-empty users")
    elif not clean_tags and not clean_users:
        raise ValidationError("tags or users required")
    return CompoundQuery(tags=clean_tags, users=clean_users, tagmode=mode, limit=size)


def query_to_dict(query: AlbumQuery) -> Dict[str, Any]:
    """Render a query with every field present, for storage and API output."""
    return {
        "type": query.type,
        "tags": list(getattr(query, "tags", ())),
        "users": list(getattr(query, "users", ())),
        "tagmode": getattr(query, "tagmode", "any"),
        "limit": query.limit,
    }


# =============================================================================
# Refresh State
# =============================================================================

_REFRESH_TIME_FIELDS = ("last_checked_at", "backoff_until")


@dataclass
class RefreshState:
    """Scheduler bookkeeping carried on each album between refresh cycles."""
    interval_ms: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    backoff_until: Optional[datetime] = None
    since_id: Optional[str] = None     # newest-seen watermark
    max_id: Optional[str] = None       # oldest-seen watermark, reserved for backfill
    retry_count: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RefreshState":
        data = data or {}
        interval = _first_present(data, "interval_ms", "intervalMs", "refresh_interval_ms")
        try:
            interval = int(interval) if interval is not None else None
        except (TypeError, ValueError, OverflowError):
            interval = None
        return cls(
            interval_ms=interval,
            last_checked_at=parse_timestamp(data.get("last_checked_at")),
            backoff_until=parse_timestamp(data.get("backoff_until")),
            since_id=_optional_str(data.get("since_id")),
            max_id=_optional_str(data.get("max_id")),
            retry_count=clamp(data.get("retry_count"), 0, MAX_RETRY_COUNT, default=0),
            last_error=data.get("last_error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return serialize_refresh_patch({
            "interval_ms": self.interval_ms,
            "last_checked_at": self.last_checked_at,
            "backoff_until": self.backoff_until,
            "since_id": self.since_id,
            "max_id": self.max_id,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        })


def serialize_refresh_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Convert datetimes in a refresh-state patch to ISO strings for JSON storage."""
    out = {}
    for key, value in patch.items():
        if key in _REFRESH_TIME_FIELDS and isinstance(value, datetime):
            value = format_timestamp(value)
        out[key] = value
    return out


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# =============================================================================
# Albums
# =============================================================================

@dataclass
class Album:
    """A saved query plus its refresh state."""
    id: str
    name: str
    query: AlbumQuery
    refresh: RefreshState = field(default_factory=RefreshState)
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def type(self) -> str:
        return self.query.type

    @property
    def limit(self) -> int:
        return self.query.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "query": query_to_dict(self.query),
            "refresh": self.refresh.to_dict(),
        }


# =============================================================================
# Photos
# =============================================================================

@dataclass(frozen=True)
class Author:
    """Post author as reported by the remote instance."""
    id: Optional[str] = None
    acct: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class Photo:
    """Canonical metadata for one remote post's image attachment."""
    status_id: str
    created_at: Optional[datetime]
    url: Optional[str]
    preview_url: Optional[str] = None
    author: Author = field(default_factory=Author)
    caption_html: Optional[str] = None
    post_url: Optional[str] = None
    tags: Tuple[str, ...] = ()
    fetched_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.status_id,
            "status_id": self.status_id,
            "created_at": format_timestamp(self.created_at),
            "author": {
                "id": self.author.id,
                "acct": self.author.acct,
                "username": self.author.username,
                "display_name": self.author.display_name,
                "avatar": self.author.avatar_url,
            },
            "author_display_name": self.author.display_name or self.author.username,
            "caption": self.caption_html,
            "post_url": self.post_url,
            "tags": list(self.tags),
            "url": self.url,
            "preview_url": self.preview_url or self.url,
            "fetched_at": format_timestamp(self.fetched_at),
        }


@dataclass(frozen=True)
class Favorite:
    """A stored photo the user bookmarked locally, with an optional note."""
    photo: Photo
    favorited_at: Optional[datetime]
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.photo.to_dict()
        data["favorited_at"] = format_timestamp(self.favorited_at)
        data["favorite_note"] = self.note
        return data


@dataclass
class Page(Generic[T]):
    """One page of a paged read."""
    items: List[T]
    total: int
    offset: int = 0
    limit: int = 0
