"""
Service Protocol Definitions

This module defines typing.Protocol interfaces for services used in the Album Sync
application. These protocols enable loose coupling, dependency injection, and easier testing.

Protocols defined:
- TokenProvider: Interface for obtaining a bearer token for the remote instance
- TimelineClient: Interface for fetching tag timelines and account statuses
- MediaCache: Interface for the optional binary media cache
"""

from typing import Protocol, Optional, List, Dict, Any, Callable, Sequence
from dataclasses import dataclass, field

from data.models import Photo


@dataclass
class FetchOptions:
    """Options passed to the query resolver for one resolve call."""
    limit: Optional[int] = None
    tagmode: Optional[str] = None     # falls back to the query's own tagmode
    since_id: Optional[str] = None


@dataclass
class TargetError:
    """Failure of one tag or account sub-fetch inside a multi-target resolve."""
    target: str
    code: str
    message: str
    error: Optional[Exception] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "code": self.code, "message": self.message}


@dataclass
class ResolveResult:
    """Photos matched by a resolve plus any per-target failures.

    ``candidates`` counts the deduplicated photos seen before local filtering.
    """
    photos: List[Photo] = field(default_factory=list)
    errors: List[TargetError] = field(default_factory=list)
    candidates: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.errors)


class TokenProvider(Protocol):
    """Protocol defining the interface for access token providers.

    Token refresh and the OAuth flow itself are the provider's concern.
    """

    def get_access_token(self) -> str:
        """Return a valid bearer token.

        Raises:
            AuthenticationError: If no token is available.
        """
        ...


class TimelineClient(Protocol):
    """Protocol defining the interface for the remote timeline client.

    Implementations should provide methods for:
    - Fetching a page of a hashtag timeline as photos
    - Fetching a page of an account's statuses
    - Resolving account handles to numeric ids
    """

    def fetch_tag_page(self, tag: str, limit: int = 20, since_id: Optional[str] = None,
                       max_id: Optional[str] = None) -> List[Photo]:
        """Fetch one page of a tag timeline.

        Args:
            tag: Hashtag without the leading ``#``.
            limit: Page size requested from the remote instance.
            since_id: Only return posts newer than this id.
            max_id: Only return posts older than this id.

        Returns:
            Photos for the image attachments on the page; empty on a non-429 4xx.
        """
        ...

    def fetch_user_page(self, account_id: str, limit: int = 20,
                        since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch one page of an account's statuses as raw remote posts."""
        ...

    def resolve_account_id(self, acct: str) -> str:
        """Resolve a handle such as ``name@host`` to a numeric account id."""
        ...


class MediaCache(Protocol):
    """Protocol defining the interface for the binary media cache.

    The refresh pipeline never depends on it; consumers read ``preview_url``
    and ``url`` directly when no cache is configured.
    """

    def ensure_cached(self, photo: Photo) -> Dict[str, Any]:
        """Make sure media for ``photo`` is cached and return its entry."""
        ...

    def get_cached(self, status_id: str) -> Optional[Dict[str, Any]]:
        """Return the cache entry for a photo, or None."""
        ...

    def evict(self, policy: Callable[[Dict[str, Any]], bool]) -> int:
        """Drop every entry for which ``policy`` returns True; return the count."""
        ...

    def clear(self) -> None:
        """Drop every entry."""
        ...

    def stats(self) -> Dict[str, Any]:
        """Return entry count and total size."""
        ...


def target_error_from(target: str, error: Exception) -> TargetError:
    """Build a TargetError from an exception raised by one sub-fetch."""
    code = getattr(error, "code", "internal_error")
    message = getattr(error, "message", "") or str(error) or error.__class__.__name__
    return TargetError(target=target, code=code, message=message, error=error)


def summarize_errors(errors: Sequence[TargetError]) -> str:
    """Render target errors as one line for ``last_error``."""
    return "; ".join(f"{e.target}: {e.code}: {e.message}" for e in errors)
