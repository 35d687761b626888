"""
Data Layer Protocol Definitions

This module defines typing.Protocol interfaces for data layer operations.
These protocols enable dependency injection for the metadata store,
making the scheduler and services testable without a real database.

Protocols defined:
- AlbumStore: Interface for album, photo, membership, favorite and
  settings persistence
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from data.models import Album, AlbumQuery, Favorite, Page, Photo


@dataclass
class RefreshCommit:
    """Result of persisting one album refresh in a single transaction."""
    upserted_ids: List[str] = field(default_factory=list)
    linked: int = 0


class AlbumStore(Protocol):
    """Protocol defining the interface for the metadata store.

    Implementations must be safe to call concurrently from the scheduler
    thread and request handlers, and must apply each mutation atomically.
    """

    def create_album(self, name: str, query: AlbumQuery,
                     refresh: Optional[Dict[str, Any]] = None,
                     enabled: bool = True, album_id: Optional[str] = None) -> Album:
        """Insert a new album and return it."""
        ...

    def get_album(self, album_id: str) -> Optional[Album]:
        """Return one album, or None if it does not exist."""
        ...

    def list_albums(self, offset: int = 0, limit: int = 50,
                    enabled: Optional[bool] = None) -> Page[Album]:
        """Return a page of albums, optionally filtered by enabled flag."""
        ...

    def update_album(self, album_id: str, name: Optional[str] = None,
                     query: Optional[AlbumQuery] = None, enabled: Optional[bool] = None,
                     refresh: Optional[Dict[str, Any]] = None) -> Album:
        """Apply a partial update; ``refresh`` is shallow-merged onto the stored state."""
        ...

    def delete_album(self, album_id: str) -> bool:
        """Delete an album and its membership rows."""
        ...

    def upsert_photos(self, photos: Sequence[Photo]) -> List[str]:
        """Insert or replace photos keyed by status id; return the stored ids."""
        ...

    def link_album_photos(self, album_id: str, status_ids: Sequence[str]) -> int:
        """Insert-or-ignore membership edges; return the count of new edges."""
        ...

    def list_album_photos(self, album_id: str, offset: int = 0, limit: int = 20) -> Page[Photo]:
        """Return an album's photos, most recently added first."""
        ...

    def count_album_photos(self, album_id: str) -> int:
        """Return the number of photos linked to an album."""
        ...

    def commit_refresh(self, album_id: str, photos: Sequence[Photo],
                       refresh: Dict[str, Any]) -> RefreshCommit:
        """Upsert, link and merge refresh state in one transaction."""
        ...

    def remove_unreferenced_photos(self) -> int:
        """Delete photos without album membership or a favorite; return the count."""
        ...

    def add_favorite(self, status_id: str, note: Optional[str] = None) -> Favorite:
        """Favorite a stored photo; raises NotFoundError for unknown photos."""
        ...

    def remove_favorite(self, status_id: str) -> bool:
        ...

    def is_favorite(self, status_id: str) -> bool:
        ...

    def list_favorites(self, offset: int = 0, limit: int = 20) -> Page[Favorite]:
        """Return favorites, most recently favorited first."""
        ...

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return a JSON-decoded setting, or ``default`` when unset."""
        ...

    def set_setting(self, key: str, value: Any) -> None:
        ...

    def list_settings(self) -> Dict[str, Any]:
        ...
