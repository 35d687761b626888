"""
Album Service Module

This module is the query-API boundary for virtual albums. It validates
request payloads, shapes albums and photos for output, and delegates to the
metadata store, the refresh scheduler and the query resolver.

Payload validation errors raise ValidationError, unknown albums raise
NotFoundError; callers turn them into responses with
``utils.exceptions.error_payload``.
"""

from typing import Any, Dict, List, Optional

from config import settings
from data.models import Album, build_query, query_to_dict
from data.protocols import AlbumStore
from services.album_scheduler import AlbumScheduler
from services.photo_fetcher import QueryResolver
from services.protocols import FetchOptions, MediaCache
from utils.exceptions import NotFoundError, ValidationError
from utils.helpers import clamp, parse_timestamp
from utils.logger import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def parse_users(users: Any) -> List[str]:
    """
    Flatten the accepted user shapes into one list.

    Accepts a flat list of handles/ids, a single string, or a mapping with
    ``accts``, ``ids`` and/or ``accountIds`` lists.
    """
    if not users:
        return []
    if isinstance(users, str):
        return [users]
    if isinstance(users, dict):
        values: List[Any] = []
        for key in ("accts", "ids", "accountIds"):
            values.extend(users.get(key) or [])
        return [str(v) for v in values if v is not None]
    return [str(v) for v in users if v is not None]


def _parse_interval(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("refresh.interval_ms must be a positive integer", {"interval_ms": value})
    if interval <= 0:
        raise ValidationError("refresh.interval_ms must be a positive integer", {"interval_ms": value})
    return interval


def _page_bounds(offset: Any, limit: Any, default_limit: int = 20):
    return clamp(offset, 0, 10_000_000, default=0), clamp(limit, 1, MAX_PAGE_SIZE, default=default_limit)


class AlbumService:
    """Album CRUD, manual refresh and ad hoc queries."""

    def __init__(self, store: AlbumStore, resolver: QueryResolver, scheduler: AlbumScheduler,
                 media_cache: Optional[MediaCache] = None,
                 default_interval_ms: Optional[int] = None):
        self.store = store
        self.resolver = resolver
        self.scheduler = scheduler
        self.media_cache = media_cache
        self.default_interval_ms = default_interval_ms or settings.DEFAULT_REFRESH_INTERVAL_MS

    # -------------------------------------------------------------------------
    # Output shaping
    # -------------------------------------------------------------------------

    def _album_out(self, album: Album) -> Dict[str, Any]:
        data = album.to_dict()
        data["stats"] = {"total": self.store.count_album_photos(album.id)}
        return data

    def _require_album(self, album_id: str) -> Album:
        album = self.store.get_album(album_id)
        if album is None:
            raise NotFoundError("album not found", {"album_id": album_id})
        return album

    @staticmethod
    def _build_query(query: Dict[str, Any]):
        if not isinstance(query, dict):
            raise ValidationError("query must be an object")
        return build_query(
            query.get("type"),
            tags=query.get("tags"),
            users=parse_users(query.get("users")),
            tagmode=query.get("tagmode") or "any",
            limit=query.get("limit"),
        )

    # -------------------------------------------------------------------------
    # Albums
    # -------------------------------------------------------------------------

    def create_album(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an album from a request payload.

        Args:
            payload: ``{"name", "query": {...}, "refresh"?: {"interval_ms"}, "enabled"?}``

        Returns:
            Dict[str, Any]: The stored album with ``stats.total``.

        Raises:
            ValidationError: If the name or query is invalid.
        """
        payload = payload or {}
        name = payload.get("name")
        if not name or not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")

        query = self._build_query(payload.get("query") or {})
        refresh = payload.get("refresh") or {}
        interval = refresh.get("interval_ms", refresh.get("intervalMs"))
        interval = self.default_interval_ms if interval is None else _parse_interval(interval)

        album = self.store.create_album(
            name.strip(),
            query,
            refresh={
                "interval_ms": interval,
                "last_checked_at": None,
                "backoff_until": None,
                "since_id": None,
                "max_id": None,
                "retry_count": 0,
                "last_error": None,
            },
            enabled=bool(payload.get("enabled", True)),
        )
        return self._album_out(album)

    def get_album(self, album_id: str) -> Dict[str, Any]:
        return self._album_out(self._require_album(album_id))

    def list_albums(self, offset: Any = 0, limit: Any = 20,
                    enabled: Optional[bool] = None) -> Dict[str, Any]:
        """List albums with per-album photo totals."""
        offset, limit = _page_bounds(offset, limit)
        page = self.store.list_albums(offset=offset, limit=limit, enabled=enabled)
        return {
            "items": [self._album_out(album) for album in page.items],
            "total": page.total,
            "offset": offset,
            "limit": limit,
        }

    def update_album(self, album_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update.

        Query fields not present in the payload keep their stored values and
        the merged query is revalidated. Refresh fields are shallow merged.

        Raises:
            NotFoundError: If the album does not exist.
            ValidationError: If the merged query is invalid.
        """
        payload = payload or {}
        current = self._require_album(album_id)

        name = payload.get("name")
        if name is not None:
            name = str(name).strip()
            if not name:
                raise ValidationError("name must not be empty")

        enabled = payload.get("enabled")
        enabled = None if enabled is None else bool(enabled)

        query = None
        if payload.get("query"):
            if not isinstance(payload["query"], dict):
                raise ValidationError("query must be an object")
            merged = query_to_dict(current.query)
            merged.update({k: v for k, v in payload["query"].items() if v is not None})
            query = self._build_query(merged)

        refresh = self._refresh_patch(payload.get("refresh"))

        album = self.store.update_album(album_id, name=name, query=query, enabled=enabled,
                                        refresh=refresh or None)
        logger.info(f"Updated album {album_id}")
        return self._album_out(album)

    @staticmethod
    def _refresh_patch(refresh: Any) -> Dict[str, Any]:
        if not refresh:
            return {}
        if not isinstance(refresh, dict):
            raise ValidationError("refresh must be an object")
        patch: Dict[str, Any] = {}
        interval = refresh.get("interval_ms", refresh.get("intervalMs"))
        if interval is not None:
            patch["interval_ms"] = _parse_interval(interval)
        for key in ("since_id", "max_id"):
            if refresh.get(key) is not None:
                patch[key] = str(refresh[key])
        for key in ("backoff_until", "last_checked_at"):
            if refresh.get(key) is not None:
                when = parse_timestamp(refresh[key])
                if when is None:
                    raise ValidationError(f"refresh.{key} must be an ISO-8601 timestamp", {key: refresh[key]})
                patch[key] = when
        return patch

    def set_enabled(self, album_id: str, enabled: Any) -> Dict[str, Any]:
        if enabled is None:
            raise ValidationError("enabled boolean required")
        self._require_album(album_id)
        album = self.store.update_album(album_id, enabled=bool(enabled))
        logger.info(f"Album {album_id} {'enabled' if album.enabled else 'disabled'}")
        return {"id": album.id, "enabled": album.enabled}

    def delete_album(self, album_id: str) -> None:
        if not self.store.delete_album(album_id):
            raise NotFoundError("album not found", {"album_id": album_id})

    # -------------------------------------------------------------------------
    # Photos
    # -------------------------------------------------------------------------

    def list_photos(self, album_id: str, offset: Any = 0, limit: Any = 20) -> Dict[str, Any]:
        """Page through an album's photos, most recently added first."""
        self._require_album(album_id)
        offset, limit = _page_bounds(offset, limit)
        page = self.store.list_album_photos(album_id, offset=offset, limit=limit)

        items = []
        for photo in page.items:
            item = photo.to_dict()
            if self.media_cache is not None:
                entry = self.media_cache.get_cached(photo.status_id)
                item["local_path"] = entry.get("path") if entry else None
            items.append(item)
        return {"items": items, "total": page.total, "offset": offset, "limit": limit}

    def refresh_album(self, album_id: str) -> Dict[str, Any]:
        """
        Refresh one album now.

        A rate limit is reported in the outcome's ``status``, not raised.

        Raises:
            NotFoundError: If the album does not exist.
        """
        album = self._require_album(album_id)
        outcome = self.scheduler.force_refresh(album_id)
        data = outcome.to_dict()
        data.update({"type": album.type, "tagmode": getattr(album.query, "tagmode", None)})
        return data

    def query_photos(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve an ad hoc query without storing anything.

        Args:
            payload: ``{"type", "tags"?, "users"?, "accts"?, "accountIds"?,
                "tagmode"?, "limit"?}``

        Returns:
            Dict[str, Any]: ``{"photos": [...], "errors": [...]}``; errors lists
            the targets that failed when others succeeded.
        """
        payload = payload or {}
        users = parse_users(payload.get("users"))
        users.extend(parse_users(payload.get("accountIds")))
        users.extend(parse_users(payload.get("accts")))

        query = build_query(
            payload.get("type"),
            tags=payload.get("tags"),
            users=users,
            tagmode=payload.get("tagmode") or "any",
            limit=payload.get("limit"),
            require_both=False,
        )
        result = self.resolver.resolve(query, FetchOptions(limit=query.limit))
        return {
            "photos": [p.to_dict() for p in result.photos],
            "errors": [e.to_dict() for e in result.errors],
        }

    def sweep(self) -> Dict[str, Any]:
        """Delete photos that no album references and nobody favorited."""
        return {"deleted": self.store.remove_unreferenced_photos()}

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    def add_favorite(self, status_id: Any, note: Optional[str] = None) -> Dict[str, Any]:
        """
        Favorite a stored photo.

        Raises:
            ValidationError: If no status id is given.
            NotFoundError: If the photo is not stored locally.
        """
        sid = str(status_id or "").strip()
        if not sid:
            raise ValidationError("status_id is required")
        favorite = self.store.add_favorite(sid, note=note)
        logger.info(f"Favorited photo {sid}")
        return favorite.to_dict()

    def remove_favorite(self, status_id: Any) -> Dict[str, Any]:
        sid = str(status_id or "").strip()
        if not self.store.remove_favorite(sid):
            raise NotFoundError("favorite not found", {"status_id": sid})
        return {"removed": sid}

    def is_favorite(self, status_id: Any) -> Dict[str, Any]:
        sid = str(status_id or "").strip()
        return {"status_id": sid, "favorited": self.store.is_favorite(sid)}

    def list_favorites(self, offset: Any = 0, limit: Any = 20) -> Dict[str, Any]:
        offset, limit = _page_bounds(offset, limit)
        page = self.store.list_favorites(offset=offset, limit=limit)
        return {
            "items": [favorite.to_dict() for favorite in page.items],
            "total": page.total,
            "offset": offset,
            "limit": limit,
        }

    # -------------------------------------------------------------------------
    # Runtime settings and status
    # -------------------------------------------------------------------------

    def get_settings(self) -> Dict[str, Any]:
        """Stored runtime settings plus the interval the scheduler will use."""
        return {
            "settings": self.store.list_settings(),
            "effective_interval_ms": self.scheduler.default_interval(),
        }

    def set_sync_interval(self, interval_ms: Any) -> Dict[str, Any]:
        """Store the default refresh interval for albums saved without one."""
        interval = _parse_interval(interval_ms)
        if interval > settings.MAX_REFRESH_INTERVAL_MS:
            raise ValidationError("refresh.interval_ms is too large",
                                  {"interval_ms": interval, "max": settings.MAX_REFRESH_INTERVAL_MS})
        self.store.set_setting(settings.SYNC_INTERVAL_SETTING, interval)
        logger.info(f"Default sync interval set to {interval} ms")
        return self.get_settings()

    def scheduler_status(self) -> Dict[str, Any]:
        """
        Scheduler status for this process and the snapshot the last run recorded.

        A CLI process that is not running the scheduler reports
        ``running: False`` in ``current``; ``last_recorded`` carries the
        counters saved by whichever process ran it last.
        """
        return {
            "current": self.scheduler.status(),
            "last_recorded": self.scheduler.last_recorded_status(),
        }
