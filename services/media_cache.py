"""
In-memory media cache.

Keeps media for photos keyed by status id. Eviction is driven entirely by
the caller-supplied policy; nothing in the refresh path depends on the cache.
"""

import threading
from typing import Any, Callable, Dict, Optional

from data.models import Photo
from utils.helpers import format_timestamp, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryMediaCache:
    """Media cache holding entries (and optionally bytes) in process memory."""

    def __init__(self, loader: Optional[Callable[[str], bytes]] = None):
        """
        Args:
            loader: Downloads the bytes for a media URL. When omitted only the
                entry metadata is recorded.
        """
        self.loader = loader
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def ensure_cached(self, photo: Photo) -> Dict[str, Any]:
        """
        Cache media for ``photo`` unless it is already present.

        Returns:
            Dict[str, Any]: The cache entry (without the raw bytes).
        """
        now = format_timestamp(utc_now())
        with self._lock:
            entry = self._entries.get(photo.status_id)
            if entry is not None:
                entry["last_access"] = now
                return self._public(entry)

        url = photo.preview_url or photo.url
        content = self.loader(url) if (self.loader and url) else b""
        entry = {
            "status_id": photo.status_id,
            "url": url,
            "path": f"memory://{photo.status_id}",
            "size": len(content),
            "cached_at": now,
            "last_access": now,
            "content": content,
        }
        with self._lock:
            entry = self._entries.setdefault(photo.status_id, entry)
        logger.debug(f"Cached media for {photo.status_id} ({entry['size']} bytes)")
        return self._public(entry)

    def get_cached(self, status_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(status_id)
            return self._public(entry) if entry else None

    def get_content(self, status_id: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(status_id)
            return entry["content"] if entry else None

    def evict(self, policy: Callable[[Dict[str, Any]], bool]) -> int:
        """Remove every entry the policy selects; returns how many were removed."""
        with self._lock:
            doomed = [sid for sid, entry in self._entries.items() if policy(self._public(entry))]
            for sid in doomed:
                del self._entries[sid]
        if doomed:
            logger.info(f"Evicted {len(doomed)} cached media entries")
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "bytes": sum(e["size"] for e in self._entries.values()),
            }

    @staticmethod
    def _public(entry: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in entry.items() if k != "content"}
