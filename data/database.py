"""
Database Module for Album Sync Application

This module handles the embedded SQLite metadata store: albums with their
saved queries and refresh state, canonical photo records, album
membership, local favorites and a small key/value settings table. All
mutations run inside short transactions guarded by a process-level lock so
the scheduler thread and request handlers can share one store.
"""

import json
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from config import settings
from data.models import (
    Album, AlbumQuery, Author, CompoundQuery, Favorite, Page, Photo, RefreshState, TagQuery, UserQuery,
    query_to_dict, serialize_refresh_patch,
)
from data.protocols import RefreshCommit
from utils.exceptions import DatabaseError, NotFoundError, QueryError
from utils.helpers import format_timestamp, normalize_tags, parse_timestamp, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS albums (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    enabled       INTEGER NOT NULL DEFAULT 1,
    query_type    TEXT NOT NULL CHECK (query_type IN ('tag', 'user', 'compound')),
    query_tags    TEXT,
    query_users   TEXT,
    query_tagmode TEXT NOT NULL DEFAULT 'any' CHECK (query_tagmode IN ('any', 'all')),
    query_limit   INTEGER NOT NULL DEFAULT 20,
    refresh_json  TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS photos (
    status_id        TEXT PRIMARY KEY,
    created_at       TEXT,
    author_id        TEXT,
    author_acct      TEXT,
    author_username  TEXT,
    author_display   TEXT,
    author_avatar    TEXT,
    caption_html     TEXT,
    post_url         TEXT,
    tags_json        TEXT,
    url              TEXT,
    preview_url      TEXT,
    fetched_at       TEXT
);

CREATE TABLE IF NOT EXISTS album_items (
    album_id   TEXT NOT NULL,
    status_id  TEXT NOT NULL,
    added_at   TEXT NOT NULL,
    PRIMARY KEY (album_id, status_id),
    FOREIGN KEY (album_id) REFERENCES albums(id) ON DELETE CASCADE,
    FOREIGN KEY (status_id) REFERENCES photos(status_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS favorites (
    status_id     TEXT PRIMARY KEY,
    favorited_at  TEXT NOT NULL,
    note          TEXT,
    FOREIGN KEY (status_id) REFERENCES photos(status_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS kv (
    k  TEXT PRIMARY KEY,
    v  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_album_items_added
    ON album_items(album_id, added_at);
CREATE INDEX IF NOT EXISTS idx_album_items_status
    ON album_items(status_id);
CREATE INDEX IF NOT EXISTS idx_albums_enabled
    ON albums(enabled, created_at);
CREATE INDEX IF NOT EXISTS idx_favorites_time
    ON favorites(favorited_at);
"""

_UPSERT_PHOTO = """
INSERT INTO photos (
    status_id, created_at, author_id, author_acct, author_username, author_display,
    author_avatar, caption_html, post_url, tags_json, url, preview_url, fetched_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(status_id) DO UPDATE SET
    created_at      = excluded.created_at,
    author_id       = excluded.author_id,
    author_acct     = excluded.author_acct,
    author_username = excluded.author_username,
    author_display  = excluded.author_display,
    author_avatar   = excluded.author_avatar,
    caption_html    = excluded.caption_html,
    post_url        = excluded.post_url,
    tags_json       = excluded.tags_json,
    url             = excluded.url,
    preview_url     = excluded.preview_url,
    fetched_at      = excluded.fetched_at
"""


def _new_album_id() -> str:
    return f"alb_{uuid.uuid4()}"


def _dump_list(values: Sequence[str]) -> Optional[str]:
    return json.dumps(list(values)) if values else None


def _load_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def _load_dict(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _query_from_row(row: sqlite3.Row) -> AlbumQuery:
    tags = tuple(_load_list(row["query_tags"]))
    users = tuple(_load_list(row["query_users"]))
    tagmode = row["query_tagmode"] or "any"
    limit = int(row["query_limit"])
    if row["query_type"] == "user":
        return UserQuery(users=users, limit=limit)
    if row["query_type"] == "compound":
        return CompoundQuery(tags=tags, users=users, tagmode=tagmode, limit=limit)
    return TagQuery(tags=tags, tagmode=tagmode, limit=limit)


def _row_to_album(row: sqlite3.Row) -> Album:
    return Album(
        id=row["id"],
        name=row["name"],
        query=_query_from_row(row),
        refresh=RefreshState.from_dict(_load_dict(row["refresh_json"])),
        enabled=bool(int(row["enabled"])),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_photo(row: sqlite3.Row) -> Photo:
    return Photo(
        status_id=row["status_id"],
        created_at=parse_timestamp(row["created_at"]),
        url=row["url"],
        preview_url=row["preview_url"] or row["url"],
        author=Author(
            id=row["author_id"],
            acct=row["author_acct"],
            username=row["author_username"],
            display_name=row["author_display"],
            avatar_url=row["author_avatar"],
        ),
        caption_html=row["caption_html"],
        post_url=row["post_url"],
        tags=tuple(_load_list(row["tags_json"])),
        fetched_at=parse_timestamp(row["fetched_at"]),
    )


_SELECT_FAVORITE = """
SELECT p.*, f.favorited_at AS favorited_at, f.note AS favorite_note
FROM favorites f JOIN photos p ON p.status_id = f.status_id
"""


def _row_to_favorite(row: sqlite3.Row) -> Favorite:
    return Favorite(
        photo=_row_to_photo(row),
        favorited_at=parse_timestamp(row["favorited_at"]),
        note=row["favorite_note"],
    )


def _decode_setting(key: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Setting {key} is not valid JSON; returning raw text")
        return raw


class MetadataStore:
    """SQLite-backed store for albums, photos, membership, favorites and settings."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the store without opening the database yet.

        Args:
            db_path: Database file path, ``":memory:"`` for a private
                in-memory database, or None for ``settings.ALBUMS_DB_PATH``.
        """
        self.db_path = db_path or settings.ALBUMS_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """
        Open the database (once) and make sure the schema exists.

        Returns:
            sqlite3.Connection: The shared connection.

        Raises:
            DatabaseError: If the database cannot be opened or initialized.
        """
        with self._lock:
            if self.conn is not None:
                return self.conn
            try:
                if self.db_path != ":memory:":
                    db_dir = os.path.dirname(os.path.abspath(self.db_path))
                    os.makedirs(db_dir, exist_ok=True)
                conn = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    timeout=settings.DB_BUSY_TIMEOUT_MS / 1000,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
                conn.execute(f"PRAGMA busy_timeout = {int(settings.DB_BUSY_TIMEOUT_MS)}")
                conn.execute("PRAGMA foreign_keys = ON")
                conn.executescript(SCHEMA)
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Failed to open album database at {self.db_path}: {e}")
                raise DatabaseError(f"Failed to open album database: {e}") from e
            self.conn = conn
            logger.info(f"Connected to album database at {self.db_path}")
            return conn

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.info("Album database connection closed")

    def __enter__(self) -> "MetadataStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.connect()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                logger.error(f"Database transaction failed: {e}")
                raise QueryError(str(e)) from e

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.connect()
            try:
                yield conn
            except sqlite3.Error as e:
                logger.error(f"Database read failed: {e}")
                raise QueryError(str(e)) from e

    # -------------------------------------------------------------------------
    # Albums
    # -------------------------------------------------------------------------

    def create_album(self, name: str, query: AlbumQuery,
                     refresh: Optional[Dict[str, Any]] = None,
                     enabled: bool = True, album_id: Optional[str] = None) -> Album:
        """
        Insert a new album.

        Args:
            name: Display name.
            query: Validated album query.
            refresh: Initial refresh state (e.g. ``{"interval_ms": 600000}``).
            enabled: Whether the scheduler should refresh it.
            album_id: Optional caller-assigned id; generated when omitted.

        Returns:
            Album: The stored album.
        """
        new_id = album_id or _new_album_id()
        now = format_timestamp(utc_now())
        q = query_to_dict(query)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO albums (
                    id, name, created_at, updated_at, enabled, query_type, query_tags,
                    query_users, query_tagmode, query_limit, refresh_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id, name, now, now, 1 if enabled else 0,
                    q["type"], _dump_list(q["tags"]), _dump_list(q["users"]),
                    q["tagmode"], q["limit"],
                    json.dumps(serialize_refresh_patch(refresh or {})),
                ),
            )
            row = conn.execute("SELECT * FROM albums WHERE id = ?", (new_id,)).fetchone()
        logger.info(f"Created album {new_id} \"{name}\" ({q['type']})")
        return _row_to_album(row)

    def get_album(self, album_id: str) -> Optional[Album]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM albums WHERE id = ? LIMIT 1", (album_id,)).fetchone()
        return _row_to_album(row) if row else None

    def list_albums(self, offset: int = 0, limit: int = 50,
                    enabled: Optional[bool] = None) -> Page[Album]:
        """
        List albums in creation order.

        Args:
            offset: Rows to skip.
            limit: Maximum rows to return.
            enabled: Filter by enabled flag, or None for all albums.

        Returns:
            Page[Album]: Albums plus the total matching count.
        """
        where = ""
        params: List[Any] = []
        if enabled is not None:
            where = "WHERE enabled = ?"
            params.append(1 if enabled else 0)
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM albums {where} ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?",
                (*params, int(limit), int(offset)),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS c FROM albums {where}", params).fetchone()["c"]
        return Page(items=[_row_to_album(r) for r in rows], total=int(total),
                    offset=int(offset), limit=int(limit))

    def update_album(self, album_id: str, name: Optional[str] = None,
                     query: Optional[AlbumQuery] = None, enabled: Optional[bool] = None,
                     refresh: Optional[Dict[str, Any]] = None) -> Album:
        """
        Apply a partial update to an album.

        The refresh patch is shallow-merged onto the stored refresh state;
        keys not present in the patch keep their stored values.

        Raises:
            NotFoundError: If the album does not exist.
        """
        with self._transaction() as conn:
            self._apply_album_update(conn, album_id, name, query, enabled, refresh)
            row = conn.execute("SELECT * FROM albums WHERE id = ?", (album_id,)).fetchone()
        return _row_to_album(row)

    def delete_album(self, album_id: str) -> bool:
        """Delete one album; membership rows cascade."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM albums WHERE id = ?", (album_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info(f"Deleted album {album_id}")
        return deleted

    def _apply_album_update(self, conn: sqlite3.Connection, album_id: str,
                            name: Optional[str], query: Optional[AlbumQuery],
                            enabled: Optional[bool], refresh: Optional[Dict[str, Any]]) -> None:
        current = conn.execute("SELECT * FROM albums WHERE id = ?", (album_id,)).fetchone()
        if not current:
            raise NotFoundError("album not found", {"album_id": album_id})

        merged_refresh = _load_dict(current["refresh_json"])
        merged_refresh.update(serialize_refresh_patch(refresh or {}))

        if query is not None:
            q = query_to_dict(query)
            query_cols = (q["type"], _dump_list(q["tags"]), _dump_list(q["users"]), q["tagmode"], q["limit"])
        else:
            query_cols = (current["query_type"], current["query_tags"], current["query_users"],
                          current["query_tagmode"], current["query_limit"])

        conn.execute(
            """
            UPDATE albums SET
                name = ?, updated_at = ?, enabled = ?,
                query_type = ?, query_tags = ?, query_users = ?,
                query_tagmode = ?, query_limit = ?, refresh_json = ?
            WHERE id = ?
            """,
            (
                name if name is not None else current["name"],
                format_timestamp(utc_now()),
                (1 if enabled else 0) if enabled is not None else current["enabled"],
                *query_cols,
                json.dumps(merged_refresh),
                album_id,
            ),
        )

    # -------------------------------------------------------------------------
    # Photos and membership
    # -------------------------------------------------------------------------

    def upsert_photos(self, photos: Sequence[Photo]) -> List[str]:
        """
        Insert or replace photos keyed by status id.

        Tags are normalized (``#`` stripped, lowercased, de-duplicated) before
        storing; records without a status id are skipped.

        Returns:
            List[str]: Unique status ids written, in input order.
        """
        if not photos:
            return []
        with self._transaction() as conn:
            return self._upsert_rows(conn, photos, utc_now())

    def link_album_photos(self, album_id: str, status_ids: Sequence[str]) -> int:
        """
        Link photos to an album, ignoring edges that already exist.

        Returns:
            int: Number of newly inserted membership edges.

        Raises:
            NotFoundError: If the album does not exist.
        """
        ids = [sid for sid in dict.fromkeys(status_ids or []) if sid]
        with self._transaction() as conn:
            self._require_album(conn, album_id)
            return self._link_rows(conn, album_id, ids, utc_now())

    def commit_refresh(self, album_id: str, photos: Sequence[Photo],
                       refresh: Dict[str, Any]) -> RefreshCommit:
        """
        Persist one refresh atomically: upsert photos, link them, merge refresh state.

        Either every step applies or none does, so a failed refresh never
        advances the watermark without the photos it covers.
        """
        now = utc_now()
        with self._transaction() as conn:
            self._require_album(conn, album_id)
            upserted = self._upsert_rows(conn, photos or [], now)
            linked = self._link_rows(conn, album_id, upserted, now)
            self._apply_album_update(conn, album_id, None, None, None, refresh)
        return RefreshCommit(upserted_ids=upserted, linked=linked)

    def list_album_photos(self, album_id: str, offset: int = 0, limit: int = 20) -> Page[Photo]:
        """Return one page of an album's photos, most recently added first."""
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM album_items ai
                JOIN photos p ON p.status_id = ai.status_id
                WHERE ai.album_id = ?
                ORDER BY ai.added_at DESC, p.created_at DESC, ai.status_id DESC
                LIMIT ? OFFSET ?
                """,
                (album_id, int(limit), int(offset)),
            ).fetchall()
            total = self._count_items(conn, album_id)
        return Page(items=[_row_to_photo(r) for r in rows], total=total,
                    offset=int(offset), limit=int(limit))

    def count_album_photos(self, album_id: str) -> int:
        with self._reader() as conn:
            return self._count_items(conn, album_id)

    def get_photos(self, status_ids: Sequence[str]) -> List[Photo]:
        """Fetch stored photos by status id; unknown ids are ignored."""
        ids = [sid for sid in dict.fromkeys(status_ids or []) if sid]
        if not ids:
            return []
        placeholders = ",".join(["?"] * len(ids))
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM photos WHERE status_id IN ({placeholders})", ids
            ).fetchall()
        by_id = {r["status_id"]: _row_to_photo(r) for r in rows}
        return [by_id[sid] for sid in ids if sid in by_id]

    def remove_unreferenced_photos(self) -> int:
        """Maintenance sweep: delete photos that belong to no album and are not favorited."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM photos WHERE status_id IN (
                    SELECT p.status_id FROM photos p
                    LEFT JOIN album_items ai ON ai.status_id = p.status_id
                    LEFT JOIN favorites f ON f.status_id = p.status_id
                    WHERE ai.status_id IS NULL AND f.status_id IS NULL
                )
                """
            )
            deleted = cur.rowcount
        logger.info(f"Removed {deleted} unreferenced photos")
        return deleted

    # -------------------------------------------------------------------------
    # Favorites
    # -------------------------------------------------------------------------

    def add_favorite(self, status_id: str, note: Optional[str] = None) -> Favorite:
        """
        Favorite a stored photo. Adding again refreshes the timestamp and
        keeps the previous note unless a new one is given.

        Raises:
            NotFoundError: If the photo is not in the store.
        """
        sid = str(status_id or "").strip()
        with self._transaction() as conn:
            if not conn.execute("SELECT 1 FROM photos WHERE status_id = ? LIMIT 1", (sid,)).fetchone():
                raise NotFoundError("photo not found", {"status_id": sid})
            conn.execute(
                """
                INSERT INTO favorites (status_id, favorited_at, note) VALUES (?, ?, ?)
                ON CONFLICT(status_id) DO UPDATE SET
                    favorited_at = excluded.favorited_at,
                    note         = COALESCE(excluded.note, favorites.note)
                """,
                (sid, format_timestamp(utc_now()), note),
            )
            row = conn.execute(_SELECT_FAVORITE + " WHERE f.status_id = ?", (sid,)).fetchone()
        return _row_to_favorite(row)

    def remove_favorite(self, status_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM favorites WHERE status_id = ?", (str(status_id),))
            return cur.rowcount > 0

    def is_favorite(self, status_id: str) -> bool:
        with self._reader() as conn:
            row = conn.execute("SELECT 1 FROM favorites WHERE status_id = ? LIMIT 1",
                               (str(status_id),)).fetchone()
        return row is not None

    def list_favorites(self, offset: int = 0, limit: int = 20) -> Page[Favorite]:
        """Return one page of favorites, most recently favorited first."""
        with self._reader() as conn:
            rows = conn.execute(
                _SELECT_FAVORITE + " ORDER BY f.favorited_at DESC, f.status_id DESC LIMIT ? OFFSET ?",
                (int(limit), int(offset)),
            ).fetchall()
            total = conn.execute("SELECT COUNT(*) AS c FROM favorites").fetchone()["c"]
        return Page(items=[_row_to_favorite(r) for r in rows], total=int(total),
                    offset=int(offset), limit=int(limit))

    # -------------------------------------------------------------------------
    # Key/value settings
    # -------------------------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return a stored setting decoded from JSON, or ``default``."""
        with self._reader() as conn:
            row = conn.execute("SELECT v FROM kv WHERE k = ?", (key,)).fetchone()
        return default if row is None else _decode_setting(key, row["v"])

    def set_setting(self, key: str, value: Any) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO kv (k, v) VALUES (?, ?) ON CONFLICT(k) DO UPDATE SET v = excluded.v",
                (key, json.dumps(value)),
            )

    def list_settings(self) -> Dict[str, Any]:
        with self._reader() as conn:
            rows = conn.execute("SELECT k, v FROM kv ORDER BY k").fetchall()
        return {row["k"]: _decode_setting(row["k"], row["v"]) for row in rows}

    # -------------------------------------------------------------------------
    # Row helpers (caller holds the transaction)
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_album(conn: sqlite3.Connection, album_id: str) -> None:
        row = conn.execute("SELECT 1 FROM albums WHERE id = ? LIMIT 1", (album_id,)).fetchone()
        if not row:
            raise NotFoundError("album not found", {"album_id": album_id})

    @staticmethod
    def _count_items(conn: sqlite3.Connection, album_id: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS c FROM album_items WHERE album_id = ?", (album_id,)).fetchone()
        return int(row["c"])

    @staticmethod
    def _upsert_rows(conn: sqlite3.Connection, photos: Sequence[Photo], now: datetime) -> List[str]:
        fetched_at = format_timestamp(now)
        written: Dict[str, None] = {}
        for photo in photos:
            sid = str(photo.status_id or "").strip() if photo is not None else ""
            if not sid:
                continue
            tags = normalize_tags(photo.tags)
            conn.execute(
                _UPSERT_PHOTO,
                (
                    sid,
                    format_timestamp(photo.created_at),
                    photo.author.id,
                    photo.author.acct,
                    photo.author.username,
                    photo.author.display_name,
                    photo.author.avatar_url,
                    photo.caption_html,
                    photo.post_url,
                    json.dumps(tags) if tags else None,
                    photo.url,
                    photo.preview_url or photo.url,
                    fetched_at,
                ),
            )
            written.setdefault(sid, None)
        return list(written)

    @staticmethod
    def _link_rows(conn: sqlite3.Connection, album_id: str, status_ids: Sequence[str],
                   now: datetime) -> int:
        added_at = format_timestamp(now)
        inserted = 0
        for sid in status_ids:
            cur = conn.execute(
                "INSERT OR IGNORE INTO album_items (album_id, status_id, added_at) VALUES (?, ?, ?)",
                (album_id, sid, added_at),
            )
            if cur.rowcount > 0:
                inserted += 1
        return inserted
