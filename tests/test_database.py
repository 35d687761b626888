"""
Tests for the Metadata Store

Tests cover album CRUD, idempotent photo upsert, idempotent membership
linking, paged reads, refresh-state merging, atomic refresh commits, the
unreferenced-photo sweep, favorites and key/value settings. Every test runs
against an in-memory SQLite database.
"""

import pytest
from datetime import timedelta
from unittest.mock import patch
import sqlite3
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from data.database import MetadataStore
from data.models import TagQuery, UserQuery, CompoundQuery
from utils.exceptions import NotFoundError, QueryError, DatabaseError
from conftest import BASE_TIME


# =============================================================================
# Connection Tests
# =============================================================================

class TestConnection:
    """Tests for connection management."""

    def test_creates_file_database(self, tmp_path):
        db_file = tmp_path / "nested" / "albums.db"
        with MetadataStore(str(db_file)) as store:
            store.create_album("A", TagQuery(tags=("a",)))
        assert db_file.exists()

    def test_connect_is_reused(self, store):
        assert store.connect() is store.connect()

    def test_close_is_idempotent(self):
        store = MetadataStore(":memory:")
        store.connect()
        store.close()
        store.close()
        assert store.conn is None

    def test_connect_failure_raises_database_error(self):
        with patch('data.database.sqlite3.connect', side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(DatabaseError):
                MetadataStore(":memory:").connect()


# =============================================================================
# Album Tests
# =============================================================================

class TestAlbums:
    """Tests for album CRUD."""

    def test_create_and_get(self, store):
        album = store.create_album(
            "Italy", TagQuery(tags=("italy", "travel"), tagmode="all", limit=12),
            refresh={"interval_ms": 600000},
        )
        assert album.id.startswith("alb_")

        loaded = store.get_album(album.id)
        assert loaded.name == "Italy"
        assert loaded.query == TagQuery(tags=("italy", "travel"), tagmode="all", limit=12)
        assert loaded.refresh.interval_ms == 600000
        assert loaded.enabled is True
        assert loaded.created_at is not None

    def test_caller_assigned_id(self, store):
        album = store.create_album("Mine", UserQuery(users=("alice",)), album_id="my-album")
        assert album.id == "my-album"

    def test_compound_query_round_trip(self, store):
        query = CompoundQuery(tags=("sunset",), users=("alice@pixelfed.social", "42"), tagmode="any", limit=30)
        album = store.create_album("Sunsets", query)
        assert store.get_album(album.id).query == query

    def test_get_missing_returns_none(self, store):
        assert store.get_album("nope") is None

    def test_list_with_enabled_filter(self, store):
        store.create_album("On", TagQuery(tags=("a",)))
        store.create_album("Off", TagQuery(tags=("b",)), enabled=False)

        assert store.list_albums().total == 2
        enabled = store.list_albums(enabled=True)
        assert [a.name for a in enabled.items] == ["On"]
        assert enabled.total == 1
        assert [a.name for a in store.list_albums(enabled=False).items] == ["Off"]

    def test_list_paging(self, store):
        for i in range(5):
            store.create_album(f"Album {i}", TagQuery(tags=(f"t{i}",)))
        page = store.list_albums(offset=2, limit=2)
        assert page.total == 5
        assert len(page.items) == 2

    def test_update_merges_refresh_state(self, store):
        """A refresh patch is merged onto the stored state, not replacing it."""
        album = store.create_album("A", TagQuery(tags=("a",)),
                                   refresh={"interval_ms": 600000, "since_id": "10"})

        updated = store.update_album(album.id, refresh={"last_error": "boom"})

        assert updated.refresh.interval_ms == 600000
        assert updated.refresh.since_id == "10"
        assert updated.refresh.last_error == "boom"

    def test_update_can_clear_refresh_fields(self, store):
        album = store.create_album("A", TagQuery(tags=("a",)),
                                   refresh={"backoff_until": BASE_TIME, "retry_count": 3})
        updated = store.update_album(album.id, refresh={"backoff_until": None, "retry_count": 0})
        assert updated.refresh.backoff_until is None
        assert updated.refresh.retry_count == 0

    def test_update_name_query_enabled(self, store):
        album = store.create_album("A", TagQuery(tags=("a",)))
        updated = store.update_album(album.id, name="B", query=UserQuery(users=("bob",)), enabled=False)
        assert updated.name == "B"
        assert updated.query == UserQuery(users=("bob",))
        assert updated.enabled is False

    def test_update_missing_album(self, store):
        with pytest.raises(NotFoundError):
            store.update_album("nope", name="x")

    def test_delete_cascades_membership(self, store, photo_factory):
        album = store.create_album("A", TagQuery(tags=("a",)))
        ids = store.upsert_photos([photo_factory("1"), photo_factory("2")])
        store.link_album_photos(album.id, ids)

        assert store.delete_album(album.id) is True
        assert store.count_album_photos(album.id) == 0
        assert store.delete_album(album.id) is False


# =============================================================================
# Photo Tests
# =============================================================================

class TestPhotos:
    """Tests for photo upsert and reads."""

    def test_upsert_is_idempotent(self, store, photo_factory):
        """Upserting the same photo twice keeps one row with the second call's values."""
        store.upsert_photos([photo_factory("1", caption="<p>first</p>")])
        store.upsert_photos([photo_factory("1", caption="<p>second</p>")])

        photos = store.get_photos(["1"])
        assert len(photos) == 1
        assert photos[0].caption_html == "<p>second</p>"

    def test_upsert_normalizes_tags(self, store, photo_factory):
        store.upsert_photos([photo_factory("1", tags=("#Italy", "france", "#RetroComputing", "italy"))])
        assert store.get_photos(["1"])[0].tags == ("italy", "france", "retrocomputing")

    def test_upsert_skips_missing_ids(self, store, photo_factory):
        ids = store.upsert_photos([photo_factory(""), photo_factory("2")])
        assert ids == ["2"]

    def test_upsert_returns_unique_ids(self, store, photo_factory):
        """Several attachments of one post collapse to one row."""
        ids = store.upsert_photos([
            photo_factory("1", url="https://cdn.pixelfed.test/1-a.jpg"),
            photo_factory("1", url="https://cdn.pixelfed.test/1-b.jpg"),
        ])
        assert ids == ["1"]
        assert store.get_photos(["1"])[0].url == "https://cdn.pixelfed.test/1-b.jpg"

    def test_upsert_sets_fetched_at(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])
        assert store.get_photos(["1"])[0].fetched_at is not None

    def test_get_photos_ignores_unknown(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])
        assert [p.status_id for p in store.get_photos(["missing", "1"])] == ["1"]


# =============================================================================
# Membership Tests
# =============================================================================

class TestMembership:
    """Tests for album membership."""

    def test_link_is_idempotent(self, store, tag_album, photo_factory):
        """Linking the same photo twice adds one edge; the second call reports 0."""
        store.upsert_photos([photo_factory("1")])

        assert store.link_album_photos(tag_album.id, ["1"]) == 1
        assert store.link_album_photos(tag_album.id, ["1"]) == 0
        assert store.count_album_photos(tag_album.id) == 1

    def test_link_counts_only_new_edges(self, store, tag_album, photo_factory):
        store.upsert_photos([photo_factory("1"), photo_factory("2"), photo_factory("3")])
        store.link_album_photos(tag_album.id, ["1"])
        assert store.link_album_photos(tag_album.id, ["1", "2", "3", "2"]) == 2

    def test_link_unknown_album(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])
        with pytest.raises(NotFoundError):
            store.link_album_photos("nope", ["1"])

    def test_link_unknown_photo_is_query_error(self, store, tag_album):
        """Membership rows must reference stored photos."""
        with pytest.raises(QueryError):
            store.link_album_photos(tag_album.id, ["ghost"])

    def test_list_album_photos_newest_added_first(self, store, tag_album, photo_factory):
        with patch('data.database.utc_now', return_value=BASE_TIME):
            store.upsert_photos([photo_factory("1", minutes=1), photo_factory("2", minutes=2)])
            store.link_album_photos(tag_album.id, ["1"])
        with patch('data.database.utc_now', return_value=BASE_TIME + timedelta(hours=1)):
            store.upsert_photos([photo_factory("3", minutes=0)])
            store.link_album_photos(tag_album.id, ["3"])
        with patch('data.database.utc_now', return_value=BASE_TIME + timedelta(hours=2)):
            store.link_album_photos(tag_album.id, ["2"])

        page = store.list_album_photos(tag_album.id, offset=0, limit=10)
        assert [p.status_id for p in page.items] == ["2", "3", "1"]
        assert page.total == 3

    def test_list_album_photos_paging(self, store, tag_album, photo_factory):
        photos = [photo_factory(str(i), minutes=i) for i in range(5)]
        store.upsert_photos(photos)
        store.link_album_photos(tag_album.id, [p.status_id for p in photos])

        page = store.list_album_photos(tag_album.id, offset=1, limit=2)
        assert page.total == 5
        assert [p.status_id for p in page.items] == ["3", "2"]

    def test_remove_unreferenced_photos(self, store, tag_album, photo_factory):
        store.upsert_photos([photo_factory("1"), photo_factory("2"), photo_factory("3")])
        store.link_album_photos(tag_album.id, ["2"])

        assert store.remove_unreferenced_photos() == 2
        assert [p.status_id for p in store.get_photos(["1", "2", "3"])] == ["2"]


# =============================================================================
# Refresh Commit Tests
# =============================================================================

class TestCommitRefresh:
    """Tests for the atomic refresh commit."""

    def test_commit_upserts_links_and_merges(self, store, tag_album, photo_factory):
        photos = [photo_factory("1", minutes=1), photo_factory("2", minutes=2)]

        commit = store.commit_refresh(tag_album.id, photos, {"since_id": "2", "last_checked_at": BASE_TIME})

        assert commit.upserted_ids == ["1", "2"]
        assert commit.linked == 2
        album = store.get_album(tag_album.id)
        assert album.refresh.since_id == "2"
        assert album.refresh.last_checked_at == BASE_TIME
        assert album.refresh.interval_ms == 600000

    def test_commit_rolls_back_on_failure(self, store, tag_album, photo_factory):
        """A failing step leaves photos, links and watermark untouched."""
        with patch.object(MetadataStore, '_apply_album_update', side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(QueryError):
                store.commit_refresh(tag_album.id, [photo_factory("1")], {"since_id": "1"})

        assert store.get_photos(["1"]) == []
        assert store.count_album_photos(tag_album.id) == 0
        assert store.get_album(tag_album.id).refresh.since_id is None

    def test_commit_unknown_album(self, store, photo_factory):
        with pytest.raises(NotFoundError):
            store.commit_refresh("nope", [photo_factory("1")], {})
        assert store.get_photos(["1"]) == []


# =============================================================================
# Favorites Tests
# =============================================================================

class TestFavorites:
    """Tests for favoriting stored photos."""

    def test_add_and_check(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])

        favorite = store.add_favorite("1", note="sunset")

        assert favorite.photo.status_id == "1"
        assert favorite.note == "sunset"
        assert favorite.favorited_at is not None
        assert store.is_favorite("1") is True
        assert store.is_favorite("2") is False

    def test_add_unknown_photo(self, store):
        with pytest.raises(NotFoundError):
            store.add_favorite("missing")

    def test_readd_keeps_note_unless_replaced(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])
        store.add_favorite("1", note="first")

        assert store.add_favorite("1").note == "first"
        assert store.add_favorite("1", note="second").note == "second"
        assert store.list_favorites().total == 1

    def test_remove(self, store, photo_factory):
        store.upsert_photos([photo_factory("1")])
        store.add_favorite("1")

        assert store.remove_favorite("1") is True
        assert store.remove_favorite("1") is False
        assert store.is_favorite("1") is False

    def test_list_newest_first(self, store, photo_factory):
        store.upsert_photos([photo_factory("1"), photo_factory("2"), photo_factory("3")])
        times = [BASE_TIME + timedelta(minutes=m) for m in (1, 3, 2)]
        with patch('data.database.utc_now', side_effect=times):
            for sid in ("1", "2", "3"):
                store.add_favorite(sid)

        page = store.list_favorites(offset=0, limit=2)

        assert page.total == 3
        assert [f.photo.status_id for f in page.items] == ["2", "3"]
        assert page.items[0].favorited_at == BASE_TIME + timedelta(minutes=3)

    def test_favorited_photos_survive_sweep(self, store, photo_factory):
        store.upsert_photos([photo_factory("1"), photo_factory("2")])
        store.add_favorite("1")

        assert store.remove_unreferenced_photos() == 1
        assert [p.status_id for p in store.get_photos(["1", "2"])] == ["1"]
        assert store.is_favorite("1") is True


# =============================================================================
# Settings Tests
# =============================================================================

class TestSettings:
    """Tests for the key/value settings table."""

    def test_missing_key_returns_default(self, store):
        assert store.get_setting("sync.interval_ms") is None
        assert store.get_setting("sync.interval_ms", 5) == 5

    def test_set_overwrites(self, store):
        store.set_setting("sync.interval_ms", 300000)
        store.set_setting("sync.interval_ms", 120000)
        assert store.get_setting("sync.interval_ms") == 120000

    def test_values_round_trip_as_json(self, store):
        store.set_setting("scheduler.status", {"running": False, "stats": {"total_runs": 2}})
        assert store.get_setting("scheduler.status")["stats"]["total_runs"] == 2

    def test_list_sorted_by_key(self, store):
        store.set_setting("b", 2)
        store.set_setting("a", "one")
        assert list(store.list_settings().items()) == [("a", "one"), ("b", 2)]

    def test_raw_text_value_returned_as_is(self, store):
        with store._transaction() as conn:
            conn.execute("INSERT INTO kv (k, v) VALUES ('legacy', 'not json')")
        assert store.get_setting("legacy") == "not json"
