"""
Photo Fetcher Module

This module implements the query logic for virtual albums. It supports
fetching photos by:
  - One or more hashtags, with "any" (OR) or "all" (AND) tag matching
  - One or more accounts
  - Accounts and hashtags together: fetch the accounts' posts, then filter
    locally by tag

Federated servers cannot reliably filter remote posts by several tags, so
tag matching always happens locally on an over-fetched candidate set, and
filtering always happens before the result is truncated to the limit.

Sub-fetches for several tags or accounts run concurrently. When more than
one target is queried, a failing target is reported in the result's error
list instead of aborting its siblings; a single-target query, or one where
every target failed, raises the underlying error.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from config import settings
from data.models import AlbumQuery, CompoundQuery, Photo, TagQuery, UserQuery, clamp_limit
from services.post_normalizer import statuses_to_photos
from services.protocols import FetchOptions, ResolveResult, TargetError, TimelineClient, target_error_from
from utils.exceptions import AlbumSyncError, ValidationError
from utils.helpers import clamp, normalize_tags
from utils.logger import get_logger

logger = get_logger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def matches_tags(photo_tags: Iterable[str], required: Sequence[str], tagmode: str = "any") -> bool:
    """
    Case-insensitive tag match.

    Args:
        photo_tags: Tags carried by the photo.
        required: Tags requested by the query; an empty list matches everything.
        tagmode: ``"all"`` requires every tag, anything else requires at least one.

    Returns:
        bool: True if the photo satisfies the tag filter.
    """
    if not required:
        return True
    have = {str(t).lower() for t in photo_tags or ()}
    wanted = [str(t).lower() for t in required]
    if tagmode == "all":
        return all(t in have for t in wanted)
    return any(t in have for t in wanted)


def union_by_status(lists: Iterable[Iterable[Photo]]) -> List[Photo]:
    """Merge photo lists by status id; later entries replace earlier ones in place."""
    merged: Dict[str, Photo] = {}
    for photos in lists:
        for photo in photos:
            merged[photo.status_id] = photo
    return list(merged.values())


def newest_first(photos: Iterable[Photo]) -> List[Photo]:
    """Sort newest-first by creation time; equal timestamps keep arrival order."""
    return sorted(photos, key=lambda p: p.created_at or _OLDEST, reverse=True)


def tag_headroom(limit: int) -> int:
    return min(limit * settings.TAG_HEADROOM_FACTOR, settings.TAG_HEADROOM_CAP)


def compound_headroom(limit: int) -> int:
    return min(limit * settings.COMPOUND_HEADROOM_FACTOR, settings.COMPOUND_HEADROOM_CAP)


def user_page_size(limit: int) -> int:
    return clamp(math.ceil(limit * 1.5), settings.USER_PAGE_MIN, settings.USER_PAGE_MAX)


class QueryResolver:
    """Resolves album queries against the remote timeline client."""

    def __init__(self, client: TimelineClient, max_workers: Optional[int] = None):
        """
        Initialize the resolver.

        Args:
            client: Remote timeline client.
            max_workers: Upper bound on concurrent sub-fetches per resolve.
        """
        self.client = client
        self.max_workers = max_workers or settings.FETCH_MAX_WORKERS

    def resolve(self, query: AlbumQuery, options: Optional[FetchOptions] = None) -> ResolveResult:
        """
        Resolve a query to a deduplicated, newest-first list of photos.

        Args:
            query: Tag, user or compound query.
            options: Overrides for limit and tagmode plus an optional since_id hint.

        Returns:
            ResolveResult: Matching photos (at most ``limit``) and per-target errors.

        Raises:
            ValidationError: If the query has nothing to search for.
            AlbumSyncError: The sub-fetch error for single-target queries, or
                the first error when every target failed.
        """
        options = options or FetchOptions()
        limit = clamp_limit(options.limit if options.limit is not None else query.limit)
        tagmode = (options.tagmode or getattr(query, "tagmode", "any") or "any").lower()
        since_id = options.since_id

        if isinstance(query, TagQuery):
            return self._resolve_tags(query.tags, tagmode, limit, since_id)
        if isinstance(query, UserQuery):
            return self._resolve_users(query.users, limit, since_id)
        if isinstance(query, CompoundQuery):
            if query.tags and not query.users:
                return self._resolve_tags(query.tags, tagmode, limit, since_id)
            if query.users and not query.tags:
                return self._resolve_users(query.users, limit, since_id)
            return self._resolve_compound(query.tags, query.users, tagmode, limit, since_id)
        raise ValidationError("unsupported query", {"query": repr(query)})

    # -------------------------------------------------------------------------
    # Query shapes
    # -------------------------------------------------------------------------

    def _resolve_tags(self, tags: Sequence[str], tagmode: str, limit: int,
                      since_id: Optional[str]) -> ResolveResult:
        wanted = normalize_tags(tags)
        if not wanted:
            raise ValidationError("tags required")

        headroom = tag_headroom(limit)
        lists, errors = self._fan_out(
            wanted, lambda tag: self.client.fetch_tag_page(tag, limit=headroom, since_id=since_id)
        )
        candidates = union_by_status(lists)
        matched = [p for p in candidates if matches_tags(p.tags, wanted, tagmode)]
        photos = newest_first(matched)[:limit]
        logger.info(
            f"Tag query {wanted} ({tagmode}): {len(candidates)} candidates, "
            f"{len(matched)} matched, returning {len(photos)}"
        )
        return ResolveResult(photos=photos, errors=errors, candidates=len(candidates))

    def _resolve_users(self, users: Sequence[str], limit: int,
                       since_id: Optional[str]) -> ResolveResult:
        candidates, errors = self._fetch_user_candidates(users, user_page_size(limit), since_id)
        photos = newest_first(candidates)[:limit]
        logger.info(f"User query ({len(users)} accounts): {len(candidates)} candidates, returning {len(photos)}")
        return ResolveResult(photos=photos, errors=errors, candidates=len(candidates))

    def _resolve_compound(self, tags: Sequence[str], users: Sequence[str], tagmode: str,
                          limit: int, since_id: Optional[str]) -> ResolveResult:
        wanted = normalize_tags(tags)
        page = user_page_size(compound_headroom(limit))
        candidates, errors = self._fetch_user_candidates(users, page, since_id)
        matched = [p for p in candidates if matches_tags(p.tags, wanted, tagmode)]
        photos = newest_first(matched)[:limit]
        logger.info(
            f"Compound query {wanted} ({tagmode}) over {len(users)} accounts: "
            f"{len(candidates)} candidates, {len(matched)} matched, returning {len(photos)}"
        )
        return ResolveResult(photos=photos, errors=errors, candidates=len(candidates))

    # -------------------------------------------------------------------------
    # Fetch helpers
    # -------------------------------------------------------------------------

    def _fetch_user_candidates(self, users: Sequence[str], page: int,
                               since_id: Optional[str]) -> Tuple[List[Photo], List[TargetError]]:
        targets = [u for u in dict.fromkeys(str(u or "").strip() for u in users) if u]
        if not targets:
            raise ValidationError("users required")

        def fetch(user: str) -> List[Photo]:
            account_id = self.client.resolve_account_id(user)
            statuses = self.client.fetch_user_page(account_id, limit=page, since_id=since_id)
            return statuses_to_photos(statuses)

        lists, errors = self._fan_out(targets, fetch)
        return union_by_status(lists), errors

    def _fan_out(self, targets: Sequence[str],
                 fetch: Callable[[str], List[Photo]]) -> Tuple[List[List[Photo]], List[TargetError]]:
        """Run ``fetch`` for every target, collecting per-target failures.

        Results are returned in target order so the union order is stable.
        """
        if len(targets) == 1:
            return [fetch(targets[0])], []

        lists: List[List[Photo]] = []
        errors: List[TargetError] = []
        workers = max(1, min(self.max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(target, pool.submit(fetch, target)) for target in targets]
            for target, future in futures:
                try:
                    lists.append(future.result())
                except AlbumSyncError as e:
                    logger.warning(f"Fetch for {target} failed: {e.code}: {e.message}")
                    errors.append(target_error_from(target, e))

        if errors and len(errors) == len(targets):
            raise errors[0].error
        return lists, errors
