"""
Album Scheduler Module

Periodically refreshes virtual albums. Every tick the scheduler selects the
albums that are due (enabled, outside any rate-limit backoff window, and
past their jittered refresh interval), resolves each album's query, and
persists the photos, membership links and new refresh state in one
transaction.

Albums are refreshed one at a time with a short delay in between to keep
the outbound request rate to the remote instance low. Stopping the
scheduler lets the in-flight album finish; remaining albums wait for the
next run.
"""

import math
import random
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import settings
from data.models import Album
from data.protocols import AlbumStore
from services.photo_fetcher import QueryResolver
from services.protocols import FetchOptions, ResolveResult, TargetError, summarize_errors
from utils.exceptions import AlbumSyncError, NotFoundError, RateLimitError
from utils.helpers import clamp, format_timestamp, utc_now
from utils.logger import get_logger

logger = get_logger(__name__)

SUCCESS = "success"
PARTIAL = "partial"
RATE_LIMITED = "rate_limited"
FAILED = "failed"


@dataclass
class SchedulerStats:
    """Cumulative counters reported by ``AlbumScheduler.status()``."""
    started_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    total_runs: int = 0
    albums_refreshed: int = 0
    albums_skipped: int = 0
    errors: int = 0
    rate_limited: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = format_timestamp(self.started_at)
        data["last_run_at"] = format_timestamp(self.last_run_at)
        return data


@dataclass
class RefreshOutcome:
    """What happened to one album during a refresh."""
    album_id: str
    status: str
    fetched: int = 0
    upserted: int = 0
    linked: int = 0
    since_id: Optional[str] = None
    backoff_until: Optional[datetime] = None
    error: Optional[str] = None
    errors: List[TargetError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "album_id": self.album_id,
            "status": self.status,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "linked": self.linked,
            "since_id": self.since_id,
            "backoff_until": format_timestamp(self.backoff_until),
            "error": self.error,
            "errors": [e.to_dict() for e in self.errors],
        }


def _error_message(error: Exception) -> str:
    return getattr(error, "message", "") or str(error) or error.__class__.__name__


class AlbumScheduler:
    """Refresh scheduler for virtual albums."""

    def __init__(self, store: AlbumStore, resolver: QueryResolver,
                 tick_seconds: Optional[float] = None,
                 album_delay_seconds: Optional[float] = None,
                 stop_grace_seconds: Optional[float] = None,
                 jitter_percentage: Optional[float] = None,
                 base_backoff_seconds: Optional[float] = None,
                 max_backoff_seconds: Optional[float] = None,
                 default_interval_ms: Optional[int] = None,
                 clock: Callable[[], datetime] = utc_now,
                 rng: Callable[[], float] = random.random):
        """
        Initialize the scheduler. Settings are used for every omitted value.

        Args:
            store: Metadata store holding albums, photos and refresh state.
            resolver: Query resolver used for every refresh.
            tick_seconds: Time between scheduler runs.
            album_delay_seconds: Pause between two album refreshes in one run.
            stop_grace_seconds: How long ``stop()`` waits for in-flight work.
            jitter_percentage: +/- percentage applied to intervals and backoffs.
            base_backoff_seconds: First rate-limit backoff.
            max_backoff_seconds: Backoff ceiling.
            default_interval_ms: Interval for albums stored without one; when
                omitted the stored sync setting is used, then the fallback.
            clock: Returns the current aware UTC time.
            rng: Returns a float in [0, 1) for jitter.
        """
        self.store = store
        self.resolver = resolver
        self.tick_seconds = settings.SCHEDULER_TICK_SECONDS if tick_seconds is None else tick_seconds
        self.album_delay_seconds = (settings.SCHEDULER_ALBUM_DELAY_SECONDS
                                    if album_delay_seconds is None else album_delay_seconds)
        self.stop_grace_seconds = (settings.SCHEDULER_STOP_GRACE_SECONDS
                                   if stop_grace_seconds is None else stop_grace_seconds)
        self.jitter_percentage = settings.JITTER_PERCENTAGE if jitter_percentage is None else jitter_percentage
        self.base_backoff_seconds = (settings.BASE_BACKOFF_SECONDS
                                     if base_backoff_seconds is None else base_backoff_seconds)
        self.max_backoff_seconds = (settings.MAX_BACKOFF_SECONDS
                                    if max_backoff_seconds is None else max_backoff_seconds)
        self.default_interval_ms = default_interval_ms
        self._clock = clock
        self._rng = rng

        self.stats = SchedulerStats()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._refresh_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Timing rules
    # -------------------------------------------------------------------------

    def add_jitter(self, value: float) -> float:
        """Spread ``value`` by up to +/- ``jitter_percentage`` percent."""
        spread = value * (self.jitter_percentage / 100)
        return value + (self._rng() - 0.5) * 2 * spread

    def calculate_backoff_seconds(self, retry_count: int,
                                  retry_after_seconds: Optional[float] = None) -> float:
        """
        Backoff after a rate limit: ``base * 2^retry_count``, jittered, capped.

        A server-supplied Retry-After longer than the computed backoff wins,
        up to the same ceiling.
        """
        raw = min(self.base_backoff_seconds * (2 ** max(0, int(retry_count))), self.max_backoff_seconds)
        backoff = min(self.add_jitter(raw), self.max_backoff_seconds)
        if retry_after_seconds and not math.isnan(retry_after_seconds) and retry_after_seconds > backoff:
            backoff = min(float(retry_after_seconds), self.max_backoff_seconds)
        return backoff

    def default_interval(self) -> int:
        """
        Interval used for albums stored without their own.

        Order: the constructor override, then the stored ``sync.interval_ms``
        setting, then ``FALLBACK_REFRESH_INTERVAL_MS``.
        """
        if self.default_interval_ms:
            return self.default_interval_ms
        try:
            stored = self.store.get_setting(settings.SYNC_INTERVAL_SETTING)
        except AlbumSyncError as e:
            logger.warning(f"Could not read stored sync interval: {e}")
            stored = None
        interval = clamp(stored, 0, settings.MAX_REFRESH_INTERVAL_MS, default=0)
        return interval or settings.FALLBACK_REFRESH_INTERVAL_MS

    def is_due(self, album: Album, now: Optional[datetime] = None,
               default_interval_ms: Optional[int] = None) -> bool:
        """
        Check whether an album should be refreshed now.

        Args:
            album: Album to check.
            now: Evaluation time; defaults to the scheduler clock.
            default_interval_ms: Interval for albums without one; looked up
                with ``default_interval()`` when omitted.

        Returns:
            bool: True if enabled, outside backoff and past its jittered interval.
        """
        if not album.enabled:
            return False
        now = now or self._clock()
        refresh = album.refresh

        if refresh.backoff_until and now < refresh.backoff_until:
            return False
        if refresh.last_checked_at is None:
            return True

        interval_ms = refresh.interval_ms or default_interval_ms or self.default_interval()
        next_due = refresh.last_checked_at + timedelta(milliseconds=self.add_jitter(interval_ms))
        return now >= next_due

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """
        Start the background driver; the first run happens immediately.

        Returns:
            bool: False if the scheduler was already running.
        """
        with self._state_lock:
            if self._running:
                logger.info("Scheduler already running")
                return False
            self._running = True
            # One event per run; an older driver keeps the event it started with.
            stop_event = threading.Event()
            self._stop_event = stop_event
            self.stats = SchedulerStats(started_at=self._clock())
            self._thread = threading.Thread(target=self._run_loop, args=(stop_event,),
                                            name="album-scheduler", daemon=True)
            thread = self._thread

        logger.info(f"Starting scheduler with tick interval {self.tick_seconds:g}s")
        thread.start()
        return True

    def stop(self) -> bool:
        """
        Stop the driver. In-flight work gets a grace period to finish.

        Returns:
            bool: False if the scheduler was not running.
        """
        with self._state_lock:
            if not self._running:
                logger.info("Scheduler not running")
                return False
            self._running = False
            self._stop_event.set()
            thread, self._thread = self._thread, None

        logger.info("Stopping scheduler")
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.stop_grace_seconds)
            if thread.is_alive():
                logger.warning("Scheduler thread still finishing an in-flight refresh")
        self._record_status()
        logger.info("Scheduler stopped")
        return True

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "running": self._running,
                "tick_interval_ms": int(self.tick_seconds * 1000),
                "stats": self.stats.to_dict(),
            }

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scheduler is stopped; returns True once stopped."""
        return self._stop_event.wait(timeout)

    def last_recorded_status(self) -> Optional[Dict[str, Any]]:
        """Return the status snapshot saved after the most recent run, from any process."""
        return self.store.get_setting(settings.SCHEDULER_STATUS_SETTING)

    def _record_status(self) -> None:
        try:
            self.store.set_setting(settings.SCHEDULER_STATUS_SETTING, self.status())
        except AlbumSyncError as e:
            logger.warning(f"Could not record scheduler status: {e}")

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_tick(stop_event)
            except Exception as e:
                logger.error(f"Error in scheduler run: {e}", exc_info=True)
                self._bump("errors")
            if stop_event.wait(self.tick_seconds):
                break
        logger.debug("Scheduler driver exited")

    def _bump(self, counter: str, amount: int = 1) -> None:
        with self._state_lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + amount)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def due_albums(self, now: Optional[datetime] = None) -> List[Album]:
        """Return the enabled albums that are due at ``now``."""
        now = now or self._clock()
        page = self.store.list_albums(offset=0, limit=settings.SCHEDULER_LIST_LIMIT, enabled=True)
        default_interval_ms = self.default_interval()
        due = [album for album in page.items if self.is_due(album, now, default_interval_ms)]
        skipped = len(page.items) - len(due)
        if skipped:
            self._bump("albums_skipped", skipped)
        return due

    def run_tick(self, stop_event: Optional[threading.Event] = None) -> List[RefreshOutcome]:
        """
        Run one scheduler pass over all due albums and record the status.

        Args:
            stop_event: Event that ends the pass early; defaults to the
                current run's event.

        Returns:
            List[RefreshOutcome]: Outcomes for the albums refreshed in this pass.
        """
        try:
            return self._run_pass(stop_event or self._stop_event)
        finally:
            self._record_status()

    def _run_pass(self, stop_event: threading.Event) -> List[RefreshOutcome]:
        now = self._clock()
        with self._state_lock:
            self.stats.last_run_at = now
            self.stats.total_runs += 1
        logger.info(f"Starting run at {format_timestamp(now)}")

        try:
            due = self.due_albums(now)
        except AlbumSyncError as e:
            logger.error(f"Could not list albums: {e}")
            self._bump("errors")
            return []

        if not due:
            logger.info("No albums due for refresh")
            return []

        logger.info(f"Found {len(due)} due albums")
        outcomes = []
        for index, album in enumerate(due):
            if stop_event.is_set():
                logger.info(f"Scheduler stopping; deferring {len(due) - index} albums to the next run")
                break
            try:
                outcomes.append(self.refresh_album(album))
            except Exception as e:
                logger.error(f"Unexpected error refreshing album {album.id}: {e}", exc_info=True)
                self._bump("errors")
            if index < len(due) - 1 and self.album_delay_seconds > 0:
                stop_event.wait(self.album_delay_seconds)
        return outcomes

    def force_refresh(self, album_id: str) -> RefreshOutcome:
        """
        Refresh one album immediately, bypassing the due check.

        Raises:
            NotFoundError: If the album does not exist.
        """
        album = self.store.get_album(album_id)
        if album is None:
            raise NotFoundError("album not found", {"album_id": album_id})
        logger.info(f"Force refresh requested for album {album_id}")
        return self.refresh_album(album)

    def refresh_album(self, album: Album) -> RefreshOutcome:
        """
        Refresh one album and record the outcome in its refresh state.

        Watermarks only move after the photos they cover are stored. A rate
        limit sets a backoff window; other failures only record the error.
        """
        with self._refresh_lock:
            logger.info(f"Refreshing album {album.id} \"{album.name}\"")
            options = FetchOptions(limit=album.limit, since_id=album.refresh.since_id)
            try:
                result = self.resolver.resolve(album.query, options)
            except RateLimitError as e:
                return self._record_rate_limit(album, e)
            except AlbumSyncError as e:
                return self._record_failure(album, e)

            try:
                return self._record_success(album, result)
            except AlbumSyncError as e:
                return self._record_failure(album, e)

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _backoff_patch(self, album: Album, retry_after: Optional[float],
                       now: datetime) -> Dict[str, Any]:
        retry_count = album.refresh.retry_count or 0
        backoff_until = now + timedelta(seconds=self.calculate_backoff_seconds(retry_count, retry_after))
        return {"backoff_until": backoff_until, "retry_count": retry_count + 1}

    def _record_success(self, album: Album, result: ResolveResult) -> RefreshOutcome:
        now = self._clock()
        status = SUCCESS
        since_id = album.refresh.since_id

        if result.errors:
            # Partial results: keep the photos, hold the watermark.
            patch: Dict[str, Any] = {"last_checked_at": now, "last_error": summarize_errors(result.errors)}
            limited = [e.error for e in result.errors if isinstance(e.error, RateLimitError)]
            if limited:
                retry_after = max((e.retry_after_seconds or 0) for e in limited) or None
                patch.update(self._backoff_patch(album, retry_after, now))
                status = RATE_LIMITED
            else:
                status = PARTIAL
        else:
            if result.photos:
                since_id = result.photos[0].status_id
            patch = {
                "last_checked_at": now,
                "since_id": since_id,
                "backoff_until": None,
                "last_error": None,
                "retry_count": 0,
            }

        commit = self.store.commit_refresh(album.id, result.photos, patch)

        self._bump("albums_refreshed")
        if status != SUCCESS:
            self._bump("errors")
        if status == RATE_LIMITED:
            self._bump("rate_limited")
            logger.warning(f"Album {album.id} partially rate limited; backing off until "
                           f"{format_timestamp(patch['backoff_until'])}")

        logger.info(
            f"Album {album.id} refreshed ({status}): {result.candidates} fetched, "
            f"{len(commit.upserted_ids)} upserted, {commit.linked} linked"
        )
        return RefreshOutcome(
            album_id=album.id,
            status=status,
            fetched=result.candidates,
            upserted=len(commit.upserted_ids),
            linked=commit.linked,
            since_id=since_id,
            backoff_until=patch.get("backoff_until"),
            error=patch.get("last_error"),
            errors=list(result.errors),
        )

    def _record_rate_limit(self, album: Album, error: RateLimitError) -> RefreshOutcome:
        now = self._clock()
        patch = {"last_checked_at": now, "last_error": _error_message(error)}
        patch.update(self._backoff_patch(album, error.retry_after_seconds, now))
        logger.warning(f"Rate limited on album {album.id}, backing off until "
                       f"{format_timestamp(patch['backoff_until'])}")
        self._bump("errors")
        self._bump("rate_limited")
        self._save_refresh_state(album, patch)
        return RefreshOutcome(
            album_id=album.id,
            status=RATE_LIMITED,
            since_id=album.refresh.since_id,
            backoff_until=patch["backoff_until"],
            error=patch["last_error"],
        )

    def _record_failure(self, album: Album, error: AlbumSyncError) -> RefreshOutcome:
        now = self._clock()
        message = _error_message(error)
        logger.error(f"Error refreshing album {album.id} \"{album.name}\": {error.code}: {message}")
        self._bump("errors")
        self._save_refresh_state(album, {"last_checked_at": now, "last_error": message})
        return RefreshOutcome(
            album_id=album.id,
            status=FAILED,
            since_id=album.refresh.since_id,
            error=message,
        )

    def _save_refresh_state(self, album: Album, patch: Dict[str, Any]) -> None:
        try:
            self.store.update_album(album.id, refresh=patch)
        except AlbumSyncError as e:
            logger.error(f"Could not record refresh state for album {album.id}: {e}")
