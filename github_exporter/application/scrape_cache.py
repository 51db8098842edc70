import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional
from pydantic import BaseModel, ConfigDict

from github_exporter.application.snapshot_builder import SnapshotBuilder
from github_exporter.domain.exceptions import ConcurrencyError, UpstreamError
from github_exporter.domain.models import Snapshot

logger = logging.getLogger(__name__)

# Far enough in the past that the first harvest covers the full history
DEFAULT_INITIAL_CURSOR = datetime(2015, 11, 28, 21, 0, 9, tzinfo=timezone.utc)
DEFAULT_LOCK_TIMEOUT = 5.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class CacheEntry(BaseModel):
    """
    State shared by every scrape request. Replaced as a whole, never mutated.

    `checked_at` is the monotonic time the last refresh attempt finished,
    successful or not, and anchors the TTL window. `fetched_at` is the wall
    clock time of the last successful refresh.
    """
    model_config = ConfigDict(frozen=True)

    snapshot: Optional[Snapshot] = None
    cursor: datetime
    fetched_at: Optional[datetime] = None
    checked_at: Optional[float] = None
    failures: int = 0


class ScrapeCache:
    """
    Serves the last harvested Snapshot and refreshes it at most once per TTL.

    Concurrent callers that find the TTL expired share a single refresh: the
    first one starts it as a task, the others await the same task. A failed
    refresh keeps the previous Snapshot and cursor.
    """

    def __init__(
            self,
            builder: SnapshotBuilder,
            ttl: float,
            initial_cursor: datetime = DEFAULT_INITIAL_CURSOR,
            lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
            clock: Callable[[], float] = time.monotonic,
            wall_clock: Callable[[], datetime] = _utc_now,
    ):
        self.builder = builder
        self.ttl = ttl
        self.lock_timeout = lock_timeout
        self._clock = clock
        self._wall_clock = wall_clock
        self._entry = CacheEntry(cursor=initial_cursor)
        self._lock = asyncio.Lock()
        self._in_flight: Optional["asyncio.Task[Optional[Snapshot]]"] = None

    @property
    def entry(self) -> CacheEntry:
        return self._entry

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._entry.snapshot

    @property
    def cursor(self) -> datetime:
        return self._entry.cursor

    @property
    def refresh_in_progress(self) -> bool:
        return self._in_flight is not None

    @asynccontextmanager
    async def _critical_section(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as e:
            raise ConcurrencyError(
                f"Could not enter the scrape cache critical section within {self.lock_timeout}s."
            ) from e
        try:
            yield
        finally:
            self._lock.release()

    def _is_fresh(self, entry: CacheEntry, ttl: float) -> bool:
        return entry.checked_at is not None and self._clock() - entry.checked_at < ttl

    async def get_or_refresh(self, ttl: Optional[float] = None) -> Optional[Snapshot]:
        """
        Returns the cached Snapshot, refreshing it first when the TTL has elapsed.

        Args:
            ttl: Overrides the cache's TTL in seconds for this call.

        Returns:
            The current Snapshot, or None when no harvest has succeeded yet.

        Raises:
            ConcurrencyError: If the critical section could not be entered.
        """
        ttl = self.ttl if ttl is None else ttl

        async with self._critical_section():
            entry = self._entry
            if self._is_fresh(entry, ttl):
                return entry.snapshot
            if self._in_flight is None:
                self._in_flight = asyncio.ensure_future(self._refresh(entry.cursor))
                self._in_flight.add_done_callback(self._log_unexpected_failure)
            in_flight = self._in_flight

        # A cancelled request must not cancel the harvest the other waiters share
        return await asyncio.shield(in_flight)

    async def drain(self) -> None:
        """Waits for an in-flight refresh to finish, whatever its outcome."""
        in_flight = self._in_flight
        if in_flight is not None:
            logger.info("Waiting for the in-flight harvest to finish...")
            await asyncio.wait([in_flight])

    async def _refresh(self, cursor: datetime) -> Optional[Snapshot]:
        started_at = self._wall_clock()
        try:
            try:
                built = await self.builder.build(cursor, harvested_at=started_at)
            except UpstreamError as e:
                entry = await self._record_failure()
                if entry.snapshot is None:
                    logger.error(f"Refresh failed and no earlier data exists: {e}")
                else:
                    logger.error(
                        f"Refresh failed, serving data from {entry.fetched_at.isoformat()}: {e}"
                    )
                return entry.snapshot
            except Exception:
                # still a failed attempt, so later scrapes wait out the TTL
                await self._record_failure()
                raise

            async with self._critical_section():
                entry = self._entry
                snapshot = built if entry.snapshot is None else entry.snapshot.merged_with(built)
                self._entry = CacheEntry(
                    snapshot=snapshot,
                    cursor=max(entry.cursor, started_at),
                    fetched_at=self._wall_clock(),
                    checked_at=self._clock(),
                    failures=entry.failures,
                )
            logger.info(
                f"Installed snapshot harvested at {started_at.isoformat()}; "
                f"cursor is now {self._entry.cursor.isoformat()}."
            )
            return snapshot
        finally:
            self._in_flight = None

    async def _record_failure(self) -> CacheEntry:
        """Starts a TTL window for a failed attempt and returns the entry it replaced."""
        async with self._critical_section():
            entry = self._entry
            self._entry = entry.model_copy(
                update={"checked_at": self._clock(), "failures": entry.failures + 1}
            )
        return entry

    @staticmethod
    def _log_unexpected_failure(task: "asyncio.Task[Optional[Snapshot]]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Refresh aborted by an unexpected error: {error!r}", exc_info=error)
