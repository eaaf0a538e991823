"""
Daily Sync Scheduler

Runs "sync all active connections" once a day at a fixed wall-clock time
in the configured timezone. Only started by the application in production.
"""

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime, time as dt_time, timedelta, timezone as dt_timezone
from typing import Awaitable, Callable, Optional, Union
from zoneinfo import ZoneInfo

from .service import SyncAllResult, SyncService
from .timezones import resolve_timezone

logger = logging.getLogger(__name__)

SyncJob = Callable[[], Awaitable[SyncAllResult]]


def next_run_after(now: datetime, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    """
    Next firing strictly after ``now``, as an aware datetime in ``tz``.

    Example:
        >>> tz = ZoneInfo("America/New_York")
        >>> next_run_after(datetime(2025, 3, 1, 8, 0, tzinfo=dt_timezone.utc), 2, 0, tz)
        datetime.datetime(2025, 3, 2, 2, 0, tzinfo=zoneinfo.ZoneInfo(key='America/New_York'))
    """
    local_now = now.astimezone(tz)
    candidate = datetime.combine(local_now.date(), dt_time(hour, minute), tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), dt_time(hour, minute), tzinfo=tz)
    return candidate


class DailySyncScheduler:
    """asyncio task that awaits ``job`` every day at hour:minute."""

    def __init__(
        self,
        job: SyncJob,
        hour: int = 2,
        minute: int = 0,
        timezone: Union[str, ZoneInfo] = "UTC",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.job = job
        self.hour = hour
        self.minute = minute
        self.timezone = resolve_timezone(timezone)
        self._clock = clock or (lambda: datetime.now(dt_timezone.utc))
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Initializing with timezone: {self.timezone.key}")
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Daily sync scheduled for {self.hour:02d}:{self.minute:02d}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        last_target: Optional[datetime] = None
        while True:
            now = self._clock()
            # A wall clock lagging the sleep must not fire the same target twice
            reference = max(now, last_target) if last_target else now
            next_run = next_run_after(reference, self.hour, self.minute, self.timezone)
            delay = max((next_run - now).total_seconds(), 0)
            logger.debug(f"Next daily sync at {next_run.isoformat()}")
            await asyncio.sleep(delay)
            last_target = next_run
            await self.run_once()

    async def run_once(self) -> Optional[SyncAllResult]:
        """Run the job once; failures are logged and never escape."""
        logger.info("Starting daily SimpleFIN sync")
        started = time.monotonic()

        try:
            result = await self.job()
        except Exception as e:
            logger.error(f"Daily sync failed: {e}", exc_info=True)
            return None

        duration = time.monotonic() - started
        logger.info(f"Daily sync completed in {duration:.2f}s")
        logger.info(
            f"Results: {result.connections_processed} connections, "
            f"{result.success_count} succeeded, {result.failure_count} failed"
        )
        logger.info(f"Imported: {result.total_imported}, Skipped: {result.total_skipped}")
        return result


def build_sync_job(session_factory, clients, settings) -> SyncJob:
    """Job for the scheduler; every firing gets its own database session."""

    async def job() -> SyncAllResult:
        db = session_factory()
        try:
            service = SyncService.from_settings(db, clients, settings)
            return await service.sync_all_connections()
        finally:
            db.close()

    return job
