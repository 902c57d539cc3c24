"""
Polling engine.

FLOW PER CYCLE:
1. Fetch the court view page (bounded retries, exponential backoff).
2. Parse it into CourtSessionRecords.
3. Load the latest snapshot. None -> first-run baseline, zero events.
4. Detect changes, then drop events already recorded in the dedup window.
5. Persist accepted events, compose + persist notifications.
6. Persist the new snapshot LAST, so a failed cycle never advances it.
7. Email the cycle's notifications (best-effort).

MUTUAL EXCLUSION:
- WorkerState IDLE -> POLLING is a single non-blocking lock acquire.
- A tick that arrives while POLLING is skipped, never queued.
- APScheduler also runs the job with max_instances=1.

ERROR HANDLING:
- Any failure is logged with start time and duration and returned in the
  PollSummary. A tick never raises.

SCHEDULING:
- APScheduler AsyncIOScheduler
- Poll: every poll_interval_seconds (default 30s)
- Captcha session cleanup: every 60 seconds
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from courtview.captcha_session import get_registry
from courtview.change_detector import detect_changes
from courtview.config import settings
from courtview.dedup import filter_duplicates
from courtview.models import PollSummary, ScheduleSnapshot
from courtview.notifier import compose_notification, send_notification_email
from courtview.parser import ScheduleParser
from courtview.schedule_client import ScheduleClient
from courtview.store import SnapshotStore

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class PollingWorker:
    """Runs one poll-and-diff cycle at a time."""

    def __init__(
        self,
        fetcher,
        store: SnapshotStore,
        parser: ScheduleParser | None = None,
        bucket_seconds: int = 60,
        dedup_window_seconds: int = 60,
        notify: bool = True,
    ):
        self._fetcher = fetcher
        self._store = store
        self._parser = parser or ScheduleParser()
        self._bucket_seconds = bucket_seconds
        self._dedup_window = timedelta(seconds=dedup_window_seconds)
        self._notify = notify
        self._lock = threading.Lock()
        self.state = WorkerState.IDLE

    def _try_begin(self) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        self.state = WorkerState.POLLING
        return True

    def _finish(self) -> None:
        self.state = WorkerState.IDLE
        self._lock.release()

    async def poll_once(self) -> PollSummary:
        """Run one cycle. Returns skipped=True if a cycle is already running."""
        if not self._try_begin():
            logger.info("Poll already in flight. Skipping tick.")
            return PollSummary(skipped=True)

        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        summary = PollSummary()
        try:
            await self._cycle(summary, started_at)
        except Exception as exc:
            summary.error = str(exc) or exc.__class__.__name__
            logger.error(
                "Poll started at %s failed after %dms",
                started_at.isoformat(),
                int((time.monotonic() - start) * 1000),
                exc_info=True,
            )
        finally:
            summary.duration_ms = int((time.monotonic() - start) * 1000)
            self._finish()

        if summary.error is None:
            logger.info(
                "Poll finished in %dms: %d change(s), %d duplicate(s), %d notification(s)",
                summary.duration_ms,
                summary.changes_detected,
                summary.duplicates_skipped,
                summary.notifications_created,
            )
        return summary

    async def _cycle(self, summary: PollSummary, now: datetime) -> None:
        html = await self._fetcher.fetch()
        records = self._parser.parse(html)

        previous = self._store.latest_snapshot()
        if previous is None:
            logger.info("No previous snapshot. Storing baseline of %d court(s).", len(records))
            events = []
        else:
            events = detect_changes(previous.records, records, timestamp=now)
        summary.changes_detected = len(events)

        notifications = []
        if events:
            recent = self._store.recent_changes(
                {e.court_number for e in events}, since=now - self._dedup_window
            )
            accepted, duplicates = filter_duplicates(events, recent, self._bucket_seconds)
            summary.duplicates_skipped = len(duplicates)

            saved = self._store.save_changes(accepted)
            notifications = self._store.save_notifications(
                [compose_notification(e) for e in saved]
            )
            summary.notifications_created = len(notifications)

        self._store.save_snapshot(ScheduleSnapshot(records=tuple(records), created_at=now))

        if notifications and self._notify:
            await send_notification_email(notifications)


# ---------------------------------------------------------------------------
# Process-wide worker
# ---------------------------------------------------------------------------

_worker: PollingWorker | None = None
_schedule_client: ScheduleClient | None = None


def get_worker() -> PollingWorker:
    """Lazy-init the shared polling worker."""
    global _worker, _schedule_client
    if _worker is None:
        _schedule_client = ScheduleClient(
            url=settings.schedule_url,
            timeout=settings.schedule_request_timeout_seconds,
            max_attempts=settings.schedule_fetch_attempts,
            backoff_base_seconds=settings.schedule_backoff_base_seconds,
        )
        _worker = PollingWorker(
            fetcher=_schedule_client,
            store=SnapshotStore(),
            bucket_seconds=settings.dedup_bucket_seconds,
            dedup_window_seconds=settings.dedup_window_seconds,
            notify=settings.notification_email_enabled,
        )
    return _worker


async def close_worker() -> None:
    """Close the shared schedule client, if one was built."""
    global _worker, _schedule_client
    if _schedule_client is not None:
        await _schedule_client.close()
    _worker = None
    _schedule_client = None


async def poll_cycle() -> PollSummary | None:
    """Scheduled job: one poll of the shared worker."""
    if not settings.polling_enabled:
        logger.info("Polling disabled (COURTVIEW_POLLING_ENABLED=false). Skipping cycle.")
        return None
    return await get_worker().poll_once()


def cleanup_sessions() -> int:
    """Scheduled job: drop expired captcha sessions."""
    removed = get_registry().cleanup()
    if removed:
        logger.info("Removed %d expired captcha session(s)", removed)
    return removed


def setup_scheduler(worker: PollingWorker | None = None) -> AsyncIOScheduler:
    """Configure and return the APScheduler instance."""
    scheduler = AsyncIOScheduler()

    poll_job = worker.poll_once if worker is not None else poll_cycle
    scheduler.add_job(
        poll_job,
        IntervalTrigger(seconds=settings.poll_interval_seconds),
        id="poll_cycle",
        name="poll_cycle",
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        cleanup_sessions,
        IntervalTrigger(seconds=60),
        id="cleanup_sessions",
        name="cleanup_sessions",
    )

    return scheduler
