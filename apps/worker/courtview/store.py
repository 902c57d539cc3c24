"""
Snapshot store backed by Supabase.

TABLES:
- schedules:     one row per poll (date, created_at, courts JSON)
- changes:       one row per accepted change event
- notifications: one row per change event that survived dedup

Snapshots and change events are append-only. The only mutation the store
performs is flipping notifications.read.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from datetime import datetime

from courtview.models import ChangeEvent, NotificationRecord, ScheduleSnapshot
from courtview.supabase_client import supabase

logger = logging.getLogger(__name__)

SCHEDULES_TABLE = "schedules"
CHANGES_TABLE = "changes"
NOTIFICATIONS_TABLE = "notifications"


class SnapshotStore:
    """Durable history of snapshots, change events and notifications."""

    def __init__(self, client=None):
        self._client_override = client

    def _table(self, name: str):
        client = self._client_override or supabase
        return client.table(name)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def latest_snapshot(self) -> ScheduleSnapshot | None:
        """The snapshot with the greatest created_at, or None on first run."""
        resp = (
            self._table(SCHEDULES_TABLE)
            .select("*")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = resp.data or []
        if not rows:
            return None
        return ScheduleSnapshot.from_dict(rows[0])

    def save_snapshot(self, snapshot: ScheduleSnapshot) -> ScheduleSnapshot:
        resp = self._table(SCHEDULES_TABLE).insert(snapshot.to_dict()).execute()
        rows = resp.data or []
        if rows and rows[0].get("id"):
            return dataclasses.replace(snapshot, id=str(rows[0]["id"]))
        return snapshot

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    def recent_changes(
        self, court_numbers: Iterable[str], since: datetime
    ) -> list[ChangeEvent]:
        """Events for the given courts with timestamp >= since."""
        courts = sorted(set(court_numbers))
        if not courts:
            return []
        resp = (
            self._table(CHANGES_TABLE)
            .select("*")
            .in_("court_number", courts)
            .gte("timestamp", since.isoformat())
            .execute()
        )
        events: list[ChangeEvent] = []
        for row in resp.data or []:
            try:
                events.append(ChangeEvent.from_dict(row))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed change row %s", row.get("id"), exc_info=True)
        return events

    def save_changes(self, events: list[ChangeEvent]) -> list[ChangeEvent]:
        """Insert events and return them carrying store-assigned ids."""
        if not events:
            return []
        resp = self._table(CHANGES_TABLE).insert([e.to_dict() for e in events]).execute()
        rows = resp.data or []
        if len(rows) != len(events):
            return list(events)
        return [
            dataclasses.replace(event, id=str(row["id"])) if row.get("id") else event
            for event, row in zip(events, rows)
        ]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def save_notifications(
        self, notifications: list[NotificationRecord]
    ) -> list[NotificationRecord]:
        if not notifications:
            return []
        resp = (
            self._table(NOTIFICATIONS_TABLE)
            .insert([n.to_dict() for n in notifications])
            .execute()
        )
        rows = resp.data or []
        if len(rows) != len(notifications):
            return list(notifications)
        return [
            dataclasses.replace(n, id=str(row["id"])) if row.get("id") else n
            for n, row in zip(notifications, rows)
        ]

    def list_notifications(
        self, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRecord]:
        """Newest first."""
        query = self._table(NOTIFICATIONS_TABLE).select("*")
        if unread_only:
            query = query.eq("read", False)
        resp = query.order("timestamp", desc=True).limit(limit).execute()
        return [NotificationRecord.from_dict(row) for row in resp.data or []]

    def mark_notifications(self, ids: list[str], read: bool) -> int:
        """Set the read flag on the given notifications. Returns rows updated."""
        if not ids:
            return 0
        resp = (
            self._table(NOTIFICATIONS_TABLE)
            .update({"read": read})
            .in_("id", ids)
            .execute()
        )
        updated = len(resp.data or [])
        logger.info("Marked %d notification(s) read=%s", updated, read)
        return updated
