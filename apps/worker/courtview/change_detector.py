"""
Change detection between two schedule snapshots.

RULES (per court number):
1. Only in new         -> added
2. Only in previous    -> removed
3. In both, session flag differs -> status_changed (and nothing else;
   status dominates content in the same poll)
4. In both, both in session, any of serial / list / progress / case
   details differ (structural equality) -> updated

Output is sorted by (court_number, change_type) so the result does not
depend on input ordering.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from courtview.models import ChangeEvent, ChangeType, CourtSessionRecord

logger = logging.getLogger(__name__)


def _session_label(in_session: bool) -> str:
    return "in session" if in_session else "not in session"


def _index(records: Iterable[CourtSessionRecord]) -> dict[str, CourtSessionRecord]:
    by_court: dict[str, CourtSessionRecord] = {}
    for record in records:
        if record.court_number in by_court:
            logger.debug("Duplicate row for court %s; last row wins", record.court_number)
        by_court[record.court_number] = record
    return by_court


def _content_differs(old: CourtSessionRecord, new: CourtSessionRecord) -> bool:
    return (
        old.serial_number != new.serial_number
        or old.list_label != new.list_label
        or old.progress_label != new.progress_label
        or old.case_details != new.case_details
    )


def detect_changes(
    previous: Iterable[CourtSessionRecord],
    new: Iterable[CourtSessionRecord],
    timestamp: datetime | None = None,
) -> list[ChangeEvent]:
    """Classify the differences between two record sets."""
    ts = timestamp or datetime.now(timezone.utc)
    old_map = _index(previous)
    new_map = _index(new)
    events: list[ChangeEvent] = []

    for court, new_rec in new_map.items():
        old_rec = old_map.get(court)
        if old_rec is None:
            events.append(ChangeEvent(
                timestamp=ts,
                court_number=court,
                change_type=ChangeType.ADDED,
                previous_value=None,
                new_value=new_rec,
                description=f"New case added to Court {court}",
            ))
        elif old_rec.is_in_session != new_rec.is_in_session:
            events.append(ChangeEvent(
                timestamp=ts,
                court_number=court,
                change_type=ChangeType.STATUS_CHANGED,
                previous_value=old_rec,
                new_value=new_rec,
                description=(
                    f"Court {court} session status changed from "
                    f"{_session_label(old_rec.is_in_session)} to "
                    f"{_session_label(new_rec.is_in_session)}"
                ),
            ))
        elif new_rec.is_in_session and _content_differs(old_rec, new_rec):
            events.append(ChangeEvent(
                timestamp=ts,
                court_number=court,
                change_type=ChangeType.UPDATED,
                previous_value=old_rec,
                new_value=new_rec,
                description=f"Case details updated in Court {court}",
            ))

    for court, old_rec in old_map.items():
        if court not in new_map:
            events.append(ChangeEvent(
                timestamp=ts,
                court_number=court,
                change_type=ChangeType.REMOVED,
                previous_value=old_rec,
                new_value=None,
                description=f"Case removed from Court {court}",
            ))

    events.sort(key=lambda e: (e.court_number, e.change_type.value))
    return events
