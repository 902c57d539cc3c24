"""
Deduplication of change events.

Two events are the same if they share (court_number, change_type,
case_number) and fall in the same fixed time bucket. The bucket is
int(epoch_seconds) // bucket_seconds, not a sliding window, so the
boundary is deterministic regardless of wall-clock jitter.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from courtview.models import ChangeEvent

DEFAULT_BUCKET_SECONDS = 60

DedupKey = tuple[str, str, "str | None"]


def dedup_key(event: ChangeEvent) -> DedupKey:
    return (event.court_number, event.change_type.value, event.case_number)


def time_bucket(ts: datetime, bucket_seconds: int = DEFAULT_BUCKET_SECONDS) -> int:
    return int(ts.timestamp()) // bucket_seconds


def is_duplicate(
    event: ChangeEvent,
    recent_events: Iterable[ChangeEvent],
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> bool:
    """True if a recent event has the same key in the same bucket."""
    key = dedup_key(event)
    bucket = time_bucket(event.timestamp, bucket_seconds)
    return any(
        dedup_key(other) == key and time_bucket(other.timestamp, bucket_seconds) == bucket
        for other in recent_events
    )


def filter_duplicates(
    events: Iterable[ChangeEvent],
    recent_events: Iterable[ChangeEvent],
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> tuple[list[ChangeEvent], list[ChangeEvent]]:
    """Split events into (accepted, duplicates).

    Accepted events are added to the comparison set as they pass, so a
    repeat inside the same batch is also caught.
    """
    seen = {
        (dedup_key(e), time_bucket(e.timestamp, bucket_seconds)) for e in recent_events
    }
    accepted: list[ChangeEvent] = []
    duplicates: list[ChangeEvent] = []
    for event in events:
        marker = (dedup_key(event), time_bucket(event.timestamp, bucket_seconds))
        if marker in seen:
            duplicates.append(event)
            continue
        seen.add(marker)
        accepted.append(event)
    return accepted, duplicates
