"""Tests for courtview/dedup.py — fixed time-bucket deduplication."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from conftest import in_session, not_in_session
from courtview.dedup import dedup_key, filter_duplicates, is_duplicate, time_bucket
from courtview.models import ChangeEvent, ChangeType

# 10:15:00 UTC, exactly on a minute boundary
BUCKET_START = datetime(2026, 3, 2, 10, 15, 0, tzinfo=timezone.utc)


def _added(court: str, ts: datetime, case_number: str = "WRIT/1234/2024") -> ChangeEvent:
    return ChangeEvent(
        timestamp=ts,
        court_number=court,
        change_type=ChangeType.ADDED,
        previous_value=None,
        new_value=in_session(court, case_number),
        description=f"New case added to Court {court}",
    )


@pytest.mark.unit
class TestKeyAndBucket:
    def test_key_fields(self):
        event = _added("4", BUCKET_START)
        assert dedup_key(event) == ("4", "added", "WRIT/1234/2024")

    def test_key_without_case(self):
        event = ChangeEvent(
            timestamp=BUCKET_START,
            court_number="4",
            change_type=ChangeType.STATUS_CHANGED,
            previous_value=not_in_session("4"),
            new_value=not_in_session("4"),
            description="",
        )
        assert dedup_key(event) == ("4", "status_changed", None)

    def test_bucket_is_floor_of_epoch(self):
        assert time_bucket(BUCKET_START) == int(BUCKET_START.timestamp()) // 60
        assert time_bucket(BUCKET_START + timedelta(seconds=59)) == time_bucket(BUCKET_START)
        assert time_bucket(BUCKET_START + timedelta(seconds=60)) == time_bucket(BUCKET_START) + 1

    def test_custom_bucket_size(self):
        assert time_bucket(BUCKET_START + timedelta(seconds=299), 300) == time_bucket(BUCKET_START, 300)


@pytest.mark.unit
class TestIsDuplicate:
    def test_same_bucket_is_duplicate(self):
        """Identical key 59 seconds apart in the same bucket."""
        first = _added("4", BUCKET_START)
        second = _added("4", BUCKET_START + timedelta(seconds=59))
        assert is_duplicate(second, [first]) is True

    def test_across_boundary_is_not_duplicate(self):
        """Identical key 61 seconds apart crosses the bucket boundary."""
        first = _added("4", BUCKET_START)
        second = _added("4", BUCKET_START + timedelta(seconds=61))
        assert is_duplicate(second, [first]) is False

    def test_boundary_is_fixed_not_sliding(self):
        """2 seconds apart but straddling a boundary: not a duplicate."""
        first = _added("4", BUCKET_START - timedelta(seconds=1))
        second = _added("4", BUCKET_START + timedelta(seconds=1))
        assert is_duplicate(second, [first]) is False

    def test_different_case_not_duplicate(self):
        first = _added("4", BUCKET_START, "WRIT/1/2024")
        second = _added("4", BUCKET_START, "WRIT/2/2024")
        assert is_duplicate(second, [first]) is False

    def test_different_court_not_duplicate(self):
        assert is_duplicate(_added("5", BUCKET_START), [_added("4", BUCKET_START)]) is False

    def test_no_recent_events(self):
        assert is_duplicate(_added("4", BUCKET_START), []) is False


@pytest.mark.unit
class TestFilterDuplicates:
    def test_splits_against_recent(self):
        recent = [_added("1", BUCKET_START)]
        batch = [_added("1", BUCKET_START + timedelta(seconds=10)), _added("2", BUCKET_START)]

        accepted, duplicates = filter_duplicates(batch, recent)

        assert [e.court_number for e in accepted] == ["2"]
        assert [e.court_number for e in duplicates] == ["1"]

    def test_collapses_within_batch(self):
        event = _added("3", BUCKET_START)
        repeat = dataclasses.replace(event, description="again")

        accepted, duplicates = filter_duplicates([event, repeat], [])

        assert accepted == [event]
        assert duplicates == [repeat]

    def test_preserves_order(self):
        batch = [_added(str(n), BUCKET_START) for n in (3, 1, 2)]
        accepted, _ = filter_duplicates(batch, [])
        assert [e.court_number for e in accepted] == ["3", "1", "2"]
