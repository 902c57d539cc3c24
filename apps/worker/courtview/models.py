"""
Typed records for the court view pipeline.

Every record round-trips through the document store as a plain dict
(to_dict / from_dict). Absent values are None, never "", so that
"field not printed" stays distinguishable from "field printed empty".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _parse_ts(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class CaseDetails:
    """Case block printed for a court that is in session."""
    case_number: str
    title: str
    petitioner_counsels: tuple[str, ...] = ()
    respondent_counsels: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "case_number": self.case_number,
            "title": self.title,
            "petitioner_counsels": list(self.petitioner_counsels),
            "respondent_counsels": list(self.respondent_counsels),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CaseDetails:
        return cls(
            case_number=data["case_number"],
            title=data["title"],
            petitioner_counsels=tuple(data.get("petitioner_counsels") or ()),
            respondent_counsels=tuple(data.get("respondent_counsels") or ()),
        )


@dataclass(frozen=True)
class CourtSessionRecord:
    """One row of the schedule for one court number at one poll."""
    court_number: str
    is_in_session: bool
    serial_number: str | None = None
    list_label: str | None = None
    progress_label: str | None = None
    case_details: CaseDetails | None = None

    def __post_init__(self) -> None:
        if self.case_details is not None and not self.is_in_session:
            raise ValueError(
                f"Court {self.court_number}: case details present while not in session"
            )

    def to_dict(self) -> dict:
        return {
            "court_number": self.court_number,
            "is_in_session": self.is_in_session,
            "serial_number": self.serial_number,
            "list_label": self.list_label,
            "progress_label": self.progress_label,
            "case_details": self.case_details.to_dict() if self.case_details else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CourtSessionRecord:
        details = data.get("case_details")
        return cls(
            court_number=str(data["court_number"]),
            is_in_session=bool(data["is_in_session"]),
            serial_number=data.get("serial_number"),
            list_label=data.get("list_label"),
            progress_label=data.get("progress_label"),
            case_details=CaseDetails.from_dict(details) if details else None,
        )


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Immutable full capture of all court records at one poll."""
    records: tuple[CourtSessionRecord, ...]
    created_at: datetime
    id: str | None = None

    @property
    def date(self) -> str:
        return self.created_at.date().isoformat()

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "created_at": self.created_at.isoformat(),
            "courts": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScheduleSnapshot:
        return cls(
            records=tuple(CourtSessionRecord.from_dict(c) for c in data.get("courts") or []),
            created_at=_parse_ts(data["created_at"]),
            id=data.get("id"),
        )


class ChangeType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class ChangeEvent:
    """One classified difference between two snapshots for one court number."""
    timestamp: datetime
    court_number: str
    change_type: ChangeType
    previous_value: CourtSessionRecord | None
    new_value: CourtSessionRecord | None
    description: str
    id: str | None = None

    def __post_init__(self) -> None:
        if self.change_type is ChangeType.ADDED:
            ok = self.previous_value is None and self.new_value is not None
        elif self.change_type is ChangeType.REMOVED:
            ok = self.new_value is None and self.previous_value is not None
        else:
            ok = self.previous_value is not None and self.new_value is not None
        if not ok:
            raise ValueError(
                f"Invalid values for {self.change_type.value} event on court {self.court_number}"
            )

    @property
    def case_number(self) -> str | None:
        for record in (self.new_value, self.previous_value):
            if record is not None and record.case_details is not None:
                return record.case_details.case_number
        return None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "court_number": self.court_number,
            "change_type": self.change_type.value,
            "case_number": self.case_number,
            "previous_value": self.previous_value.to_dict() if self.previous_value else None,
            "new_value": self.new_value.to_dict() if self.new_value else None,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ChangeEvent:
        prev = data.get("previous_value")
        new = data.get("new_value")
        return cls(
            timestamp=_parse_ts(data["timestamp"]),
            court_number=str(data["court_number"]),
            change_type=ChangeType(data["change_type"]),
            previous_value=CourtSessionRecord.from_dict(prev) if prev else None,
            new_value=CourtSessionRecord.from_dict(new) if new else None,
            description=data.get("description", ""),
            id=data.get("id"),
        )


NOTIFICATION_KINDS = {
    ChangeType.ADDED: "new_case",
    ChangeType.STATUS_CHANGED: "status_change",
    ChangeType.UPDATED: "change",
    ChangeType.REMOVED: "change",
}


@dataclass(frozen=True)
class NotificationRecord:
    """Derived 1:1 from a change event that survived deduplication."""
    timestamp: datetime
    court_number: str
    kind: str
    title: str
    message: str
    change_event_id: str | None = None
    read: bool = False
    id: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "court_number": self.court_number,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "change_event_id": self.change_event_id,
            "read": self.read,
        }

    @classmethod
    def from_dict(cls, data: dict) -> NotificationRecord:
        return cls(
            timestamp=_parse_ts(data["timestamp"]),
            court_number=str(data["court_number"]),
            kind=data["kind"],
            title=data["title"],
            message=data["message"],
            change_event_id=data.get("change_event_id"),
            read=bool(data.get("read", False)),
            id=data.get("id"),
        )


@dataclass
class PollSummary:
    """Result of one poll-and-diff cycle."""
    changes_detected: int = 0
    duplicates_skipped: int = 0
    notifications_created: int = 0
    duration_ms: int = 0
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "changesDetected": self.changes_detected,
            "duplicatesSkipped": self.duplicates_skipped,
            "notificationsCreated": self.notifications_created,
            "durationMs": self.duration_ms,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class RetrievedDocument:
    """Binary payload accepted from a captcha-protected endpoint."""
    document_id: str
    content: bytes = field(repr=False)
    content_type: str
    filename: str
    attempts: int = 1
