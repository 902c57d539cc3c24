"""
Court view HTML parser.

Turns the court view page into an ordered list of CourtSessionRecord.

Verified column structure of the schedule table:
    [0] Court No.
    [1] Serial No.   (or the "NOT in session" marker)
    [2] List
    [3] Progress
    [4] Case details blob:
            Case Details - WRIT/123/2024
            Title : A Vs. B
                    (title may continue on indented lines)
            Petitioner's Counsel - X, Y
            Respondent's Counsel - Z

The label vocabulary is held in LabelPatterns so it can be versioned and
swapped without touching callers. The "NOT in session" marker is the only
session-status signal the page prints; it must match verbatim.

parse() is total: no table, no rows or broken rows yield [] / skip the row.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Tag

from courtview.models import CaseDetails, CourtSessionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelPatterns:
    """Label vocabulary for the case details blob."""
    version: str
    not_in_session_marker: str
    case_number: re.Pattern
    title: re.Pattern
    petitioner_counsels: re.Pattern
    respondent_counsels: re.Pattern
    missing_value: str = "N/A"


DEFAULT_PATTERNS = LabelPatterns(
    version="courtview-v1",
    not_in_session_marker="NOT in session",
    case_number=re.compile(r"Case\s+Details\s*[–\-]\s*([A-Z0-9/]+)", re.IGNORECASE),
    title=re.compile(
        r"Title\s*:\s*([^\n]+(?:\n\s+[^\n]+)*?)(?:\s+(?:Petitioner|Respondent)|$)"
    ),
    petitioner_counsels=re.compile(
        r"Petitioner'?s?\s+Counsels?\s*[–\-]\s*([^\n]+?)(?:\s+Respondent|$)"
    ),
    respondent_counsels=re.compile(
        r"Respondent'?s?\s+Counsels?\s*[–\-]\s*(.+?)\s*$", re.DOTALL
    ),
)


def _split_counsels(text: str) -> tuple[str, ...]:
    return tuple(" ".join(c.split()) for c in text.split(",") if c.strip())


def _cell_text(cell: Tag | None) -> str:
    """Cell text with <br> kept as line breaks."""
    if cell is None:
        return ""
    for br in cell.find_all("br"):
        br.replace_with("\n")
    return cell.get_text().strip()


class ScheduleParser:
    """Parse court view HTML with a given label vocabulary."""

    def __init__(self, patterns: LabelPatterns = DEFAULT_PATTERNS):
        self.patterns = patterns

    def parse(self, html: str) -> list[CourtSessionRecord]:
        if not html or not html.strip():
            return []

        try:
            soup = BeautifulSoup(html, "html.parser")
        except Exception:
            logger.warning("Court view HTML could not be parsed", exc_info=True)
            return []

        table = soup.find("table")
        if table is None:
            logger.warning("No schedule table found in court view page")
            return []

        records: list[CourtSessionRecord] = []
        for row in table.find_all("tr")[1:]:
            try:
                record = self._parse_row(row)
            except Exception:
                logger.warning("Failed to parse court view row", exc_info=True)
                continue
            if record is not None:
                records.append(record)
        return records

    def _parse_row(self, row: Tag) -> CourtSessionRecord | None:
        cells = row.find_all("td")
        if not cells:
            return None

        texts = [_cell_text(cells[i]) if i < len(cells) else "" for i in range(5)]
        court_number, serial_text, list_text, progress_text, details_text = texts
        if not court_number:
            return None

        marker = self.patterns.not_in_session_marker
        is_in_session = marker not in serial_text and marker not in details_text

        if not is_in_session:
            return CourtSessionRecord(court_number=court_number, is_in_session=False)

        return CourtSessionRecord(
            court_number=court_number,
            is_in_session=True,
            serial_number=serial_text or None,
            list_label=list_text or None,
            progress_label=progress_text or None,
            case_details=self.parse_case_details(details_text),
        )

    def parse_case_details(self, text: str) -> CaseDetails | None:
        """Anchored extraction: case number, title, petitioner, respondent."""
        if not text:
            return None
        p = self.patterns

        case_number = ""
        m = p.case_number.search(text)
        if m:
            case_number = m.group(1).strip()

        title = ""
        m = p.title.search(text)
        if m:
            title = re.sub(r"\s+", " ", m.group(1)).strip()

        petitioners: tuple[str, ...] = ()
        m = p.petitioner_counsels.search(text)
        if m:
            petitioners = _split_counsels(m.group(1))

        respondents: tuple[str, ...] = ()
        m = p.respondent_counsels.search(text)
        if m:
            respondents = _split_counsels(m.group(1))

        if not case_number and not title:
            return None

        return CaseDetails(
            case_number=case_number or p.missing_value,
            title=title or p.missing_value,
            petitioner_counsels=petitioners,
            respondent_counsels=respondents,
        )


_default_parser = ScheduleParser()


def parse_court_schedule(html: str) -> list[CourtSessionRecord]:
    """Parse with the shipped label vocabulary."""
    return _default_parser.parse(html)
