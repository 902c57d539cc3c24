"""
Shared fixtures for CourtView worker tests.

Strategy:
- Mock Supabase client globally (no real DB calls in unit tests)
- Provide realistic court view HTML fixtures
- Provide record / event factory helpers
- Override settings with test-safe defaults
"""

from __future__ import annotations

import os

# Set dummy env vars BEFORE any courtview module is imported.
# This prevents config.py and supabase_client.py from failing at import time.
TEST_SERVICE_ROLE_KEY = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9."
    "eyJyb2xlIjoic2VydmljZV9yb2xlIn0."
    "dGVzdC1zaWduYXR1cmU"
)
os.environ.setdefault("COURTVIEW_SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("COURTVIEW_SUPABASE_SERVICE_ROLE_KEY", TEST_SERVICE_ROLE_KEY)

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from courtview.models import CaseDetails, CourtSessionRecord


# ── Supabase Client Mock ──────────────────────────────────


@pytest.fixture
def mock_supabase():
    """
    Chainable MagicMock mimicking supabase.table().select().eq()...execute().
    """
    client = MagicMock()

    table_mock = MagicMock()
    table_mock.select.return_value = table_mock
    table_mock.insert.return_value = table_mock
    table_mock.update.return_value = table_mock
    table_mock.upsert.return_value = table_mock
    table_mock.delete.return_value = table_mock
    table_mock.eq.return_value = table_mock
    table_mock.neq.return_value = table_mock
    table_mock.lt.return_value = table_mock
    table_mock.lte.return_value = table_mock
    table_mock.gte.return_value = table_mock
    table_mock.is_.return_value = table_mock
    table_mock.in_.return_value = table_mock
    table_mock.order.return_value = table_mock
    table_mock.limit.return_value = table_mock
    table_mock.single.return_value = table_mock
    table_mock.execute.return_value = MagicMock(data=[], count=0)

    client.table.return_value = table_mock
    client.from_.return_value = table_mock

    return client


@pytest.fixture
def patch_supabase(mock_supabase):
    """Patches the supabase singleton across all worker modules."""
    with (
        patch("courtview.supabase_client.supabase", mock_supabase),
        patch("courtview.store.supabase", mock_supabase, create=True),
    ):
        yield mock_supabase


# ── Court View HTML Fixtures ──────────────────────────────


def court_row(
    court: str,
    serial: str = "",
    list_label: str = "",
    progress: str = "",
    details: str = "",
) -> str:
    return (
        f"<tr><td>{court}</td><td>{serial}</td><td>{list_label}</td>"
        f"<td>{progress}</td><td>{details}</td></tr>"
    )


def details_blob(
    case_number: str = "WRIT/1234/2024",
    title: str = "RAM KUMAR Vs. STATE OF U.P.",
    petitioners: str = "Anil Kumar, Sunita Verma",
    respondents: str = "C.S.C.",
) -> str:
    return (
        f"Case Details - {case_number}<br>"
        f"Title : {title}<br>"
        f"Petitioner's Counsel - {petitioners}<br>"
        f"Respondent's Counsel - {respondents}"
    )


def schedule_page(*rows: str) -> str:
    header = (
        "<tr><th>Court No.</th><th>Serial No.</th><th>List</th>"
        "<th>Progress</th><th>Case Details</th></tr>"
    )
    return (
        "<html><body><h2>Court View - Lucknow</h2>"
        f"<table>{header}{''.join(rows)}</table></body></html>"
    )


@pytest.fixture
def sample_schedule_html():
    """Three courts: two in session, one not."""
    return schedule_page(
        court_row("1", "12", "Fresh", "In Progress", details_blob()),
        court_row("2", "NOT in session", "", "", ""),
        court_row(
            "3", "4", "Additional", "Heard",
            details_blob("SPLA/55/2023", "ABC LTD. Vs. UNION OF INDIA", "R. Mehta", "A.S.G.I., Kiran Rao"),
        ),
    )


@pytest.fixture
def no_table_html():
    return "<html><body><p>Court view is not available right now.</p></body></html>"


# ── Record Fixtures ───────────────────────────────────────


def in_session(
    court: str,
    case_number: str = "WRIT/1234/2024",
    serial: str = "12",
    progress: str | None = "In Progress",
    title: str = "RAM KUMAR Vs. STATE OF U.P.",
) -> CourtSessionRecord:
    return CourtSessionRecord(
        court_number=court,
        is_in_session=True,
        serial_number=serial,
        list_label="Fresh",
        progress_label=progress,
        case_details=CaseDetails(
            case_number=case_number,
            title=title,
            petitioner_counsels=("Anil Kumar",),
            respondent_counsels=("C.S.C.",),
        ),
    )


def not_in_session(court: str) -> CourtSessionRecord:
    return CourtSessionRecord(court_number=court, is_in_session=False)


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 10, 15, 0, tzinfo=timezone.utc)


# ── SMTP Mock ─────────────────────────────────────────────


@pytest.fixture
def mock_smtp():
    """Mock aiosmtplib.SMTP for email tests."""
    with patch("courtview.notifier.aiosmtplib") as aiosmtplib_mod:
        smtp_instance = AsyncMock()
        aiosmtplib_mod.SMTP.return_value = smtp_instance
        smtp_instance.connect = AsyncMock()
        smtp_instance.starttls = AsyncMock()
        smtp_instance.login = AsyncMock()
        smtp_instance.send_message = AsyncMock()
        smtp_instance.quit = AsyncMock()
        yield smtp_instance


# ── Settings Override ──────────────────────────────────────


@pytest.fixture
def test_settings():
    """Settings with test-safe defaults, patched across all worker modules."""
    with patch("courtview.config.settings") as mock_settings:
        mock_settings.supabase_url = "https://test.supabase.co"
        mock_settings.supabase_service_role_key = TEST_SERVICE_ROLE_KEY
        mock_settings.schedule_url = "https://courtview.test/CourtViewLucknow.do"
        mock_settings.schedule_request_timeout_seconds = 5
        mock_settings.schedule_fetch_attempts = 3
        mock_settings.schedule_backoff_base_seconds = 0.0
        mock_settings.polling_enabled = True
        mock_settings.poll_interval_seconds = 30
        mock_settings.dedup_bucket_seconds = 60
        mock_settings.dedup_window_seconds = 60
        mock_settings.smtp_host = "localhost"
        mock_settings.smtp_port = 1025
        mock_settings.smtp_username = "test"
        mock_settings.smtp_password = "test"
        mock_settings.smtp_from_email = "courtview@test.com"
        mock_settings.smtp_use_tls = False
        mock_settings.notification_email_enabled = True
        mock_settings.notification_email_recipients = "clerk@test.com, counsel@test.com"
        mock_settings.document_base_url = "https://elegalix.test/elegalix"
        mock_settings.document_max_attempts = 3
        mock_settings.document_backoff_seconds = 0.0
        mock_settings.document_request_timeout_seconds = 5
        mock_settings.captcha_session_ttl_seconds = 300
        mock_settings.browser_fallback_enabled = False
        mock_settings.browser_headless = True
        mock_settings.browser_navigation_timeout_ms = 5000
        mock_settings.captcha_expected_length = 6
        mock_settings.captcha_thresholds = "140,160,180"
        mock_settings.captcha_psm_modes = "8,7,13"
        mock_settings.captcha_upscale_factor = 3
        mock_settings.captcha_use_easyocr = False
        mock_settings.captcha_ocr_timeout_seconds = 5.0
        mock_settings.captcha_debug_dir = ""
        mock_settings.tesseract_cmd = "tesseract"
        mock_settings.api_enabled = False
        mock_settings.api_host = "127.0.0.1"
        mock_settings.api_port = 8000
        mock_settings.timezone = "Asia/Kolkata"
        # Patch settings in modules that import it directly
        with (
            patch("courtview.notifier.settings", mock_settings, create=True),
            patch("courtview.polling.settings", mock_settings, create=True),
            patch("courtview.captcha_solver.settings", mock_settings, create=True),
            patch("courtview.captcha_session.settings", mock_settings, create=True),
            patch("courtview.documents.settings", mock_settings, create=True),
            patch("courtview.main.settings", mock_settings, create=True),
        ):
            yield mock_settings


# ── Process-wide State Reset ──────────────────────────────


@pytest.fixture(autouse=True)
def reset_singletons():
    """Clear lazily-built workers, retrievers and registries between tests."""
    from courtview import captcha_session, documents, polling

    polling._worker = None
    polling._schedule_client = None
    documents._retriever = None
    captcha_session._registry = None
    yield
    polling._worker = None
    polling._schedule_client = None
    documents._retriever = None
    captcha_session._registry = None
