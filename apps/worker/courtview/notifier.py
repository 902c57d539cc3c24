"""
Notification composition and dispatch.

RULES:
1. One notification per change event that survived deduplication.
2. Composition is pure and never fails.
3. Email is batched per poll: one email for all notifications of the cycle.
4. Email is best-effort: failures are logged, never raised.

EMAIL SUBJECT: "[CourtView] {count} court update(s)"
"""

from __future__ import annotations

import logging
from email.message import EmailMessage

import aiosmtplib

from courtview.config import settings
from courtview.models import (
    NOTIFICATION_KINDS,
    ChangeEvent,
    ChangeType,
    NotificationRecord,
)

logger = logging.getLogger(__name__)

_TITLES = {
    ChangeType.ADDED: "New Case Added - Court {court}",
    ChangeType.UPDATED: "Case Updated - Court {court}",
    ChangeType.REMOVED: "Case Removed - Court {court}",
    ChangeType.STATUS_CHANGED: "Status Changed - Court {court}",
}


def _message(event: ChangeEvent) -> str:
    message = event.description
    new = event.new_value
    details = new.case_details if new is not None else None

    if event.change_type is ChangeType.ADDED and details is not None:
        message += f"\nCase: {details.case_number}\nTitle: {details.title}"
    elif event.change_type is ChangeType.UPDATED and details is not None:
        message += f"\nCase: {details.case_number}"
        if new.progress_label:
            message += f"\nProgress: {new.progress_label}"
    elif (
        event.change_type is ChangeType.STATUS_CHANGED
        and new is not None
        and new.is_in_session
        and details is not None
    ):
        message += f"\nCase: {details.case_number}"
    return message


def compose_notification(event: ChangeEvent) -> NotificationRecord:
    """Build the user-facing notification for one change event."""
    return NotificationRecord(
        timestamp=event.timestamp,
        court_number=event.court_number,
        kind=NOTIFICATION_KINDS[event.change_type],
        title=_TITLES[event.change_type].format(court=event.court_number),
        message=_message(event),
        change_event_id=event.id,
    )


def _email_recipients() -> list[str]:
    return [
        e.strip()
        for e in settings.notification_email_recipients.split(",")
        if e.strip()
    ]


async def send_notification_email(notifications: list[NotificationRecord]) -> bool:
    """
    Send one email summarizing a poll's notifications.

    Returns True on success, False when disabled, unconfigured or failed.
    """
    if not notifications or not settings.notification_email_enabled:
        return False
    recipients = _email_recipients()
    if not recipients:
        return False

    try:
        msg = EmailMessage()
        msg["Subject"] = f"[CourtView] {len(notifications)} court update(s)"
        msg["From"] = settings.smtp_from_email
        msg["To"] = ", ".join(recipients)

        body_lines = [
            "CourtView - Court Schedule Alert",
            f"{len(notifications)} update(s) detected",
            "",
            "=" * 40,
            "",
        ]
        for i, n in enumerate(notifications, 1):
            body_lines.append(f"  {i}. {n.title}")
            body_lines.extend(f"     {line}" for line in n.message.splitlines())
            body_lines.append("")
        body_lines.extend(["=" * 40, "", "CourtView Worker"])
        msg.set_content("\n".join(body_lines))

        smtp = aiosmtplib.SMTP(hostname=settings.smtp_host, port=settings.smtp_port)
        await smtp.connect()
        if settings.smtp_use_tls:
            await smtp.starttls()
        await smtp.login(settings.smtp_username, settings.smtp_password)
        await smtp.send_message(msg)
        await smtp.quit()

        logger.info("Email sent for %d notification(s) to %s", len(notifications), recipients)
        return True

    except Exception:
        logger.error("Notification email failed", exc_info=True)
        return False
