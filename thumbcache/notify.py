"""Email notifications for thumbnail rebuilds and failed scans.

Sent with aiosmtplib; the engine is synchronous, so each send runs its own short event loop.
"""

import asyncio
import logging
from email.message import EmailMessage
from typing import Optional

import aiosmtplib
from pydantic import BaseModel

from thumbcache.config import Settings, get_settings
from thumbcache.errors import ConfigurationError

log = logging.getLogger(__name__)


class RebuildReport(BaseModel):
    """Outcome of a scan or rebuild as reported to the admin."""

    success: bool
    duration_ms: int
    files_processed: int = 0
    thumbnails_generated: int = 0
    failed: int = 0
    error: Optional[str] = None


def build_rebuild_message(report: RebuildReport, to_email: str, from_email: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    if report.success:
        msg["Subject"] = "Thumbnail cache: rebuild completed"
        status = "completed"
    else:
        msg["Subject"] = "Thumbnail cache: rebuild failed"
        status = "FAILED"
    lines = [
        f"Thumbnail cache rebuild {status}.",
        "",
        f"  Duration:             {report.duration_ms / 1000:.1f} s",
        f"  Files processed:      {report.files_processed}",
        f"  Thumbnails generated: {report.thumbnails_generated}",
        f"  Failed:               {report.failed}",
    ]
    if report.error:
        lines += ["", f"Error: {report.error}"]
    msg.set_content("\n".join(lines) + "\n")
    return msg


async def send_rebuild_notification_async(
    report: RebuildReport,
    to_email: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Send the report to to_email (or the admin address). Raises on missing config or SMTP failure."""
    settings = settings or get_settings()
    if not settings.smtp_host or not settings.smtp_from:
        raise ConfigurationError("SMTP not configured (THUMBCACHE_SMTP_HOST / SMTP_FROM)")
    recipient = (to_email or "").strip() or settings.admin_email
    if not recipient:
        raise ConfigurationError("No notification recipient (email config or THUMBCACHE_ADMIN_EMAIL)")
    msg = build_rebuild_message(report, recipient, settings.smtp_from)
    await aiosmtplib.send(
        msg,
        hostname=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user or None,
        password=settings.smtp_password or None,
        use_tls=settings.smtp_port == 465,
        start_tls=settings.smtp_port == 587,
    )
    log.info("Sent rebuild notification to %s (success=%s)", recipient, report.success)


def send_rebuild_notification(
    report: RebuildReport,
    to_email: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Blocking wrapper for the scheduler thread."""
    asyncio.run(send_rebuild_notification_async(report, to_email, settings))
