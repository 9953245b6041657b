"""Tests for rebuild email notifications with aiosmtplib mocked."""

from unittest.mock import AsyncMock, patch

import pytest

from thumbcache.errors import ConfigurationError
from thumbcache.notify import RebuildReport, build_rebuild_message, send_rebuild_notification


def test_build_message_success() -> None:
    """A successful report has a 'completed' subject and the counts in the body."""
    report = RebuildReport(success=True, duration_ms=1500, files_processed=4, thumbnails_generated=3, failed=1)
    msg = build_rebuild_message(report, "admin@gallery.test", "cache@gallery.test")
    assert msg["To"] == "admin@gallery.test"
    assert "completed" in msg["Subject"]
    body = msg.get_content()
    assert "Files processed:      4" in body
    assert "Failed:               1" in body
    assert "1.5 s" in body


def test_build_message_failure_includes_error() -> None:
    """A failed report says so and carries the error text."""
    report = RebuildReport(success=False, duration_ms=10, error="Scan failed: timeout")
    msg = build_rebuild_message(report, "a@b.test", "c@d.test")
    assert "failed" in msg["Subject"]
    assert "Scan failed: timeout" in msg.get_content()


def test_send_uses_admin_email_when_no_recipient(settings) -> None:
    """Without an explicit address the admin email receives the report."""
    with patch("thumbcache.notify.aiosmtplib.send", new_callable=AsyncMock) as send:
        send_rebuild_notification(RebuildReport(success=True, duration_ms=1), None, settings)
    send.assert_awaited_once()
    msg = send.call_args[0][0]
    assert msg["To"] == settings.admin_email
    assert send.call_args[1]["hostname"] == "smtp.test"
    assert send.call_args[1]["start_tls"] is True


def test_send_prefers_configured_recipient(settings) -> None:
    """An address from the email config overrides the admin email."""
    with patch("thumbcache.notify.aiosmtplib.send", new_callable=AsyncMock) as send:
        send_rebuild_notification(RebuildReport(success=True, duration_ms=1), "ops@gallery.test", settings)
    assert send.call_args[0][0]["To"] == "ops@gallery.test"


def test_send_without_smtp_raises(settings) -> None:
    """Missing SMTP configuration is a ConfigurationError, not a silent skip."""
    unconfigured = settings.model_copy(update={"smtp_host": ""})
    with pytest.raises(ConfigurationError):
        send_rebuild_notification(RebuildReport(success=True, duration_ms=1), None, unconfigured)
