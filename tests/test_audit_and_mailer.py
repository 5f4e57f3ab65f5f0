"""Unit tests for auth/audit.py and auth/mailer.py.

Covers:
- scrub() filters password/token/secret keys but keeps boolean flags
- LoggingAuditSink: logger name per category, WARNING for security events
- build_notifier(): log notifier without SMTP_HOST, SMTP notifier with it
- SmtpNotifier wraps transport failures in DeliveryError
- LogNotifier shows the confirmation link at INFO
- Confirmation message carries the link and the validity window
"""

from __future__ import annotations

import logging
import smtplib

import pytest

from auth.audit import LoggingAuditSink, scrub
from auth.mailer import DeliveryError, LogNotifier, SmtpNotifier, build_notifier, email_confirmation_message
from core.config import get_settings


class TestScrub:
    def test_filters_secret_keys(self) -> None:
        clean = scrub({"username": "alice", "password": "x", "current_password": "y", "confirmation_token": "z", "secret_key": "k"})
        assert clean == {
            "username": "alice",
            "password": "[FILTERED]",
            "current_password": "[FILTERED]",
            "confirmation_token": "[FILTERED]",
            "secret_key": "[FILTERED]",
        }

    def test_keeps_boolean_flags(self) -> None:
        assert scrub({"password_updated": True}) == {"password_updated": True}

    def test_does_not_mutate_input(self) -> None:
        attrs = {"password": "x"}
        scrub(attrs)
        assert attrs == {"password": "x"}


class TestLoggingAuditSink:
    def test_security_events_log_at_warning(self, caplog) -> None:
        sink = LoggingAuditSink()
        with caplog.at_level(logging.INFO, logger="pollhub.audit"):
            sink.record_event("security", "login_failed", {"username": "alice", "ip": "10.0.0.1"})
            sink.record_event("auth", "logout", {"username": "alice"})
        failed, logout = caplog.records
        assert (failed.name, failed.levelno) == ("pollhub.audit.security", logging.WARNING)
        assert (logout.name, logout.levelno) == ("pollhub.audit.auth", logging.INFO)
        assert "login_failed" in failed.getMessage()
        assert "username='alice'" in failed.getMessage()

    def test_secrets_never_logged(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="pollhub.audit"):
            LoggingAuditSink().record_event("auth", "registration_failed", {"password": "hunter2-hunter2"})
        assert "hunter2-hunter2" not in caplog.text


class TestNotifiers:
    def test_default_is_log_notifier(self) -> None:
        assert isinstance(build_notifier(get_settings()), LogNotifier)

    def test_smtp_selected_when_host_set(self) -> None:
        settings = get_settings().model_copy(update={"smtp_host": "mail.example.com", "smtp_port": 2465})
        notifier = build_notifier(settings)
        assert isinstance(notifier, SmtpNotifier)
        assert (notifier.host, notifier.port) == ("mail.example.com", 2465)

    def test_log_notifier_logs(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="pollhub.mailer"):
            LogNotifier().send("a@example.com", "Subject line", "body")
        assert "a@example.com" in caplog.text

    def test_log_notifier_body_visible_at_info(self, caplog) -> None:
        _, body = email_confirmation_message("alice", "new@example.com", "https://x/api/v1/confirm_email/abc", 24)
        with caplog.at_level(logging.INFO, logger="pollhub.mailer"):
            LogNotifier().send("new@example.com", "Confirm", body)
        assert any(
            r.levelno == logging.INFO and "https://x/api/v1/confirm_email/abc" in r.getMessage() for r in caplog.records
        )

    def test_smtp_failure_becomes_delivery_error(self, monkeypatch) -> None:
        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "try later")

        monkeypatch.setattr(smtplib, "SMTP_SSL", refuse)
        with pytest.raises(DeliveryError):
            SmtpNotifier("mail.example.com", 465, "noreply@example.com").send("a@example.com", "s", "b")


def test_confirmation_message() -> None:
    subject, body = email_confirmation_message("alice", "new@example.com", "https://x/confirm/abc", 24)
    assert subject == "Confirm your new email address"
    assert "https://x/confirm/abc" in body
    assert "new@example.com" in body
    assert "24 hours" in body
