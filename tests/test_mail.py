"""
tests/test_mail.py -- SMTP mailer, outbox worker and email templates.

smtplib is patched; no test opens a socket.
"""

from __future__ import annotations

import asyncio
import smtplib
import time
from unittest.mock import MagicMock, patch

import pytest

from core.config import get_settings
from mail.mailer import MailDeliveryError, MailMessage, SMTPMailer, redact_email
from mail.outbox import MailOutbox
from mail.templates import render_template


def _settings(**overrides):
    base = {"smtp_host": "smtp.example.com", "smtp_from": "noreply@example.com", "smtp_port": 587}
    base.update(overrides)
    return get_settings().model_copy(update=base)


def test_redact_email():
    assert redact_email("ana.maria@example.com") == "an***@example.com"
    assert redact_email("no-at-sign") == "redacted"


class TestSMTPMailer:
    def test_sends_over_starttls_with_login(self):
        mailer = SMTPMailer(_settings(smtp_user="user", smtp_password="pw"))
        with patch("mail.mailer.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))

        smtp_cls.assert_called_once()
        assert smtp_cls.call_args.args[:2] == ("smtp.example.com", 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        from_addr, to_addrs, body = server.sendmail.call_args.args
        assert from_addr == "noreply@example.com"
        assert to_addrs == ["ana@example.com"]
        assert "Subject: Hello" in body

    def test_implicit_tls_skips_starttls(self):
        mailer = SMTPMailer(_settings(smtp_secure=True, smtp_port=465))
        with patch("mail.mailer.smtplib.SMTP_SSL") as ssl_cls:
            server = ssl_cls.return_value
            asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))
        server.starttls.assert_not_called()
        server.login.assert_not_called()
        server.sendmail.assert_called_once()

    def test_plain_relay_skips_starttls(self):
        mailer = SMTPMailer(_settings(smtp_port=1025))
        with patch("mail.mailer.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))
        assert smtp_cls.call_args.args[:2] == ("smtp.example.com", 1025)
        server.starttls.assert_not_called()
        server.sendmail.assert_called_once()

    def test_smtp_error_becomes_delivery_error(self):
        mailer = SMTPMailer(_settings())
        with patch("mail.mailer.smtplib.SMTP") as smtp_cls:
            smtp_cls.side_effect = smtplib.SMTPConnectError(421, b"busy")
            with pytest.raises(MailDeliveryError):
                asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))

    def test_timeout_becomes_delivery_error(self):
        mailer = SMTPMailer(_settings(mail_send_timeout_seconds=0.05))
        with patch.object(SMTPMailer, "_deliver", side_effect=lambda message: time.sleep(0.5)):
            with pytest.raises(MailDeliveryError, match="timed out"):
                asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))

    def test_unconfigured_in_debug_logs_instead_of_sending(self):
        mailer = SMTPMailer(_settings(smtp_host="", debug=True))
        with patch("mail.mailer.smtplib.SMTP") as smtp_cls:
            asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))
        smtp_cls.assert_not_called()

    def test_unconfigured_in_production_raises(self):
        mailer = SMTPMailer(_settings(smtp_host="", debug=False))
        with pytest.raises(MailDeliveryError):
            asyncio.run(mailer.send("ana@example.com", "Hello", "<p>hi</p>"))

    def test_sender_uses_app_name(self):
        mailer = SMTPMailer(_settings(app_name="Atrium"))
        assert mailer.sender == '"Atrium" <noreply@example.com>'


class TestMailOutbox:
    def test_worker_delivers_queued_messages(self):
        mailer = MagicMock()
        sent = []

        async def send(to, subject, html):
            sent.append(to)

        mailer.send = send

        async def scenario():
            outbox = MailOutbox(mailer)
            outbox.start()
            outbox.enqueue(MailMessage(to="a@example.com", subject="s", html="h"))
            outbox.enqueue(MailMessage(to="b@example.com", subject="s", html="h"))
            await outbox.drain()
            await outbox.stop()
            return outbox.pending()

        assert asyncio.run(scenario()) == 0
        assert sent == ["a@example.com", "b@example.com"]

    def test_delivery_failure_does_not_stop_the_worker(self):
        attempts = []

        class FlakyMailer:
            async def send(self, to, subject, html):
                attempts.append(to)
                if to == "bad@example.com":
                    raise MailDeliveryError("rejected")
                if to == "worse@example.com":
                    raise RuntimeError("bug")

        async def scenario():
            outbox = MailOutbox(FlakyMailer())
            outbox.start()
            for to in ("bad@example.com", "worse@example.com", "good@example.com"):
                outbox.enqueue(MailMessage(to=to, subject="s", html="h"))
            await outbox.drain()
            await outbox.stop()

        asyncio.run(scenario())
        assert attempts == ["bad@example.com", "worse@example.com", "good@example.com"]


class TestTemplates:
    def test_verify_email_template(self):
        html = render_template(
            "verify-email.html",
            name="Ana",
            appName="Atrium",
            emailVerificationURL="http://localhost:3000/api/auth/v1/verify-email?token=abc",
            expiresAt="Thu, 01 Jan 2026 00:00:00 GMT",
            logoURL="http://localhost:3000/logo.jpg",
        )
        assert "Hi Ana," in html
        assert "verify-email?token=abc" in html
        assert "Thu, 01 Jan 2026 00:00:00 GMT" in html

    def test_reset_password_template(self):
        html = render_template(
            "reset-password.html",
            name="there",
            appName="Atrium",
            resetPasswordURL="http://localhost:3000/reset-password?token=xyz",
            expiresAt="soon",
            logoURL="http://localhost:3000/logo.jpg",
        )
        assert "reset-password?token=xyz" in html
        assert "Hi there," in html

    def test_recipient_name_does_not_clash_with_template_name(self):
        html = render_template(
            "verify-email.html",
            name="<b>Mallory</b>",
            appName="Atrium",
            emailVerificationURL="http://localhost:3000/api/auth/v1/verify-email?token=abc",
            expiresAt="soon",
            logoURL="http://localhost:3000/logo.jpg",
        )
        assert "&lt;b&gt;Mallory&lt;/b&gt;" in html
