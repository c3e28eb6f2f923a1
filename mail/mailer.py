"""
mail/mailer.py -- Outbound transactional email over SMTP.

SMTPMailer.send() is a coroutine. The blocking smtplib conversation runs in a
worker thread and is raced against MAIL_SEND_TIMEOUT_SECONDS with
asyncio.wait_for(). The SMTP connection has its own socket timeout and is
always closed by its context manager, whether the send succeeds, fails, or the
caller stops waiting.

Failures raise MailDeliveryError. Whether that matters is the caller's
decision: forgot-password lets it fail the request, the signup outbox logs it
and moves on.

When SMTP is not configured and DEBUG is on, messages are logged instead of
sent so local development works without a mail server.

Layer rule: may import from core/. No imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from core.config import Settings, get_settings

logger = logging.getLogger("atrium.mail")

SUBMISSION_PORT = 587


class MailDeliveryError(Exception):
    """The message could not be handed to the mail server."""


@dataclass
class MailMessage:
    to: str
    subject: str
    html: str


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SMTPMailer:
    """Send HTML email through a single SMTP server.

    A new connection is opened for every message. Long-lived SMTP connections
    go stale behind cloud NATs, and transactional volume here is low.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def is_configured(self) -> bool:
        return self.settings.mail_configured

    @property
    def sender(self) -> str:
        return f'"{self.settings.app_name}" <{self.settings.smtp_from}>'

    async def send(self, to: str, subject: str, html: str) -> None:
        """Deliver one message or raise MailDeliveryError."""
        message = MailMessage(to=to, subject=subject, html=html)
        if not self.is_configured:
            if self.settings.debug:
                logger.info("Mail not configured, logging instead: to=%s subject=%r", redact_email(to), subject)
                return
            raise MailDeliveryError("SMTP_HOST and SMTP_FROM must be configured")

        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._deliver, message),
                timeout=self.settings.mail_send_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self._log_failure(message, exc)
            raise MailDeliveryError(
                f"Email sending timed out after {self.settings.mail_send_timeout_seconds:g} seconds"
            ) from exc
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            self._log_failure(message, exc)
            raise MailDeliveryError(str(exc)) from exc
        logger.info("Email sent to %s (%r)", redact_email(to), subject)

    def _build(self, message: MailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = message.to
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def _deliver(self, message: MailMessage) -> None:
        """Blocking SMTP conversation. Runs in a worker thread."""
        cfg = self.settings
        context = ssl.create_default_context()
        mime = self._build(message)
        logger.debug("Connecting to SMTP %s:%d (secure=%s)", cfg.smtp_host, cfg.smtp_port, cfg.smtp_secure)
        if cfg.smtp_secure:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                cfg.smtp_host, cfg.smtp_port, context=context, timeout=cfg.smtp_timeout_seconds
            )
        else:
            server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds)
        with server:
            # Submission port requires STARTTLS. Plain relays (25, 1025) are left alone.
            if not cfg.smtp_secure and cfg.smtp_port == SUBMISSION_PORT:
                server.starttls(context=context)
            if cfg.smtp_user and cfg.smtp_password:
                server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.smtp_from, [message.to], mime.as_string())

    def _log_failure(self, message: MailMessage, exc: BaseException) -> None:
        # Operator log only. Presence flags, never secret values.
        cfg = self.settings
        logger.error(
            "Email sending failed: to=%s subject=%r error_type=%s error=%s "
            "smtp_host=%s smtp_port=%d smtp_secure=%s smtp_user=%s smtp_password=%s smtp_from=%s",
            redact_email(message.to),
            message.subject,
            type(exc).__name__,
            exc,
            cfg.smtp_host or "missing",
            cfg.smtp_port,
            cfg.smtp_secure,
            "set" if cfg.smtp_user else "missing",
            "set" if cfg.smtp_password else "missing",
            cfg.smtp_from or "missing",
        )
