"""
mail/outbox.py -- Best-effort background delivery for notification email.

Signup must not wait on the mail server, and a mail failure must not fail the
signup. Flows call enqueue() and return; a single worker task started by the
app lifespan drains the queue through the mailer. Delivery failures are
logged and dropped.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging

from mail.mailer import MailDeliveryError, MailMessage, SMTPMailer, redact_email

logger = logging.getLogger("atrium.mail.outbox")


class MailOutbox:
    """asyncio.Queue of MailMessage plus one consumer task.

    Usage (inside a running event loop):
        outbox = MailOutbox(mailer)
        outbox.start()
        outbox.enqueue(MailMessage(to=..., subject=..., html=...))
        await outbox.drain()
        await outbox.stop()
    """

    def __init__(self, mailer: SMTPMailer) -> None:
        self.mailer = mailer
        self._queue: asyncio.Queue[MailMessage] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="mail-outbox")

    def enqueue(self, message: MailMessage) -> None:
        """Hand a message to the worker. Never blocks; the queue is unbounded."""
        self._queue.put_nowait(message)
        logger.debug("Queued email to %s (%r)", redact_email(message.to), message.subject)

    def pending(self) -> int:
        return self._queue.qsize()

    async def drain(self) -> None:
        """Wait until every queued message has been attempted."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        if self._queue.qsize():
            logger.warning("Mail outbox stopped with %d unsent messages", self._queue.qsize())

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.mailer.send(message.to, message.subject, message.html)
            except MailDeliveryError as exc:
                logger.warning("Dropped email to %s (%r): %s", redact_email(message.to), message.subject, exc)
            except Exception:
                logger.exception("Unexpected error delivering email to %s", redact_email(message.to))
            finally:
                self._queue.task_done()
