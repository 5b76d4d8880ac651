"""
Lease Automation -- Local Queue Store

Durable staging area and retry driver for locally queued messages.  This is
the local delivery backend: ``queue_email`` only enqueues, the real outcome
is decided later by ``process_email_queue``.

Queue lifecycle::

    queued (attempts=0) --pass--> sent         (SentEmail success=True, removed)
                        --pass--> queued       (error recorded, attempts < max)
                        --pass--> abandoned    (SentEmail success=False, removed)

State lives in the persisted local state units ``email_queue``,
``sent_emails`` and ``mail_config``; every mutation is written through
immediately.

Usage:
    backend = LocalEmailBackend(LocalStateStore("data/local_state.db"))
    await backend.queue_email(EmailOptions(to=["a@example.com"], subject="Hi"))
    sent = await backend.process_email_queue()
"""

from __future__ import annotations

import asyncio
import logging
import random
import smtplib
import ssl
import uuid
from base64 import b64decode
from datetime import datetime, timedelta, timezone
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Callable, Optional, Protocol

from .errors import DeliveryError
from .local_state import EMAIL_QUEUE, MAIL_CONFIG, SENT_EMAILS, LocalStateStore
from .models import EmailOptions, EmailResult, MailConfig, QueuedEmail, SentEmail, VerifyResult

logger = logging.getLogger(__name__)

BACKEND_NAME = "local"
DEFAULT_MAX_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ===========================================================================
# Transports
# ===========================================================================

class Transport(Protocol):
    """Performs one delivery attempt; raises DeliveryError on failure."""

    async def send(self, config: MailConfig, options: EmailOptions) -> None: ...


class SimulatedTransport:
    """Random outcome with a configurable success rate.

    Pass a seeded ``random.Random`` for reproducible runs.
    """

    def __init__(self, success_rate: float = 0.9, rng: random.Random | None = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    async def send(self, config: MailConfig, options: EmailOptions) -> None:
        if self.rng.random() >= self.success_rate:
            raise DeliveryError("Simulated send failure in local mode")
        logger.info("Simulated delivery to %s: %s", ", ".join(options.to), options.subject)


def build_mime_message(config: MailConfig, options: EmailOptions) -> MIMEMultipart:
    """Build a MIME message with text/html alternatives and base64 attachments."""
    msg = MIMEMultipart("mixed")
    msg["From"] = config.from_address
    msg["To"] = ", ".join(options.to)
    if options.cc:
        msg["Cc"] = ", ".join(options.cc)
    if config.reply_to:
        msg["Reply-To"] = config.reply_to
    msg["Subject"] = options.subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()

    body = MIMEMultipart("alternative")
    if options.text:
        body.attach(MIMEText(options.text, "plain", "utf-8"))
    if options.html:
        body.attach(MIMEText(options.html, "html", "utf-8"))
    if not options.text and not options.html:
        body.attach(MIMEText("", "plain", "utf-8"))
    msg.attach(body)

    for attachment in options.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        part = MIMEBase(maintype or "application", subtype or "octet-stream")
        if attachment.encoding == "base64":
            part.set_payload(b64decode(attachment.content))
        else:
            part.set_payload(attachment.content.encode("utf-8"))
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        msg.attach(part)

    return msg


class SmtpTransport:
    """Real delivery over smtplib, run in a worker thread.

    ``secure`` selects implicit TLS (SMTP_SSL, usually port 465); otherwise
    the connection is upgraded with STARTTLS.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def _send_sync(self, config: MailConfig, options: EmailOptions) -> None:
        try:
            msg = build_mime_message(config, options)
        except (ValueError, TypeError) as exc:
            raise DeliveryError(f"Could not build message: {exc}") from exc
        recipients = list(options.to) + list(options.cc) + list(options.bcc)
        context = ssl.create_default_context()
        try:
            if config.secure:
                with smtplib.SMTP_SSL(config.host, config.port, timeout=self.timeout,
                                      context=context) as server:
                    server.login(config.username, config.password)
                    server.sendmail(config.from_address, recipients, msg.as_string())
            else:
                with smtplib.SMTP(config.host, config.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    server.login(config.username, config.password)
                    server.sendmail(config.from_address, recipients, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise DeliveryError(f"SMTP authentication failed for {config.username}") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise DeliveryError(f"Recipients refused: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP send failed: {exc}") from exc

    async def send(self, config: MailConfig, options: EmailOptions) -> None:
        await asyncio.to_thread(self._send_sync, config, options)
        logger.info("Sent email via %s to %s", config.host, ", ".join(options.to))


# ===========================================================================
# Local backend
# ===========================================================================

class LocalEmailBackend:
    """Local delivery backend over the persisted queue and sent log."""

    name = BACKEND_NAME

    def __init__(
        self,
        state: LocalStateStore,
        transport: Transport | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_interval_seconds: float = 0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.state = state
        self.transport = transport or SimulatedTransport()
        self.max_attempts = max_attempts
        self.retry_interval_seconds = retry_interval_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> Optional[MailConfig]:
        raw = self.state.load(MAIL_CONFIG)
        if not isinstance(raw, dict):
            return None
        return MailConfig.from_dict(raw)

    def save_config(self, config: MailConfig) -> None:
        self.state.save(MAIL_CONFIG, config.to_dict())

    def clear_config(self) -> None:
        self.state.delete(MAIL_CONFIG)

    def _active_config(self, config: MailConfig | None) -> tuple[Optional[MailConfig], str | None]:
        config = config or self.get_config()
        if config is None:
            return None, "Mail configuration not found"
        if not config.enabled:
            return None, "Mail service is disabled"
        return config, None

    def is_configured(self, config: MailConfig | None = None) -> bool:
        return self._active_config(config)[0] is not None

    # ------------------------------------------------------------------
    # Queue / sent log persistence
    # ------------------------------------------------------------------

    def get_queue(self) -> list[QueuedEmail]:
        return [QueuedEmail.from_dict(d) for d in self.state.load(EMAIL_QUEUE, [])]

    def get_sent_emails(self) -> list[SentEmail]:
        return [SentEmail.from_dict(d) for d in self.state.load(SENT_EMAILS, [])]

    def _save_queue(self, queue: list[QueuedEmail]) -> None:
        self.state.save(EMAIL_QUEUE, [e.to_dict() for e in queue])

    def _append_sent(self, record: SentEmail) -> None:
        sent = self.state.load(SENT_EMAILS, [])
        sent.append(record.to_dict())
        self.state.save(SENT_EMAILS, sent)

    def _write_entry(self, entry: QueuedEmail, remove: bool) -> None:
        """Replace or drop ``entry`` in the persisted queue by id."""
        queue = [e for e in self.get_queue() if e.id != entry.id] if remove else [
            entry if e.id == entry.id else e for e in self.get_queue()
        ]
        self._save_queue(queue)

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    async def verify_connection(self, config: MailConfig | None = None) -> VerifyResult:
        """Simulated probe: succeeds whenever an enabled configuration exists."""
        active, error = self._active_config(config)
        if active is None:
            return VerifyResult(success=False, error=error, backend=self.name)
        return VerifyResult(success=True, backend=self.name)

    async def send(self, config: MailConfig | None, options: EmailOptions) -> EmailResult:
        return await self.queue_email(options, config)

    async def queue_email(self, options: EmailOptions, config: MailConfig | None = None) -> EmailResult:
        """Append ``options`` to the queue with zero attempts.

        Fails only when the configuration is absent or disabled.
        """
        active, error = self._active_config(config)
        if active is None:
            logger.warning("Refusing to queue email '%s': %s", options.subject, error)
            return EmailResult(success=False, error=error, backend=self.name)

        entry = QueuedEmail(
            id=f"email_{uuid.uuid4().hex}",
            options=options,
            created_at=self._clock().isoformat(),
        )
        queue = self.get_queue()
        queue.append(entry)
        self._save_queue(queue)
        logger.info("Queued email %s for %s", entry.id, ", ".join(options.to))
        return EmailResult(success=True, message_id=entry.id, backend=self.name)

    def _waiting_for_retry(self, entry: QueuedEmail, now: datetime) -> bool:
        if not self.retry_interval_seconds or not entry.last_attempt:
            return False
        try:
            last = datetime.fromisoformat(entry.last_attempt)
        except ValueError:
            return False
        return now - last < timedelta(seconds=self.retry_interval_seconds)

    async def process_email_queue(self, config: MailConfig | None = None) -> int:
        """Attempt every queued entry once.  Returns the number delivered."""
        active, error = self._active_config(config)
        if active is None:
            logger.info("Skipping queue processing: %s", error)
            return 0

        snapshot = self.get_queue()
        if not snapshot:
            return 0

        succeeded = 0
        for entry in snapshot:
            now = self._clock()
            if self._waiting_for_retry(entry, now):
                continue

            entry.attempts += 1
            entry.last_attempt = now.isoformat()
            try:
                await self.transport.send(active, entry.options)
            except Exception as exc:
                if not isinstance(exc, DeliveryError):
                    logger.exception("Unexpected error delivering %s", entry.id)
                entry.error = str(exc) or type(exc).__name__
                if entry.attempts >= self.max_attempts:
                    logger.warning(
                        "Giving up on %s after %d attempts: %s", entry.id, entry.attempts, exc
                    )
                    self._append_sent(SentEmail(
                        id=entry.id,
                        to=entry.options.to,
                        subject=entry.options.subject,
                        sent_at=now.isoformat(),
                        success=False,
                        error=f"Maximum attempts reached: {exc}",
                    ))
                    self._write_entry(entry, remove=True)
                else:
                    logger.info(
                        "Attempt %d/%d failed for %s: %s",
                        entry.attempts, self.max_attempts, entry.id, exc,
                    )
                    self._write_entry(entry, remove=False)
                continue

            self._append_sent(SentEmail(
                id=entry.id,
                to=entry.options.to,
                subject=entry.options.subject,
                sent_at=now.isoformat(),
                success=True,
            ))
            self._write_entry(entry, remove=True)
            succeeded += 1

        logger.info("Processed email queue: %d/%d delivered", succeeded, len(snapshot))
        return succeeded

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def clear_email_queue(self) -> int:
        count = len(self.state.load(EMAIL_QUEUE, []))
        self._save_queue([])
        logger.info("Cleared %d queued emails", count)
        return count

    def clear_sent_emails(self) -> int:
        count = len(self.state.load(SENT_EMAILS, []))
        self.state.save(SENT_EMAILS, [])
        logger.info("Cleared %d sent email records", count)
        return count
