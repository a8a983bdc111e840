"""
Notification Dispatch Port.

The scheduler never talks to a mail server. Transitions write
NotificationRequests into the outbox inside the same commit; the
dispatcher drains the outbox on its own job and hands each request to a
NotificationSender.

Provides:
- Transports: log (development), SMTP, SendGrid
- Retry with exponential backoff, capped, bounded by max_dispatch_attempts
- Idempotency key passed to the transport so consumers can deduplicate
  (delivery is at-least-once)
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

import httpx

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ConfigurationError, DispatchFailure
from ..core.store import SchedulingStore
from ..models.domain import NotificationRequest, OutboxItem
from ..models.enums import NotificationTemplate


logger = logging.getLogger(__name__)


SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def notification_key(base: str, suffix: Optional[str] = None) -> str:
    """Idempotency key: the fire-event key or "invitation:{id}:{state}", plus an optional recipient suffix."""
    return f"{base}:{suffix}" if suffix else base


def invitation_key(invitation_id: str, state: str, suffix: Optional[str] = None) -> str:
    return notification_key(f"invitation:{invitation_id}:{state}", suffix)


@dataclass
class NotificationResult:
    """Result of a notification attempt."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# ==========================================
# EMAIL TEMPLATES
# ==========================================

class EmailTemplates:
    """
    Subject/body rendering for each template key.

    Bodies are deliberately plain: the branded templates belong to the
    editorial office's mail collaborator, this is the fallback rendering.
    """

    SUBJECTS = {
        NotificationTemplate.STAGE_DEADLINE_REMINDER: "Reminder: {stage_key} due in {days_before} day(s)",
        NotificationTemplate.STAGE_OVERDUE_ESCALATION: "Overdue: manuscript {manuscript_id} in {stage_key} (level {escalation_level})",
        NotificationTemplate.REVIEW_INVITATION: "Invitation to review manuscript {manuscript_id}",
        NotificationTemplate.REVIEW_INVITATION_REMINDER: "Reminder: please respond to the review invitation for {manuscript_id}",
        NotificationTemplate.REVIEW_ACCEPTANCE_CONFIRMATION: "Thank you for agreeing to review {manuscript_id}",
        NotificationTemplate.REVIEW_INVITATION_DECLINED: "Reviewer declined invitation for {manuscript_id}",
        NotificationTemplate.REVIEW_INVITATION_WITHDRAWN: "Review invitation for {manuscript_id} withdrawn",
        NotificationTemplate.REVIEWER_REASSIGNMENT_NEEDED: "Reviewer reassignment needed for {manuscript_id}",
        NotificationTemplate.SCHEDULER_JOB_FAILED: "CRITICAL: scheduler job {job_id} failed {failure_count} times",
    }

    BASE_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
<div style="max-width: 600px; margin: 0 auto; padding: 20px;">
{content}
<p style="color: #888; font-size: 12px;">This is an automated message from the editorial office.</p>
</div>
</body>
</html>
"""

    @classmethod
    def render(cls, template_key: str, payload: dict) -> tuple[str, str, str]:
        """Return (subject, html_body, text_body)."""
        fields = _DefaultDict(payload)
        try:
            subject_format = cls.SUBJECTS[NotificationTemplate(template_key)]
        except ValueError:
            subject_format = template_key.replace("_", " ").capitalize()
        subject = subject_format.format_map(fields)

        lines = [f"{k.replace('_', ' ').capitalize()}: {v}" for k, v in payload.items() if not k.endswith("_url")]
        links = [(k, v) for k, v in payload.items() if k.endswith("_url")]
        text_body = "\n".join([subject, ""] + lines + [f"{k[:-4].capitalize()}: {v}" for k, v in links])

        html_lines = "".join(f"<p>{line}</p>" for line in lines)
        html_links = "".join(
            f'<p><a href="{url}">{key[:-4].replace("_", " ").capitalize()}</a></p>' for key, url in links
        )
        html_body = cls.BASE_HTML.format(content=f"<h2>{subject}</h2>{html_lines}{html_links}")
        return subject, html_body, text_body


class _DefaultDict(dict):
    def __missing__(self, key):
        return "?"


# ==========================================
# SENDERS (the outbound port)
# ==========================================

class NotificationSender(ABC):
    """send(templateKey, recipient, payload, idempotencyKey)"""

    name = "abstract"

    @abstractmethod
    async def send(self, request: NotificationRequest) -> NotificationResult: ...


class LogNotificationSender(NotificationSender):
    """Development transport: logs instead of sending, always succeeds."""

    name = "log"

    def __init__(self):
        self.sent: list[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> NotificationResult:
        subject, _, _ = EmailTemplates.render(request.template_key, request.payload)
        logger.info(f"📧 [log transport] to={request.recipient} subject={subject!r} key={request.idempotency_key}")
        self.sent.append(request)
        return NotificationResult(success=True, message_id=f"log-{request.idempotency_key}")


class SmtpNotificationSender(NotificationSender):
    """SMTP transport; the blocking smtplib call runs in an executor."""

    name = "smtp"

    def __init__(self, config: Settings):
        if not config.smtp_host:
            raise ConfigurationError(
                "SMTP_HOST is required when NOTIFICATION_TRANSPORT=smtp",
                config_key="smtp_host",
            )
        self.config = config

    async def send(self, request: NotificationRequest) -> NotificationResult:
        subject, html_body, text_body = EmailTemplates.render(request.template_key, request.payload)
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.config.smtp_from_name} <{self.config.smtp_from_email}>"
        msg['To'] = request.recipient
        msg['Message-ID'] = make_msgid(idstring=request.idempotency_key.replace(":", "."))
        msg['X-Idempotency-Key'] = request.idempotency_key
        msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._smtp_send_sync, msg)
        except Exception as e:
            logger.error(f"SMTP send failed: {e}")
            return NotificationResult(success=False, error=str(e))
        return NotificationResult(success=True, message_id=msg['Message-ID'])

    def _smtp_send_sync(self, msg: MIMEMultipart) -> None:
        """Synchronous SMTP send for executor."""
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
            if self.config.smtp_use_tls:
                server.starttls()
            if self.config.smtp_user and self.config.smtp_password:
                server.login(self.config.smtp_user, self.config.smtp_password)
            server.send_message(msg)


class SendGridNotificationSender(NotificationSender):
    """SendGrid v3 mail/send over httpx."""

    name = "sendgrid"

    def __init__(self, config: Settings, client: Optional[httpx.AsyncClient] = None):
        if not config.sendgrid_api_key:
            raise ConfigurationError(
                "SENDGRID_API_KEY is required when NOTIFICATION_TRANSPORT=sendgrid",
                config_key="sendgrid_api_key",
            )
        self.config = config
        self._client = client

    async def send(self, request: NotificationRequest) -> NotificationResult:
        subject, html_body, text_body = EmailTemplates.render(request.template_key, request.payload)
        payload = {
            "personalizations": [{"to": [{"email": request.recipient}]}],
            "from": {"email": self.config.sendgrid_from_email, "name": self.config.smtp_from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
            "headers": {"X-Idempotency-Key": request.idempotency_key},
            "custom_args": {"idempotency_key": request.idempotency_key},
        }
        headers = {
            "Authorization": f"Bearer {self.config.sendgrid_api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = await self._client.post(SENDGRID_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(SENDGRID_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"SendGrid send failed: {e}")
            return NotificationResult(success=False, error=str(e))

        if response.status_code in (200, 202):
            return NotificationResult(
                success=True,
                message_id=response.headers.get("X-Message-Id", f"sg-{request.idempotency_key}"),
            )
        return NotificationResult(
            success=False,
            error=f"SendGrid error: {response.status_code} - {response.text}",
        )


def build_sender(config: Optional[Settings] = None) -> NotificationSender:
    """Choose the transport from NOTIFICATION_TRANSPORT."""
    config = config or default_settings
    transport = config.notification_transport.lower()
    if transport == "log":
        return LogNotificationSender()
    if transport == "smtp":
        return SmtpNotificationSender(config)
    if transport == "sendgrid":
        return SendGridNotificationSender(config)
    raise ConfigurationError(
        f"Unknown notification transport '{config.notification_transport}'",
        config_key="notification_transport",
        expected_type="log | smtp | sendgrid",
        actual_value=config.notification_transport,
    )


# ==========================================
# DISPATCHER
# ==========================================

class NotificationDispatcher:
    """
    Drains the outbox.

    A failed send never touches the transition that queued it; the item is
    retried after min(base * 2**(attempts-1), cap) seconds and given up on
    after max_dispatch_attempts.
    """

    def __init__(
        self,
        store: SchedulingStore,
        sender: NotificationSender,
        clock: Clock,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.sender = sender
        self.clock = clock
        self.config = config or default_settings

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt, given how many attempts have failed."""
        seconds = self.config.dispatch_backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.config.dispatch_backoff_cap_seconds))

    async def process_outbox(self, now: Optional[datetime] = None) -> dict:
        """Deliver due outbox items. Store calls are synchronous and run in a worker thread."""
        now = now or self.clock.now()
        due = await asyncio.to_thread(self.store.due_notifications, now, limit=self.config.dispatch_batch_size)
        counts = {"sent": 0, "retried": 0, "failed": 0}
        if not due:
            logger.debug("📭 Outbox empty")
            return counts

        for item in due:
            outcome = await self._deliver(item, now)
            counts[outcome] += 1

        logger.info(
            f"📬 Outbox processed: {counts['sent']} sent, "
            f"{counts['retried']} retry scheduled, {counts['failed']} failed"
        )
        return counts

    async def _deliver(self, item: OutboxItem, now: datetime) -> str:
        try:
            result = await self.sender.send(item.request)
        except Exception as e:
            # A transport that raises is treated like one that reports failure
            logger.error(f"Transport {self.sender.name} raised for {item.idempotency_key}: {e}", exc_info=True)
            result = NotificationResult(success=False, error=str(e))

        if result.success:
            await asyncio.to_thread(self.store.mark_notification_sent, item.id, now)
            logger.debug(f"Delivered {item.idempotency_key} ({result.message_id})")
            return "sent"

        attempts = item.attempts + 1
        failure = DispatchFailure(item.idempotency_key, attempts, result.error or "unknown error")
        if attempts >= self.config.max_dispatch_attempts:
            await asyncio.to_thread(self.store.mark_notification_failed, item.id, attempts, failure.message, None)
            logger.critical(f"🚨 Giving up on notification: {failure.message}. Operator follow-up required.")
            return "failed"

        retry_at = now + self.backoff_for(attempts)
        await asyncio.to_thread(self.store.mark_notification_failed, item.id, attempts, failure.message, retry_at)
        logger.warning(f"{failure.message}. Retrying at {retry_at.isoformat()}")
        return "retried"

    async def send_now(self, request: NotificationRequest) -> NotificationResult:
        """Out-of-band send that bypasses the outbox (operations alerts)."""
        return await self.sender.send(request)
