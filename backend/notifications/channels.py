"""
Delivery channels for queued notifications.

Email (SendGrid) is the primary channel: transport failures raise
NotificationDeliveryError so the worker records the attempt and retries
with backoff. WhatsApp (Twilio REST) is best effort: failures are logged
and never fail the job. An unconfigured channel logs the message as
disabled and counts as delivered.
"""

import asyncio
import re

import httpx
import sendgrid
import structlog
from sendgrid.helpers.mail import Cc, Mail
from tenacity import retry, stop_after_attempt, wait_exponential

from core.config import get_settings

logger = structlog.get_logger()

TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")


class NotificationDeliveryError(Exception):
    """The primary channel could not deliver a message."""


def html_to_text(html: str) -> str:
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()


class EmailChannel:
    """HTML email through SendGrid; the sender is copied on every message."""

    async def send(self, to_email: str, subject: str, html_content: str) -> bool:
        settings = get_settings()
        if not settings.email_configured:
            logger.info(
                "notifications.email_disabled",
                to=to_email,
                subject=subject,
                content=html_to_text(html_content),
            )
            return True

        message = Mail(
            from_email=settings.notification_from_email,
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
        )
        if settings.notification_cc_sender and to_email.lower() != settings.notification_from_email.lower():
            message.add_cc(Cc(settings.notification_from_email))

        try:
            client = sendgrid.SendGridAPIClient(api_key=settings.sendgrid_api_key)
            response = await asyncio.to_thread(client.send, message)
        except Exception as exc:
            raise NotificationDeliveryError(f"Email to {to_email} failed: {exc}") from exc

        if response.status_code not in (200, 201, 202):
            raise NotificationDeliveryError(f"Email to {to_email} rejected with status {response.status_code}")
        logger.info("notifications.email_sent", to=to_email, subject=subject)
        return True


class WhatsAppChannel:
    """Plain-text WhatsApp messages through the Twilio Messages API."""

    async def send(self, to_phone: str, body: str) -> bool:
        settings = get_settings()
        if not settings.whatsapp_configured:
            logger.info("notifications.whatsapp_disabled", to=to_phone, content=body)
            return True
        try:
            sid = await self._post_message(to_phone, body)
        except httpx.HTTPError as exc:
            logger.warning("notifications.whatsapp_failed", to=to_phone, error=str(exc))
            return False
        logger.info("notifications.whatsapp_sent", to=to_phone, sid=sid)
        return True

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _post_message(self, to_phone: str, body: str) -> str | None:
        settings = get_settings()
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.post(
                TWILIO_API_URL.format(sid=settings.twilio_account_sid),
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                data={
                    "From": f"whatsapp:{settings.twilio_whatsapp_number}",
                    "To": f"whatsapp:{to_phone}",
                    "Body": body,
                },
            )
            response.raise_for_status()
            return response.json().get("sid")
