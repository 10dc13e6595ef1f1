"""
Notification channel senders - thin adapters over the provider SDKs.

Every sender exposes send(recipient, content) -> SendResult. Provider errors
come back as SendResult(success=False); the resolver also guards against
senders that raise.
"""
import asyncio
import html
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from eventdispatch.config import Settings, get_settings
from eventdispatch.schemas.notifications import ChannelContent, Recipient, SendResult
from eventdispatch.utils.phone import mask_phone

logger = logging.getLogger(__name__)

# Twilio client timeout
TWILIO_CLIENT_TIMEOUT = 10
PUSH_TIMEOUT_SECONDS = 10.0


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


class ChannelSender(ABC):
    """Abstract sender for one notification channel."""

    @abstractmethod
    async def send(self, recipient: Recipient, content: ChannelContent) -> SendResult:
        ...


def _get_twilio_client(settings: Settings):
    """Get a Twilio REST client with configured timeout."""
    from twilio.http.http_client import TwilioHttpClient
    from twilio.rest import Client as TwilioClient
    http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


class TwilioSmsSender(ChannelSender):
    """SMS over Twilio. Expects recipient.phone already normalized to E.164."""

    def __init__(self, settings: Optional[Settings] = None, client=None):
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = _get_twilio_client(self._settings)
        return self._client

    async def send(self, recipient: Recipient, content: ChannelContent) -> SendResult:
        if self._client is None and not self._settings.twilio_account_sid:
            return SendResult(success=False, error="Twilio not configured")

        params = {"to": recipient.phone, "body": content.body}
        if self._settings.twilio_messaging_service_sid:
            params["messaging_service_sid"] = self._settings.twilio_messaging_service_sid
        else:
            params["from_"] = self._settings.twilio_from_number

        try:
            client = self._get_client()
            message = await _run_sync(client.messages.create, **params)
        except Exception as e:
            logger.error("Twilio send failed to %s: %s", mask_phone(recipient.phone), str(e))
            return SendResult(success=False, error=str(e))

        logger.info("SMS sent to %s sid=%s", mask_phone(recipient.phone), message.sid)
        return SendResult(success=True, provider_message_id=message.sid)


class SendGridEmailSender(ChannelSender):
    """Transactional email over SendGrid."""

    def __init__(self, settings: Optional[Settings] = None, client=None):
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self):
        if self._client is None:
            from sendgrid import SendGridAPIClient
            self._client = SendGridAPIClient(api_key=self._settings.sendgrid_api_key)
        return self._client

    async def send(self, recipient: Recipient, content: ChannelContent) -> SendResult:
        if self._client is None and not self._settings.sendgrid_api_key:
            logger.error("No SendGrid API key configured for notification email")
            return SendResult(success=False, error="SendGrid not configured")

        from sendgrid.helpers.mail import Content, Email, Mail, To

        message = Mail(
            from_email=Email(self._settings.sendgrid_from_email, self._settings.sendgrid_from_name),
            to_emails=To(recipient.email, recipient.name),
            subject=content.subject,
        )
        message.content = [
            Content("text/plain", content.body),
            Content("text/html", _render_html(content)),
        ]

        try:
            response = await _run_sync(self._get_client().send, message)
        except Exception as e:
            logger.error("Notification email failed: to=%s error=%s", recipient.email[:20] + "***", str(e))
            return SendResult(success=False, error=str(e))

        if response.status_code >= 300:
            return SendResult(success=False, error=f"SendGrid returned HTTP {response.status_code}")

        message_id = response.headers.get("X-Message-Id", "") or None
        logger.info("Notification email sent: to=%s subject=%s", recipient.email[:20] + "***", content.subject[:40])
        return SendResult(success=True, provider_message_id=message_id)


def _render_html(content: ChannelContent) -> str:
    return (
        f"<h2>{html.escape(content.title)}</h2>"
        f"<p>{html.escape(content.body).replace(chr(10), '<br>')}</p>"
    )


class HttpPushSender(ChannelSender):
    """Push notifications through an HTTP push gateway."""

    def __init__(self, http_client: httpx.AsyncClient, settings: Optional[Settings] = None):
        self._http = http_client
        self._settings = settings or get_settings()

    async def send(self, recipient: Recipient, content: ChannelContent) -> SendResult:
        if not self._settings.push_gateway_url:
            return SendResult(success=False, error="Push gateway not configured")

        headers = {}
        if self._settings.push_gateway_token:
            headers["Authorization"] = f"Bearer {self._settings.push_gateway_token}"
        payload = {
            "token": recipient.push_token,
            "userId": recipient.user_id,
            "title": content.title,
            "body": content.body,
            "data": {"notificationId": content.notification_id, "type": content.type},
        }

        try:
            response = await self._http.post(
                self._settings.push_gateway_url,
                json=payload,
                headers=headers,
                timeout=PUSH_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.error("Push gateway request failed: %s", str(e) or type(e).__name__)
            return SendResult(success=False, error=str(e) or type(e).__name__)

        if not response.is_success:
            return SendResult(success=False, error=f"Push gateway returned HTTP {response.status_code}")

        message_id = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message_id = body.get("id")
        return SendResult(success=True, provider_message_id=message_id)
