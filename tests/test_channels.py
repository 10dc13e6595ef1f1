"""
Channel sender tests - Twilio, SendGrid and push gateway adapters with
mocked provider clients.
"""
import json
from unittest.mock import MagicMock

import httpx
import pytest

from eventdispatch.schemas.notifications import ChannelContent, Recipient
from eventdispatch.services.channels import HttpPushSender, SendGridEmailSender, TwilioSmsSender


@pytest.fixture
def content():
    return ChannelContent(
        notification_id="n_1",
        type="WARNING",
        title="Card expiring",
        subject="[Warning] Card expiring",
        body="Update your card <today>",
    )


@pytest.fixture
def recipient():
    return Recipient(
        user_id="u1",
        name="Ada",
        email="ada@example.com",
        phone="+14155552671",
        push_token="tok_1",
    )


class TestTwilioSmsSender:

    async def test_not_configured(self, settings, recipient, content):
        result = await TwilioSmsSender(settings).send(recipient, content)
        assert result.success is False
        assert result.error == "Twilio not configured"

    async def test_sends_from_number(self, settings, recipient, content):
        settings = settings.model_copy(update={"twilio_from_number": "+15550001111"})
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM123")

        result = await TwilioSmsSender(settings, client=client).send(recipient, content)

        assert result.success is True
        assert result.provider_message_id == "SM123"
        client.messages.create.assert_called_once_with(
            to="+14155552671", body="Update your card <today>", from_="+15550001111"
        )

    async def test_prefers_messaging_service(self, settings, recipient, content):
        settings = settings.model_copy(update={"twilio_messaging_service_sid": "MG1"})
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM124")

        await TwilioSmsSender(settings, client=client).send(recipient, content)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["messaging_service_sid"] == "MG1"
        assert "from_" not in kwargs

    async def test_provider_error_is_result(self, settings, recipient, content):
        client = MagicMock()
        client.messages.create.side_effect = RuntimeError("21211 invalid 'To'")

        result = await TwilioSmsSender(settings, client=client).send(recipient, content)

        assert result.success is False
        assert "21211" in result.error


class TestSendGridEmailSender:

    async def test_not_configured(self, settings, recipient, content):
        result = await SendGridEmailSender(settings).send(recipient, content)
        assert result.error == "SendGrid not configured"

    async def test_sends_mail(self, settings, recipient, content):
        client = MagicMock()
        client.send.return_value = MagicMock(status_code=202, headers={"X-Message-Id": "sg_1"})

        result = await SendGridEmailSender(settings, client=client).send(recipient, content)

        assert result.success is True
        assert result.provider_message_id == "sg_1"
        mail = client.send.call_args.args[0].get()
        assert mail["subject"] == "[Warning] Card expiring"
        assert mail["personalizations"][0]["to"][0]["email"] == "ada@example.com"
        html_part = [c for c in mail["content"] if c["type"] == "text/html"][0]
        assert "&lt;today&gt;" in html_part["value"]

    async def test_http_error_status(self, settings, recipient, content):
        client = MagicMock()
        client.send.return_value = MagicMock(status_code=400, headers={})

        result = await SendGridEmailSender(settings, client=client).send(recipient, content)

        assert result.success is False
        assert result.error == "SendGrid returned HTTP 400"

    async def test_client_exception(self, settings, recipient, content):
        client = MagicMock()
        client.send.side_effect = RuntimeError("Unauthorized")

        result = await SendGridEmailSender(settings, client=client).send(recipient, content)

        assert result.success is False
        assert result.error == "Unauthorized"


class TestHttpPushSender:

    async def test_not_configured(self, settings, recipient, content, make_http_client):
        client = make_http_client(lambda request: httpx.Response(200))
        result = await HttpPushSender(client, settings).send(recipient, content)
        assert result.error == "Push gateway not configured"

    async def test_posts_to_gateway(self, settings, recipient, content, make_http_client):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "push_1"})

        settings = settings.model_copy(update={
            "push_gateway_url": "https://push.example.com/send",
            "push_gateway_token": "secret",
        })
        result = await HttpPushSender(make_http_client(handler), settings).send(recipient, content)

        assert result.success is True
        assert result.provider_message_id == "push_1"
        assert seen[0].headers["Authorization"] == "Bearer secret"
        body = json.loads(seen[0].content)
        assert body["token"] == "tok_1"
        assert body["data"] == {"notificationId": "n_1", "type": "WARNING"}

    async def test_gateway_error_status(self, settings, recipient, content, make_http_client):
        settings = settings.model_copy(update={"push_gateway_url": "https://push.example.com/send"})
        client = make_http_client(lambda request: httpx.Response(503))

        result = await HttpPushSender(client, settings).send(recipient, content)

        assert result.success is False
        assert result.error == "Push gateway returned HTTP 503"

    async def test_non_json_success(self, settings, recipient, content, make_http_client):
        settings = settings.model_copy(update={"push_gateway_url": "https://push.example.com/send"})
        client = make_http_client(lambda request: httpx.Response(200, text="queued"))

        result = await HttpPushSender(client, settings).send(recipient, content)

        assert result.success is True
        assert result.provider_message_id is None

    async def test_network_error(self, settings, recipient, content, make_http_client):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        settings = settings.model_copy(update={"push_gateway_url": "https://push.example.com/send"})
        result = await HttpPushSender(make_http_client(handler), settings).send(recipient, content)

        assert result.success is False
        assert "connection refused" in result.error
