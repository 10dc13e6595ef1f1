"""
Notification resolver tests - channel resolution, persistence-first,
channel isolation and delivery annotations.
"""
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from eventdispatch.errors import NotFoundError, PersistenceError, ValidationError
from eventdispatch.models.notification import Notification
from eventdispatch.schemas.notifications import NotificationRequest, SendResult
from eventdispatch.services.notifications import (
    NotificationService,
    render_sms,
    render_subject,
)


@pytest.fixture
def senders(make_sender):
    return {
        "EMAIL": make_sender(message_id="email_1"),
        "SMS": make_sender(message_id="sms_1"),
        "PUSH": make_sender(message_id="push_1"),
    }


@pytest.fixture
def service(store, senders, audit_sink, settings):
    return NotificationService(store, senders=senders, audit_sink=audit_sink, settings=settings)


async def _contact(service, owner_type="user", owner_id="u1", **fields):
    return await service.set_contact(owner_type, owner_id, **fields)


class TestChannelResolution:

    async def test_no_preference_means_in_app_only(self, service, senders):
        notification = await service.notify({"user_id": "u1", "type": "INFO", "title": "x", "message": "y"})

        assert notification.data["deliveryChannels"] == ["IN_APP"]
        for sender in senders.values():
            sender.send.assert_not_called()

    async def test_user_preference_wins_over_organization(self, service):
        await service.set_preference("user", "u1", "WARNING", ["SMS"])
        await service.set_preference("organization", "org_1", "WARNING", ["EMAIL", "PUSH"])

        request = NotificationRequest(user_id="u1", organization_id="org_1", type="WARNING", title="t", message="m")
        assert await service.resolve_channels(request) == ["IN_APP", "SMS"]

    async def test_organization_preference_is_fallback(self, service):
        await service.set_preference("organization", "org_1", "ERROR", ["EMAIL"])

        request = NotificationRequest(user_id="u1", organization_id="org_1", type="ERROR", title="t", message="m")
        assert await service.resolve_channels(request) == ["IN_APP", "EMAIL"]

    async def test_preference_is_per_type(self, service):
        await service.set_preference("user", "u1", "ERROR", ["EMAIL"])

        request = NotificationRequest(user_id="u1", type="INFO", title="t", message="m")
        assert await service.resolve_channels(request) == ["IN_APP"]

    async def test_override_wins_and_in_app_is_forced(self, service):
        await service.set_preference("user", "u1", "INFO", ["EMAIL"])

        request = NotificationRequest(
            user_id="u1", type="INFO", title="t", message="m", channels_override=["PUSH", "PUSH"]
        )
        assert await service.resolve_channels(request) == ["IN_APP", "PUSH"]

    async def test_in_app_keeps_its_position_when_listed(self, service):
        await service.set_preference("user", "u1", "INFO", ["EMAIL", "IN_APP"])

        request = NotificationRequest(user_id="u1", type="INFO", title="t", message="m")
        assert await service.resolve_channels(request) == ["EMAIL", "IN_APP"]

    async def test_set_preference_validates(self, service):
        with pytest.raises(ValidationError):
            await service.set_preference("user", "u1", "INFO", ["FAX"])
        with pytest.raises(ValidationError):
            await service.set_preference("team", "u1", "INFO", ["EMAIL"])
        with pytest.raises(ValidationError):
            await service.set_preference("user", "u1", "URGENT", ["EMAIL"])


class TestNotify:

    async def test_request_validation(self, service):
        with pytest.raises(ValidationError):
            await service.notify({"type": "INFO", "title": "x", "message": "y"})
        with pytest.raises(ValidationError):
            await service.notify({"user_id": "u1", "type": "PANIC", "title": "x", "message": "y"})
        with pytest.raises(ValidationError):
            await service.notify({"user_id": "u1", "title": "x", "message": "y", "channels_override": ["FAX"]})

    async def test_row_persisted_with_request_data(self, service, db):
        notification = await service.notify({
            "user_id": "u1",
            "organization_id": "org_1",
            "type": "SUCCESS",
            "title": "Payment received",
            "message": "Invoice inv_1 was paid",
            "data": {"invoiceId": "inv_1"},
        })

        row = await db.get(Notification, notification.id)
        assert row.title == "Payment received"
        assert row.type == "SUCCESS"
        assert row.read is False
        assert row.data["invoiceId"] == "inv_1"
        assert row.data["deliveryChannels"] == ["IN_APP"]

    async def test_all_channels_delivered_and_annotated(self, service, senders):
        await _contact(service, email="ada@example.com", phone="(415) 555-2671", push_token="tok_1")

        notification = await service.notify({
            "user_id": "u1",
            "type": "WARNING",
            "title": "Card expiring",
            "message": "Update your card",
            "channels_override": ["EMAIL", "SMS", "PUSH"],
        })

        assert notification.data["emailDelivery"]["status"] == "SENT"
        assert notification.data["emailDelivery"]["messageId"] == "email_1"
        assert notification.data["smsDelivery"]["status"] == "SENT"
        assert notification.data["pushDelivery"]["status"] == "SENT"
        assert notification.data["deliveryChannels"] == ["IN_APP", "EMAIL", "SMS", "PUSH"]
        assert notification.version == 4

        recipient, content = senders["SMS"].send.call_args.args
        assert recipient.phone == "+14155552671"
        assert content.body == render_sms("WARNING", "Card expiring", "Update your card")

        recipient, content = senders["EMAIL"].send.call_args.args
        assert recipient.email == "ada@example.com"
        assert content.subject == "[Warning] Card expiring"

    async def test_throwing_email_sender_is_isolated(self, service, senders, db):
        senders["EMAIL"].send = AsyncMock(side_effect=RuntimeError("provider down"))
        await _contact(service, email="ada@example.com", phone="+14155552671")

        notification = await service.notify({
            "user_id": "u1",
            "type": "ERROR",
            "title": "Payment failed",
            "message": "Card declined",
            "channels_override": ["EMAIL", "SMS"],
        })

        row = await db.get(Notification, notification.id)
        assert row is not None
        assert "IN_APP" in row.data["deliveryChannels"]
        assert row.data["emailDelivery"]["status"] == "FAILED"
        assert row.data["emailDelivery"]["error"] == "provider down"
        assert row.data["smsDelivery"]["status"] == "SENT"
        senders["SMS"].send.assert_awaited_once()

    async def test_sender_failure_result_is_recorded(self, service, senders, make_sender, audit_sink):
        senders["PUSH"] = make_sender(success=False, error="Device unregistered")

        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["PUSH"],
        })

        assert notification.data["pushDelivery"]["status"] == "FAILED"
        assert notification.data["pushDelivery"]["error"] == "Device unregistered"
        assert len(audit_sink.of_type("notification.channel.failed")) == 1

    async def test_persistence_failure_aborts_before_channels(self, store, senders, settings):
        store.create_notification = AsyncMock(side_effect=PersistenceError("db down"))
        service = NotificationService(store, senders=senders, settings=settings)

        with pytest.raises(PersistenceError):
            await service.notify({
                "user_id": "u1", "type": "INFO", "title": "t", "message": "m",
                "channels_override": ["EMAIL", "SMS", "PUSH"],
            })
        for sender in senders.values():
            sender.send.assert_not_called()

    async def test_annotation_failure_does_not_fail_notify(self, store, senders, settings):
        store.update_notification_data = AsyncMock(side_effect=PersistenceError("db down"))
        service = NotificationService(store, senders=senders, settings=settings)
        await service.set_contact("user", "u1", email="ada@example.com")

        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["EMAIL"],
        })

        assert notification.id is not None
        assert "emailDelivery" not in notification.data
        senders["EMAIL"].send.assert_awaited_once()

    async def test_missing_sender_is_recorded(self, store, settings):
        service = NotificationService(store, senders={}, settings=settings)
        await service.set_contact("user", "u1", email="ada@example.com")

        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["EMAIL"],
        })

        assert notification.data["emailDelivery"]["status"] == "FAILED"
        assert "No sender configured" in notification.data["emailDelivery"]["error"]


class TestChannelPreconditions:

    async def test_no_email_recipient(self, service, senders):
        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["EMAIL"],
        })
        assert notification.data["emailDelivery"]["status"] == "FAILED"
        assert notification.data["emailDelivery"]["error"] == "No email recipient"
        senders["EMAIL"].send.assert_not_called()

    async def test_organization_email_is_fallback(self, service, senders):
        await _contact(service, "organization", "org_1", email="billing@example.com")

        await service.notify({
            "user_id": "u1", "organization_id": "org_1", "type": "INFO", "title": "t", "message": "m",
            "channels_override": ["EMAIL"],
        })

        recipient, _ = senders["EMAIL"].send.call_args.args
        assert recipient.email == "billing@example.com"

    async def test_user_email_preferred(self, service, senders):
        await _contact(service, "user", "u1", email="ada@example.com")
        await _contact(service, "organization", "org_1", email="billing@example.com")

        await service.notify({
            "user_id": "u1", "organization_id": "org_1", "type": "INFO", "title": "t", "message": "m",
            "channels_override": ["EMAIL"],
        })

        recipient, _ = senders["EMAIL"].send.call_args.args
        assert recipient.email == "ada@example.com"

    async def test_no_phone_number(self, service, senders):
        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["SMS"],
        })
        assert notification.data["smsDelivery"]["error"] == "No phone number"
        senders["SMS"].send.assert_not_called()

    async def test_invalid_phone_number(self, service, senders):
        await _contact(service, phone="12")

        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["SMS"],
        })

        assert notification.data["smsDelivery"]["status"] == "FAILED"
        assert notification.data["smsDelivery"]["error"] == "Invalid phone number"
        senders["SMS"].send.assert_not_called()

    async def test_no_push_recipient(self, service, senders):
        notification = await service.notify({
            "organization_id": "org_1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["PUSH"],
        })
        assert notification.data["pushDelivery"]["error"] == "No push recipient"
        senders["PUSH"].send.assert_not_called()

    async def test_push_with_user_id_only(self, service, senders):
        notification = await service.notify({
            "user_id": "u1", "type": "INFO", "title": "t", "message": "m", "channels_override": ["PUSH"],
        })
        assert notification.data["pushDelivery"]["status"] == "SENT"


class TestReadState:

    async def test_mark_as_read_is_idempotent(self, service):
        notification = await service.notify({"user_id": "u1", "type": "INFO", "title": "t", "message": "m"})

        first = await service.mark_as_read(notification.id)
        assert first.read is True
        assert first.read_at is not None

        second = await service.mark_as_read(notification.id)
        assert second.read is True
        assert second.read_at == first.read_at

    async def test_mark_as_read_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.mark_as_read(uuid.uuid4())

    async def test_mark_all_as_read(self, service, db):
        for i in range(3):
            await service.notify({"user_id": "u1", "type": "INFO", "title": f"t{i}", "message": "m"})
        await service.notify({"user_id": "u2", "type": "INFO", "title": "other", "message": "m"})

        assert await service.mark_all_as_read(user_id="u1") == 3
        assert await service.mark_all_as_read(user_id="u1") == 0

        unread = await db.scalar(select(func.count(Notification.id)).where(Notification.read.is_(False)))
        assert unread == 1

    async def test_mark_all_for_organization(self, service):
        await service.notify({"organization_id": "org_1", "type": "INFO", "title": "t", "message": "m"})
        await service.notify({"organization_id": "org_1", "type": "INFO", "title": "t", "message": "m"})
        assert await service.mark_all_as_read(organization_id="org_1") == 2

    async def test_mark_all_requires_owner(self, service):
        with pytest.raises(ValidationError):
            await service.mark_all_as_read()

    async def test_list_notifications(self, service):
        created = []
        for i in range(3):
            created.append(await service.notify({"user_id": "u1", "type": "INFO", "title": f"t{i}", "message": "m"}))
        await service.mark_as_read(created[0].id)

        listed = await service.list_notifications(user_id="u1")
        assert listed["total"] == 3
        assert listed["unread"] == 2

        unread_only = await service.list_notifications(user_id="u1", include_read=False)
        assert unread_only["total"] == 2
        assert all(n.read is False for n in unread_only["notifications"])


class TestRendering:

    def test_subject_prefixed_by_type(self):
        assert render_subject("ERROR", "Payment failed") == "[Error] Payment failed"
        assert render_subject("INFO", "Hello") == "[Info] Hello"

    def test_sms_short_message_untouched(self):
        assert render_sms("SUCCESS", "Paid", "Thanks") == "[Success] Paid: Thanks"

    def test_sms_truncated_to_140(self):
        text = render_sms("INFO", "Title", "x" * 500)
        assert len(text) == 140
        assert text.endswith("...")

    def test_send_result_defaults(self):
        result = SendResult(success=True)
        assert result.provider_message_id is None
        assert result.error is None
