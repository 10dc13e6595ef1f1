"""
Event payload validation tests.
"""
import pytest

from eventdispatch.errors import ValidationError
from eventdispatch.models.event import EventType
from eventdispatch.schemas.event_payloads import (
    InvoiceEventData,
    OpaqueEventData,
    UsageEventData,
    payload_model_for,
    validate_event_payload,
)


class TestPayloadModelFor:

    def test_family_lookup(self):
        assert payload_model_for("invoice.payment_failed") is InvoiceEventData
        assert payload_model_for("usage.threshold_exceeded") is UsageEventData

    def test_unknown_family_is_opaque(self):
        assert payload_model_for("refund.created") is OpaqueEventData

    def test_every_known_type_has_a_model(self):
        for event_type in EventType.ALL:
            assert payload_model_for(event_type) is not OpaqueEventData


class TestValidateEventPayload:

    def test_valid_payload_returned_as_sent(self):
        data = {"invoiceId": "inv_1", "amount": 99.5, "currency": "usd"}
        assert validate_event_payload("invoice.paid", data) == data

    def test_extra_keys_carried_through(self):
        data = {"subscriptionId": "sub_1", "couponCode": "SPRING"}
        assert validate_event_payload("subscription.created", data)["couponCode"] == "SPRING"

    def test_unset_optionals_not_added(self):
        assert validate_event_payload("customer.created", {"customerId": "cus_1"}) == {"customerId": "cus_1"}

    def test_missing_required_id(self):
        with pytest.raises(ValidationError, match="payment.failed"):
            validate_event_payload("payment.failed", {"amount": 10})

    def test_empty_required_id(self):
        with pytest.raises(ValidationError):
            validate_event_payload("invoice.paid", {"invoiceId": ""})

    def test_wrong_type(self):
        with pytest.raises(ValidationError):
            validate_event_payload("usage.recorded", {"metric": "api_calls", "quantity": "lots"})

    def test_unknown_event_type(self):
        with pytest.raises(ValidationError, match="Unknown event type"):
            validate_event_payload("invoice.exploded", {"invoiceId": "inv_1"})

    def test_wildcard_is_not_an_event_type(self):
        with pytest.raises(ValidationError):
            validate_event_payload("*", {})

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError):
            validate_event_payload("invoice.paid", "inv_1")
