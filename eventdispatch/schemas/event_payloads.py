"""
Event payload schemas - one shape per event family, validated at emission.
Types without a family model fall through to an opaque passthrough so new
event types can ship before their schema does.
"""
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from eventdispatch.errors import ValidationError
from eventdispatch.models.event import EventType


class EventData(BaseModel):
    """Base for payload shapes; unknown keys are carried through untouched."""
    model_config = ConfigDict(extra="allow")


class SubscriptionEventData(EventData):
    subscriptionId: str = Field(..., min_length=1)
    customerId: Optional[str] = None
    planId: Optional[str] = None
    status: Optional[str] = None
    currentPeriodEnd: Optional[str] = None
    trialEnd: Optional[str] = None


class InvoiceEventData(EventData):
    invoiceId: str = Field(..., min_length=1)
    customerId: Optional[str] = None
    subscriptionId: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    dueDate: Optional[str] = None


class PaymentEventData(EventData):
    paymentId: str = Field(..., min_length=1)
    invoiceId: Optional[str] = None
    customerId: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    failureReason: Optional[str] = None


class CustomerEventData(EventData):
    customerId: str = Field(..., min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None


class UsageEventData(EventData):
    subscriptionId: Optional[str] = None
    metric: str = Field(..., min_length=1)
    quantity: Optional[float] = None
    threshold: Optional[float] = None
    period: Optional[str] = None


class OpaqueEventData(EventData):
    """Forward-compatible fallback: any JSON object."""


PAYLOAD_MODELS: dict[str, Type[EventData]] = {
    "subscription": SubscriptionEventData,
    "invoice": InvoiceEventData,
    "payment": PaymentEventData,
    "customer": CustomerEventData,
    "usage": UsageEventData,
}


def payload_model_for(event_type: str) -> Type[EventData]:
    family = event_type.split(".", 1)[0]
    return PAYLOAD_MODELS.get(family, OpaqueEventData)


def validate_event_payload(event_type: str, data: Any) -> dict:
    """
    Validate data against the payload model for event_type.
    Returns the JSON-ready payload; raises ValidationError on unknown
    types or bad shapes.
    """
    if event_type not in EventType.ALL:
        raise ValidationError(f"Unknown event type: {event_type}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"Payload for {event_type} must be a JSON object")

    model = payload_model_for(event_type)
    try:
        parsed = model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payload for {event_type}: {e.errors()[0]['msg']}") from e
    return parsed.model_dump(mode="json", exclude_unset=True)
