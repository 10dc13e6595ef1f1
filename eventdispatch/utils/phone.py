"""
Phone number normalization - E.164 format using the phonenumbers library.
Used by the SMS channel; anything that does not normalize is not sent.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone_e164(phone: Optional[str], default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - (555) 123-4567 → +15551234567
    - 555.123.4567   → +15551234567
    - +44 20 7946 0958 → +442079460958

    Returns None if the number is invalid.
    """
    if not phone or not phone.strip():
        return None

    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None

    # Accept "possible" numbers, not only officially assigned ranges
    if not (phonenumbers.is_valid_number(parsed) or phonenumbers.is_possible_number(parsed)):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for log lines."""
    if not phone:
        return ""
    return phone[:6] + "***"
