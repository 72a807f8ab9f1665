"""MSISDN normalization for M-Pesa."""
from hotspot_bridge.core.errors import InvalidInputError


def normalize_phone(phone: str, country_prefix: str = "254") -> str:
    """
    Rewrite a local phone number into international form.

    07xxxxxxxx -> 2547xxxxxxxx and 7xxxxxxxx -> 2547xxxxxxxx. Numbers already
    carrying the prefix pass through; a leading '+' is dropped.

    Raises:
        InvalidInputError: If the phone number is empty or not all digits
    """
    if phone is None:
        raise InvalidInputError("Phone number is required")
    cleaned = phone.strip().replace(" ", "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not cleaned:
        raise InvalidInputError("Phone number is required")
    if not (cleaned.isascii() and cleaned.isdigit()):
        raise InvalidInputError("Phone number must contain only digits")

    if cleaned.startswith("0"):
        return country_prefix + cleaned[1:]
    if cleaned.startswith("7"):
        return country_prefix + cleaned
    return cleaned
