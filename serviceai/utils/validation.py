"""
Request-level validation helpers shared by webhooks, tools and the dispatcher.
"""
import re
from typing import Optional

from serviceai.utils.errors import InvalidPhoneNumber

_ALLOWED_PHONE_CHARS = re.compile(r"^[\d\s()+\-.]+$")


def validate_phone_number(phone: Optional[str]) -> str:
    """
    Normalize a phone number to E.164.

    - "+52 55 1234 5678" -> "+525512345678"
    - "(503) 555-1234" -> "+15035551234"
    - "1-503-555-1234" -> "+15035551234"

    Raises InvalidPhoneNumber for anything that cannot be dialed.
    """
    if not phone or not str(phone).strip():
        raise InvalidPhoneNumber("Phone number is required")

    raw = str(phone).strip()
    if not _ALLOWED_PHONE_CHARS.match(raw):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw}", details={"phone": raw})

    digits = re.sub(r"\D", "", raw)

    if raw.startswith("+"):
        if 8 <= len(digits) <= 15 and digits[0] != "0":
            return f"+{digits}"
    elif len(digits) == 10 and digits[0] in "23456789":
        return f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1") and digits[1] in "23456789":
        return f"+{digits}"

    raise InvalidPhoneNumber(f"Invalid phone number: {raw}", details={"phone": raw})


def is_valid_phone_number(phone: Optional[str]) -> bool:
    try:
        validate_phone_number(phone)
        return True
    except InvalidPhoneNumber:
        return False
