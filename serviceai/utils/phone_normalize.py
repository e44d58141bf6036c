"""
Phone number normalization utilities for matching inbound senders and deduplicating recipients.
"""
import re
from typing import Optional


def normalize_phone_for_comparison(phone: Optional[str]) -> Optional[str]:
    """
    Normalize phone number for comparison by removing all formatting.
    Returns the last 10 digits for North American numbers so "+1" prefixes
    don't break matches, otherwise digits only.

    Examples:
    - "(503) 555-1234" -> "5035551234"
    - "+1-503-555-1234" -> "5035551234"
    - "+52 55 1234 5678" -> "525512345678"
    """
    if not phone:
        return None

    digits_only = re.sub(r'\D', '', str(phone))
    if not digits_only:
        return None

    if len(digits_only) == 11 and digits_only.startswith("1"):
        return digits_only[1:]
    return digits_only


def phones_match(phone1: Optional[str], phone2: Optional[str]) -> bool:
    """
    Check if two phone numbers match (after normalization).
    """
    normalized1 = normalize_phone_for_comparison(phone1)
    normalized2 = normalize_phone_for_comparison(phone2)

    if not normalized1 or not normalized2:
        return False

    return normalized1 == normalized2
