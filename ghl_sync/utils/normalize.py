"""
Normalization of contact keys used for identity matching.
The normalized values are never shown to users.
"""

import re
from typing import Optional

from ghl_sync.config import settings


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Trim and lowercase an email for comparison"""
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def normalize_phone(
    phone: Optional[str], region_code: Optional[str] = None
) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    (303) 555-1234 -> +13035551234 with the default "1" region code.
    Returns None if the number can't be normalized.
    """
    if not phone:
        return None

    region_code = region_code or settings.default_phone_region_code
    stripped = phone.strip()
    digits = re.sub(r"\D", "", stripped)

    if not digits:
        return None

    if stripped.startswith("+"):
        candidate = digits
    elif stripped.startswith("00"):
        candidate = digits[2:]
    elif region_code == "1" and len(digits) == 11 and digits.startswith("1"):
        candidate = digits
    elif region_code == "1" and len(digits) == 10:
        candidate = region_code + digits
    elif region_code != "1" and digits.startswith("0"):
        # National trunk prefix
        candidate = region_code + digits[1:]
    else:
        candidate = region_code + digits

    if not 8 <= len(candidate) <= 15:
        return None
    return f"+{candidate}"
