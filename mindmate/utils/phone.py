# mindmate/utils/phone.py
from typing import Optional

import phonenumbers
from fastapi import HTTPException


def normalize_phone(raw: Optional[str], region: str = "US") -> Optional[str]:
    """
    Normalize a profile phone number to E.164. Empty input stays empty.
    Raise 422 if invalid so the API returns a clean error.
    """
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        pn = phonenumbers.parse(raw, region)
        if not phonenumbers.is_possible_number(pn) or not phonenumbers.is_valid_number(pn):
            raise ValueError("invalid")
        return phonenumbers.format_number(pn, phonenumbers.PhoneNumberFormat.E164)
    except Exception:
        raise HTTPException(status_code=422, detail="Invalid phone number. Use format like +14155552671.")
