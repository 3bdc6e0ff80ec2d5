"""
Phone-number validation and normalisation (E.164) for pre-dial checks.
Uses the `phonenumbers` library.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat


def normalise_phone(raw: str, default_region: str = "GB") -> tuple[str, bool]:
    """
    Attempt to normalise a raw phone string to E.164.
    Numbers without a + prefix are parsed in ``default_region``.

    Returns
    -------
    (e164_string, is_valid)
        e164_string is the formatted number or the original raw string on failure.
        is_valid indicates whether parsing succeeded and the number looks valid.
    """
    cleaned = raw.strip()
    if not cleaned:
        return (raw, False)

    # Spreadsheet exports turn long numbers into scientific notation
    try:
        if "e" in cleaned.lower() and "+" in cleaned:
            cleaned = str(int(float(cleaned)))
    except (ValueError, OverflowError):
        pass

    # International digits with the + stripped
    if cleaned.isdigit() and len(cleaned) > 10 and not cleaned.startswith("0"):
        cleaned = "+" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, default_region)
    except NumberParseException:
        return (raw, False)

    if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
        return (raw, False)

    return (phonenumbers.format_number(parsed, PhoneNumberFormat.E164), True)


def is_e164(value: str) -> bool:
    """True if ``value`` is already a valid number in E.164 form."""
    if not value.startswith("+"):
        return False
    normalised, valid = normalise_phone(value)
    return valid and normalised == value
