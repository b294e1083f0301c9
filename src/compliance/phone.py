"""Phone number normalization and privacy-preserving hashing.

Every lookup in the compliance subsystem is keyed by the SHA-256 of the
E.164-normalized number. Plaintext is kept only where it is operationally
required (the outbound send and the record itself).
"""

from __future__ import annotations

import hashlib


class InvalidPhoneNumberError(ValueError):
    """Raised when a phone number cannot be normalized to E.164."""


def normalize_phone(phone: str) -> str:
    """Normalize a phone number to E.164.

    NANP numbers without a country code (10 digits) get ``+1``; 11-digit
    numbers starting with ``1`` get ``+``. Other numbers must already carry
    a leading ``+`` and 8-15 digits.

    Raises:
        InvalidPhoneNumberError: If the input is not a plausible number.
    """
    if not phone or not phone.strip():
        raise InvalidPhoneNumberError("Phone number is empty")

    raw = phone.strip()
    digits = "".join(c for c in raw if c.isdigit())

    if len(digits) == 10 and not raw.startswith("+"):
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if raw.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    raise InvalidPhoneNumberError(f"Cannot normalize phone number ending in {digits[-4:] or '????'}")


def hash_phone(normalized_phone: str) -> str:
    """SHA-256 hex digest of an E.164 number (digits only)."""
    digits = "".join(c for c in normalized_phone if c.isdigit())
    return hashlib.sha256(digits.encode()).hexdigest()


def phone_key(phone: str) -> tuple[str, str]:
    """Return ``(normalized, hash)`` for a raw phone number."""
    normalized = normalize_phone(phone)
    return normalized, hash_phone(normalized)


def mask_phone(phone: str) -> str:
    """Last four digits, for logs."""
    return phone[-4:] if phone else "????"
