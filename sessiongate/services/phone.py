from __future__ import annotations

import re


_WHATSAPP_PREFIX = "whatsapp:"
_NON_DIGITS = re.compile(r"\D")


def _strip_prefix(raw: str) -> str:
    value = raw.strip()
    if value.startswith(_WHATSAPP_PREFIX):
        value = value[len(_WHATSAPP_PREFIX):]
    return value


def normalize_phone_number(raw: str) -> str:
    """Digits only, without the leading plus."""
    return _NON_DIGITS.sub("", _strip_prefix(raw or ""))


def standardize_whatsapp_number(raw: str | None) -> str:
    """Return ``+digits`` or an empty string when nothing usable remains."""
    if not raw:
        return ""
    digits = normalize_phone_number(raw)
    if not digits:
        return ""
    return f"+{digits}"


def ensure_whatsapp_address(phone: str) -> str:
    # Provider addresses carry the channel prefix.
    value = phone.strip()
    if value.startswith(_WHATSAPP_PREFIX):
        return value
    if value.startswith("+"):
        return f"{_WHATSAPP_PREFIX}{value}"
    return f"{_WHATSAPP_PREFIX}+{value}"
