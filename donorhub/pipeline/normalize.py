"""
Deterministic email/phone normalization for identity resolution.
"""

from __future__ import annotations

import re

_PLACEHOLDER_EMAILS = {"null", "none", "n/a", "na", "undefined", "unknown", "-"}
_LETTERS = re.compile(r"[a-z]", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")

MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 11


def normalize_email(value: object | None) -> str | None:
    """
    Normalize an email address into a match key.

    - Trim whitespace and lower-case the whole address
    - Reject placeholders such as ``null`` / ``n/a`` and values without ``@``
    """

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or token in _PLACEHOLDER_EMAILS:
        return None
    if "@" not in token:
        return None
    local_part, _, domain = token.partition("@")
    if not local_part or not domain:
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """
    Normalize a phone number into a digits-only match key.

    URLs, lists of numbers (``,`` / ``|`` separated) and values containing
    words are rejected outright. An 11 digit number with a leading US country
    code ``1`` is reduced to its 10 digit national form.
    """

    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None
    lowered = token.lower()
    if lowered.startswith(("http", "www")) or "," in token or "|" in token:
        return None
    if len(_LETTERS.findall(token)) >= 3:
        return None

    digits = _NON_DIGITS.sub("", token)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        return None
    return digits


def email_keys(*values: object | None) -> list[str]:
    keys: list[str] = []
    for value in values:
        key = normalize_email(value)
        if key and key not in keys:
            keys.append(key)
    return keys


def phone_keys(*values: object | None) -> list[str]:
    keys: list[str] = []
    for value in values:
        key = normalize_phone(value)
        if key and key not in keys:
            keys.append(key)
    return keys
