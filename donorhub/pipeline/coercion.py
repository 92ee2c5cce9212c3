"""
Value coercion for the silver transform.

Every coercer follows the same policy: blank input is ``None``; a value that
cannot be coerced is also ``None`` but is counted against its field and logged
at debug level. Nothing here raises on bad data.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from datetime import date, datetime, timezone

from flask import current_app, has_app_context

MAX_ABS_AMOUNT = 1_000_000
MIN_YEAR = 1753
MAX_YEAR = 9999

_TRUE_VALUES = {"true", "t", "yes", "y", "1", "on"}
_FALSE_VALUES = {"false", "f", "no", "n", "0", "off"}

_DATETIME_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d-%b-%Y",
)

_AMOUNT_STRIP = re.compile(r"[$,\s]")


def _blank(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class Coercer:
    """Typed accessors plus a tally of values that had to be dropped."""

    def __init__(self):
        self.invalid: Counter[str] = Counter()

    def _reject(self, field: str, value: object) -> None:
        self.invalid[field] += 1
        if has_app_context():
            current_app.logger.debug(
                "Dropping invalid %s value %r",
                field,
                str(value)[:80],
                extra={"pipeline_stage": "transform", "pipeline_field": field},
            )

    def text(self, value: object | None, width: int) -> str | None:
        if _blank(value):
            return None
        return str(value).strip()[:width]

    def email(self, value: object | None, width: int = 256) -> str | None:
        if _blank(value):
            return None
        return str(value).strip().lower()[:width]

    def amount(self, value: object | None, field: str) -> float | None:
        if _blank(value):
            return None
        cleaned = _AMOUNT_STRIP.sub("", str(value))
        negative = cleaned.startswith("(") and cleaned.endswith(")")
        if negative:
            cleaned = cleaned[1:-1]
        try:
            number = float(cleaned)
        except ValueError:
            self._reject(field, value)
            return None
        if math.isnan(number) or math.isinf(number) or abs(number) > MAX_ABS_AMOUNT:
            self._reject(field, value)
            return None
        return round(-number if negative else number, 2)

    def timestamp(self, value: object | None, field: str) -> datetime | None:
        if _blank(value):
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            parsed = _parse_datetime(str(value).strip())
        if parsed is None or not (MIN_YEAR <= parsed.year <= MAX_YEAR):
            self._reject(field, value)
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def day(self, value: object | None, field: str) -> date | None:
        parsed = self.timestamp(value, field)
        return parsed.date() if parsed else None

    def flag(self, value: object | None, field: str) -> bool | None:
        if _blank(value):
            return None
        lowered = str(value).strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        self._reject(field, value)
        return None

    def as_dict(self) -> dict[str, int]:
        return dict(sorted(self.invalid.items()))


def _parse_datetime(text: str) -> datetime | None:
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
