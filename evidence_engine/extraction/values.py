"""Cell value coercion with locale-aware thousands separators.

"1,234" -> 1234, "1.234,56" -> 1234.56, "1 234" -> 1234, "12,5" -> 12.5.
Values with leading zeros ("007") stay strings; they are usually codes.
"""

from __future__ import annotations

import re

Cell = str | int | float

_PLAIN = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
_COMMA_THOUSANDS = re.compile(r"^[+-]?\d{1,3}(?:,\d{3})+(?:\.\d+)?$")
_DOT_THOUSANDS = re.compile(r"^[+-]?\d{1,3}(?:\.\d{3})+(?:,\d+)?$")
_SPACE_THOUSANDS = re.compile(r"^[+-]?\d{1,3}(?:[ \u00a0\u202f]\d{3})+(?:[.,]\d+)?$")
_DECIMAL_COMMA = re.compile(r"^[+-]?\d+,\d+$")
_LEADING_ZERO = re.compile(r"^[+-]?0\d")


def parse_value(raw: str) -> Cell:
    """Coerce one cell to int/float when it is unambiguously numeric."""
    value = raw.strip()
    if not value or _LEADING_ZERO.match(value):
        return value

    if _PLAIN.match(value):
        normalized = value
    elif _COMMA_THOUSANDS.match(value):
        normalized = value.replace(",", "")
    elif _DOT_THOUSANDS.match(value):
        normalized = value.replace(".", "").replace(",", ".")
    elif _SPACE_THOUSANDS.match(value):
        normalized = re.sub(r"[ \u00a0\u202f]", "", value).replace(",", ".")
    elif _DECIMAL_COMMA.match(value):
        normalized = value.replace(",", ".")
    else:
        return value

    if "." in normalized:
        return float(normalized)
    return int(normalized)


def parse_number(raw: str) -> float | None:
    """Numeric value of a matched number string, or None."""
    value = parse_value(raw)
    if isinstance(value, str):
        return None
    return float(value)
