"""Field-level normalization for raw product records.

All helpers are pure.  Numeric coercion accepts the formats scrapers
actually emit (``"4.50%"``, ``"£1,000"``, ``"12 months"``) and raises
``ValueError`` for anything else.
"""

import math
import re
from datetime import date, datetime, timezone

_WHITESPACE = re.compile(r"\s+")
_NUMERIC_NOISE = re.compile(r"[£$€,%\s]")
_LEADING_NUMBER = re.compile(r"^(-?\d+(?:\.\d+)?)")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def clean_bank_name(name: str) -> str:
    """Trim and collapse whitespace; casing is left to FRN normalization."""
    return collapse_whitespace(name)


def normalize_platform(platform: str, aliases: dict[str, str]) -> str:
    """Lowercase a platform name and resolve configured aliases.

    >>> normalize_platform("Raisin UK", {"raisin uk": "raisin"})
    'raisin'
    """
    key = collapse_whitespace(platform).lower()
    return aliases.get(key, key)


def normalize_account_type(account_type: str, aliases: dict[str, str]) -> str:
    """Map account type spellings onto ``easy_access``/``notice``/``fixed_term``."""
    key = collapse_whitespace(account_type).lower()
    if key in aliases:
        return aliases[key]
    return key.replace(" ", "_").replace("-", "_")


def coerce_float(value) -> float | None:
    """Parse a numeric field.

    Returns ``None`` for missing values (``None`` or blank strings).

    Raises:
        ValueError: If the value is present but not numeric or not finite.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"boolean {value!r} is not a number")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        cleaned = _NUMERIC_NOISE.sub("", value)
        if not cleaned:
            return None
        result = float(cleaned)
    else:
        raise ValueError(f"{type(value).__name__} is not a number")
    if not math.isfinite(result):
        raise ValueError(f"{value!r} is not finite")
    return result


def coerce_int(value) -> int | None:
    """Parse a whole-number field such as term months or notice days.

    Strings like ``"12 months"`` keep their leading number.
    """
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value.strip())
        if value.strip() and match is None:
            raise ValueError(f"{value!r} is not a number")
        value = match.group(1) if match else None
    result = coerce_float(value)
    if result is None:
        return None
    if not result.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return int(result)


def parse_timestamp(value) -> datetime | None:
    """Parse ISO dates and datetimes; unparseable values yield ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    # Stored naive, in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
