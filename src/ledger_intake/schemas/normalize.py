"""
Value normalization for amounts and dates coming from untrusted sources.

Amounts:
- "1,234.56", "1.234,56", "$12.00", "-45", 12.5 → Decimal
- Unparseable → None

Dates:
- ISO (2024-01-15, 2024-01-15T10:00:00Z), 2024/01/15, 01/15/2024, 15.01.2024
- {"seconds": 1705312800} timestamp objects (backup exports)
- Unparseable → None
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

_CURRENCY_CHARS = re.compile(r"[^\d,.\-+]")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%d.%m.%y",
    "%m/%d/%y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def to_decimal(value: Any) -> Decimal | None:
    """Parse a monetary value, accepting both 1,234.56 and 1.234,56 styles."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))

    text = str(value).strip()
    if not text:
        return None

    negative = text.startswith("(") and text.endswith(")")
    text = _CURRENCY_CHARS.sub("", text)
    if not text or text in {"-", "+", ".", ","}:
        return None

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal separator
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if len(tail) == 3 and head:
            text = text.replace(",", "")
        else:
            text = head.replace(",", "") + "." + tail

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    return -abs(amount) if negative else amount


def parse_date(value: Any) -> date | None:
    """Parse a date from the formats seen in exports and provider output."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        try:
            return datetime.fromtimestamp(float(seconds), tz=timezone.utc).date()
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    text = str(value).strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_commit_date(value: Any, now: datetime | None = None) -> datetime:
    """
    Date used when writing to the ledger.

    Invalid or missing dates are replaced with the current time rather than
    rejecting the row.
    """
    parsed = parse_date(value)
    current = now or datetime.now(timezone.utc)
    if parsed is None:
        return current
    if isinstance(value, datetime):
        return value
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)
