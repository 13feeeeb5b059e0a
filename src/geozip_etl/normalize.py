"""Coercion helpers for postal-code boundary ingestion.

All parse_* functions return None when the value cannot be coerced; callers
decide whether a None is fatal for the record.
"""

from __future__ import annotations

import math
import re
from typing import Any

_LEDGER_UNSAFE = re.compile(r"[\r\n,]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_zip
# ---------------------------------------------------------------------------

def parse_zip(value: Any) -> int | None:
    """Return an integer zip id from a JSON number or digit string.

    Booleans are rejected (bool is an int subclass). Floats are accepted only
    when integral, e.g. 10001.0.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer() or value < 0:
            return None
        return int(value)
    if isinstance(value, str):
        v = trim(value)
        if v is None or not v.isdigit():
            return None
        return int(v)
    return None


# ---------------------------------------------------------------------------
# Rule 3: parse_coordinate
# ---------------------------------------------------------------------------

def parse_coordinate(value: Any) -> float | None:
    """Return a finite float from a JSON number or numeric string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    elif isinstance(value, str):
        v = trim(value)
        if v is None:
            return None
        try:
            f = float(v)
        except ValueError:
            return None
    else:
        return None
    return f if math.isfinite(f) else None


# ---------------------------------------------------------------------------
# Rule 4: sanitize_ledger_message
# ---------------------------------------------------------------------------

def sanitize_ledger_message(value: object) -> str:
    """Drop CR, LF and commas so the message fits one flat ledger cell."""
    return _LEDGER_UNSAFE.sub("", str(value))
