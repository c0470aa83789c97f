import math
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dtparser
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def add_cors(app: FastAPI, origins: list[str]) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(ts: Any) -> datetime:
    """Parse a payload timestamp, falling back to now for missing or garbled values."""
    if not ts:
        return utcnow()
    try:
        return as_instant(ts)
    except (ValueError, OverflowError, TypeError):
        return utcnow()


def as_instant(ts: Any) -> datetime:
    """Normalize a datetime or ISO-8601 string to an aware UTC datetime.

    Naive values are taken to be UTC, which is how the SQL store hands them back.
    Raises ValueError/TypeError for anything that is not a timestamp.
    """
    if isinstance(ts, datetime):
        dt = ts
    elif isinstance(ts, str):
        try:
            dt = dtparser.isoparse(ts)
        except ValueError:
            dt = dtparser.parse(ts)
    else:
        raise TypeError(f"not a timestamp: {ts!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sort_instant(ts: Any) -> datetime:
    # unparseable timestamps sort before everything else
    try:
        return as_instant(ts)
    except (ValueError, OverflowError, TypeError):
        return _EPOCH


_FALSY_STRINGS = {"", "0", "false", "off", "no", "none", "null"}


def coerce_bool(value: Any) -> bool:
    """Total boolean coercion for numbers, booleans and boolean-like strings."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)
