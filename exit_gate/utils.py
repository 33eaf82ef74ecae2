"""
Reusable Utilities

Time helpers and atomic JSON writes shared by the store and the managers.
"""

import json
import os
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat_z(value: datetime) -> str:
    """ISO 8601 with a trailing Z, the format other tools write these files in."""
    return ensure_utc(value).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp, returning None if it can't be read.

    Accepts the trailing 'Z' form written by JavaScript tooling, and numbers
    as epoch milliseconds (the form `Date.now()` produces).
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def age_seconds(then: datetime, now: datetime) -> float:
    return (ensure_utc(now) - ensure_utc(then)).total_seconds()


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write JSON atomically.

    Uses a unique temp file + fsync + rename so concurrent writers never
    leave a half-written record behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    random_suffix = random.randint(0, 999999)
    temp_path = path.with_suffix(f"{path.suffix}.tmp.{random_suffix}")
    try:
        with open(temp_path, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except Exception:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise
