from __future__ import annotations

import re
from datetime import UTC, datetime

_FS_SAFE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})(\d{3})$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def iso_z(dt: datetime) -> str:
    """Canonical UTC timestamp: 2026-02-08T00:00:00.000Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def fs_safe_timestamp(dt: datetime) -> str:
    """Filename-safe UTC timestamp: 20260208_000000000."""
    dt = dt.astimezone(UTC)
    return dt.strftime("%Y%m%d_%H%M%S") + f"{dt.microsecond // 1000:03d}"


def parse_timestamp(text: str) -> datetime:
    """Parse ISO-8601 (with Z or offset) or the fs-safe form into an aware UTC datetime.

    Raises ValueError on anything else, including naive timestamps.
    """
    s = text.strip()
    m = _FS_SAFE_RE.match(s)
    if m:
        year, month, day, hour, minute, second, millis = (int(g) for g in m.groups())
        return datetime(year, month, day, hour, minute, second, millis * 1000, tzinfo=UTC)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        raise ValueError(f"timestamp must carry a UTC offset: {text!r}")
    return dt.astimezone(UTC)
