from __future__ import annotations

import hashlib
from collections.abc import Iterable


def stable_hex(parts: Iterable[str | None], length: int) -> str:
    """Short sha256 hex digest over newline-joined parts (None hashes as empty)."""
    base = "\n".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:length]


def normalize_text(value: str | None) -> str:
    """Trim and collapse internal whitespace so equivalent text hashes equally."""
    if not value:
        return ""
    return " ".join(str(value).split())
