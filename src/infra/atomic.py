"""Atomic file writes and file-level guards.

Every persisted record goes through write_text_atomic: the content is written to a
sibling temporary file and renamed into place, so readers observe either the old or
the new file, never a partial one. Segment logs are the only append-only files.
"""

from __future__ import annotations

import contextlib
import fcntl
import itertools
import json
import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel

_tmp_counter = itertools.count(1)


def write_text_atomic(path: Path, text: str) -> Path:
    """Write text to path via temp file + rename. Returns the final path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}.{next(_tmp_counter):x}")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise
    return path


def dump_json(payload: BaseModel | Mapping[str, Any], *, exclude_none: bool = False) -> str:
    """Pretty JSON with a trailing newline, the on-disk format for all records."""
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump(mode="json", exclude_none=exclude_none)
    else:
        data = dict(payload)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(
    path: Path,
    payload: BaseModel | Mapping[str, Any],
    *,
    exclude_none: bool = False,
) -> Path:
    return write_text_atomic(path, dump_json(payload, exclude_none=exclude_none))


def append_line(path: Path, line: str) -> int:
    """Append one newline-terminated line and fsync. Returns bytes written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (line.rstrip("\n") + "\n").encode("utf-8")
    with path.open("ab") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    return len(data)


@contextlib.contextmanager
def file_guard(guard_path: Path) -> Iterator[None]:
    """Hold an exclusive flock on guard_path for the duration of the block."""
    guard_path.parent.mkdir(parents=True, exist_ok=True)
    guard_path.touch(exist_ok=True)
    with guard_path.open("r+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
