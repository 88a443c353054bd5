"""TTL-bounded advisory lock file with ownership tokens.

Best-effort mutual exclusion for one coordinator per project: a run that finds
a live lock skips; a lock older than its TTL is treated as abandoned and replaced.
There is no liveness probe, so a holder that overruns its TTL can lose the lock.
"""

from __future__ import annotations

import json
import os
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal

import structlog
from pydantic import ValidationError

from src.infra.atomic import dump_json, file_guard
from src.infra.clock import iso_z, utc_now
from src.infra.errors import LockError
from src.lock.models import LockOwner, LockRecord

logger = structlog.get_logger()

DEFAULT_TTL_MS = 8 * 60 * 1000
MAX_ACQUIRE_ATTEMPTS = 4

AcquireReason = Literal["acquired", "broke_stale", "lock_held"]


@dataclass(frozen=True)
class LockAcquisition:
    acquired: bool
    reason: AcquireReason
    lock: LockRecord | None
    previous: LockRecord | None = None


def new_owner_token() -> str:
    return secrets.token_hex(16)


class AdvisoryLock:
    def __init__(
        self,
        path: Path,
        *,
        ttl_ms: int = DEFAULT_TTL_MS,
        lock_name: str = "lane-orchestrate",
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be > 0, got {ttl_ms}")
        self.path = path
        self.ttl_ms = ttl_ms
        self.lock_name = lock_name
        self._now_fn = now_fn

    @property
    def guard_path(self) -> Path:
        return self.path.with_name(self.path.name + ".guard")

    def read(self) -> LockRecord | None:
        """Current lock record; None when absent or unparseable."""
        text = self._read_text()
        return self._parse(text) if text is not None else None

    def is_stale(self, now: datetime | None = None) -> bool:
        now = now or self._now_fn()
        text = self._read_text()
        if text is None:
            return False
        return self._stale(text, now)

    def acquire(self, owner: LockOwner | None = None) -> LockAcquisition:
        """Try to take the lock. A held lock is reported, never raised."""
        owner = owner or LockOwner.current()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"Cannot create lock directory for {self.path}: {e}") from e

        previous: LockRecord | None = None
        broke_stale = False
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            record = self._create(owner)
            if record is not None:
                reason: AcquireReason = "broke_stale" if broke_stale else "acquired"
                logger.info(
                    "lock_acquired",
                    lock=str(self.path),
                    reason=reason,
                    owner_token=record.owner_token,
                )
                return LockAcquisition(acquired=True, reason=reason, lock=record, previous=previous)

            with file_guard(self.guard_path):
                text = self._read_text()
                if text is None:
                    continue
                now = self._now_fn()
                current = self._parse(text)
                if not self._stale(text, now):
                    logger.info(
                        "lock_held",
                        lock=str(self.path),
                        owner_token=current.owner_token if current else None,
                    )
                    return LockAcquisition(acquired=False, reason="lock_held", lock=current)
                self._unlink()
                logger.warning(
                    "lock_stale_replaced",
                    lock=str(self.path),
                    previous_token=current.owner_token if current else None,
                    previous_acquired_at=current.acquired_at if current else None,
                )
                broke_stale = True
                previous = current or previous

        logger.info("lock_held", lock=str(self.path), owner_token=None, attempts=MAX_ACQUIRE_ATTEMPTS)
        return LockAcquisition(acquired=False, reason="lock_held", lock=None, previous=previous)

    def release(self, owner_token: str | None) -> bool:
        """Delete the lock only if it carries owner_token. Returns whether it was deleted."""
        token = (owner_token or "").strip().lower()
        with file_guard(self.guard_path):
            current = self.read()
            if not token or current is None or current.owner_token != token:
                logger.info("lock_release_skipped", lock=str(self.path), reason="not_owner")
                return False
            self._unlink()
        logger.info("lock_released", lock=str(self.path), owner_token=token)
        return True

    # -- internals -----------------------------------------------------------

    def _build_record(self, owner: LockOwner) -> LockRecord:
        now = self._now_fn()
        return LockRecord(
            lock_name=self.lock_name,
            owner_token=new_owner_token(),
            owner=owner,
            acquired_at=iso_z(now),
            expires_at=iso_z(now + timedelta(milliseconds=self.ttl_ms)),
            ttl_ms=self.ttl_ms,
        )

    def _create(self, owner: LockOwner) -> LockRecord | None:
        record = self._build_record(owner)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return None
        except OSError as e:
            raise LockError(f"Cannot create lock file {self.path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dump_json(record))
            f.flush()
            os.fsync(f.fileno())
        return record

    def _read_text(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"Cannot read lock file {self.path}: {e}") from e

    @staticmethod
    def _parse(text: str) -> LockRecord | None:
        try:
            return LockRecord.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError):
            return None

    def _stale(self, text: str, now: datetime) -> bool:
        record = self._parse(text)
        if record is not None:
            return record.is_stale(now)
        # Unparseable (e.g. a crash mid-write): judge by file age against our own TTL.
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return now.timestamp() - mtime > self.ttl_ms / 1000

    def _unlink(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise LockError(f"Cannot remove lock file {self.path}: {e}") from e

