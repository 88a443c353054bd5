from __future__ import annotations

import contextlib
import getpass
import os
import re
import socket
import sys
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.infra.clock import parse_timestamp

_TOKEN_RE = re.compile(r"^[0-9a-f]{32,}$")


class LockOwner(BaseModel):
    """Who holds the lock; informational only, never used for liveness."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    pid: int | None = None
    host: str | None = None
    cwd: str | None = None
    command: str | None = None
    user: str | None = None

    @classmethod
    def current(cls) -> LockOwner:
        user = None
        with contextlib.suppress(KeyError, OSError):
            user = getpass.getuser()
        return cls(
            pid=os.getpid(),
            host=socket.gethostname(),
            cwd=os.getcwd(),
            command=" ".join(sys.argv),
            user=user,
        )


class LockRecord(BaseModel):
    """On-disk content of the advisory lock file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    lock_name: str = Field(min_length=1)
    owner_token: str
    owner: LockOwner = Field(default_factory=LockOwner)
    acquired_at: str
    expires_at: str
    ttl_ms: int = Field(gt=0)

    @field_validator("owner_token")
    @classmethod
    def _validate_token(cls, v: str) -> str:
        if not _TOKEN_RE.match(v):
            raise ValueError("owner_token must be lowercase hex, at least 32 chars")
        return v

    @field_validator("acquired_at", "expires_at")
    @classmethod
    def _validate_timestamp(cls, v: str) -> str:
        parse_timestamp(v)
        return v

    def is_stale(self, now: datetime) -> bool:
        # expires_at is informational; staleness is judged on acquired_at + ttl_ms.
        acquired = parse_timestamp(self.acquired_at)
        return now - acquired > timedelta(milliseconds=self.ttl_ms)
