"""Schema-checked records owned by the knowledge event store.

KnowledgeChangeEvent lines are immutable once appended; EventIndex and the
checkpoints are rewritten atomically by the store.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.infra.clock import parse_timestamp
from src.infra.ids import stable_hex

EventType = Literal[
    "merge",
    "ci_fix",
    "decision_answered",
    "schema_change",
    "api_change",
    "config_change",
]

REPO_SCOPED_TYPES = frozenset({"merge", "ci_fix"})
_COMMIT_RE = re.compile(r"^[0-9a-f]{7,64}$")
_SEGMENT_RE = re.compile(r"^events-(\d{8})-(\d{2})(?:_(\d{3,}))?\.jsonl$")


def compute_event_id(
    *, type: str, repo_id: str | None, commit: str, paths: Iterable[str]
) -> str:
    """Content-derived identity: stable over (type, repo_id, commit, sorted(paths))."""
    return "KEVT_" + stable_hex([type, repo_id or "", commit, *sorted(paths)], 16)


def normalize_str_set(values: Iterable[Any] | None) -> list[str]:
    if not values:
        return []
    return sorted({str(v).strip() for v in values if v is not None and str(v).strip()})


def validate_scope(scope: str, repo_id: str | None) -> None:
    if scope == "system":
        if repo_id is not None:
            raise ValueError("repo_id must be null when scope is system")
        return
    if not scope.startswith("repo:") or not scope[len("repo:"):]:
        raise ValueError("scope must be 'system' or 'repo:<repo_id>'")
    if repo_id != scope[len("repo:"):]:
        raise ValueError("repo_id must match scope repo_id")


def segment_sort_key(name: str) -> tuple[str, int]:
    """(hour bucket, rotation seq) for a segment file name; ValueError if not a segment."""
    m = _SEGMENT_RE.match(name)
    if not m:
        raise ValueError(f"not a segment file name: {name}")
    return f"{m.group(1)}-{m.group(2)}", int(m.group(3) or 0)


def is_segment_name(name: str) -> bool:
    return _SEGMENT_RE.match(name) is not None


def segment_name(bucket: str, seq: int = 0) -> str:
    if seq <= 0:
        return f"events-{bucket}.jsonl"
    return f"events-{bucket}_{seq:03d}.jsonl"


class QaObligations(BaseModel):
    """QA obligations a merge carried; producers set what applies."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    must_add_unit: bool = False
    must_add_integration: bool = False
    must_add_e2e: bool = False


class EventArtifacts(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    paths: list[str] = Field(default_factory=list)
    fingerprints: list[str] = Field(default_factory=list)

    @field_validator("paths", "fingerprints", mode="before")
    @classmethod
    def _normalize(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if not isinstance(v, list | tuple | set | frozenset):
            raise ValueError("must be an array of strings")
        return normalize_str_set(v)


class KnowledgeChangeEvent(BaseModel):
    """Immutable fact that something in a repo or the system changed."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    event_id: str = Field(min_length=8)
    type: EventType
    scope: str = Field(min_length=1)
    repo_id: str | None = None
    work_id: str = Field(min_length=1)
    pr_number: int | None = Field(None, gt=0)
    commit: str = ""
    artifacts: EventArtifacts = Field(default_factory=EventArtifacts)
    summary: str = Field(min_length=1)
    timestamp: str
    obligations: QaObligations | None = None

    @field_validator("commit")
    @classmethod
    def _validate_commit(cls, v: str) -> str:
        if v and not _COMMIT_RE.match(v):
            raise ValueError("commit must be empty or a lowercase hex digest")
        return v

    @field_validator("timestamp")
    @classmethod
    def _validate_timestamp(cls, v: str) -> str:
        try:
            parse_timestamp(v)
        except ValueError as e:
            raise ValueError(f"timestamp must be ISO-8601 UTC: {e}") from e
        return v

    @model_validator(mode="after")
    def _validate_identity(self) -> Self:
        validate_scope(self.scope, self.repo_id)
        if self.type in REPO_SCOPED_TYPES and self.scope == "system":
            raise ValueError(f"{self.type} events must be repo-scoped")
        expected = compute_event_id(
            type=self.type, repo_id=self.repo_id, commit=self.commit, paths=self.artifacts.paths
        )
        if self.event_id != expected:
            raise ValueError(f"event_id {self.event_id} does not match content ({expected})")
        return self

    @property
    def parsed_timestamp(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def to_line(self) -> str:
        exclude = {"obligations"} if self.obligations is None else None
        return self.model_dump_json(exclude=exclude)


class SegmentEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file: str
    created_at: str | None = None
    latest_event_at: str | None = None
    events: int = Field(0, ge=0)

    @field_validator("file")
    @classmethod
    def _validate_file(cls, v: str) -> str:
        if not is_segment_name(v):
            raise ValueError(f"invalid segment file name: {v}")
        return v


class EventIndex(BaseModel):
    """One per project: active segment, counters, and the live segment list."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    updated_at: str | None = None
    active_segment: str | None = None
    events_total: int = Field(0, ge=0)
    latest_event_at: str | None = None
    segments: list[SegmentEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _sort_segments(self) -> Self:
        self.segments.sort(key=lambda s: segment_sort_key(s.file))
        return self

    def segment(self, name: str) -> SegmentEntry | None:
        for entry in self.segments:
            if entry.file == name:
                return entry
        return None


class CompactionCheckpoint(BaseModel):
    """Summary of the last compaction; superseded by the next run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    compacted_at: str
    through_segment: str
    segments_compacted: int = Field(ge=1)
    events_compacted: int = Field(ge=0)
    latest_event_at: str | None = None


class ConsumerCheckpoint(BaseModel):
    """How far a named consumer has processed the event log."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    consumer: str
    last_processed_event_id: str | None = None
    last_processed_segment: str | None = None
    last_processed_line: int | None = Field(None, ge=0)
    updated_at: str | None = None

    @model_validator(mode="after")
    def _validate_anchor(self) -> Self:
        anchored = (
            self.last_processed_segment is not None,
            self.last_processed_line is not None,
            self.last_processed_event_id is not None,
        )
        if any(anchored) and not all(anchored):
            raise ValueError(
                "last_processed_segment, last_processed_line and last_processed_event_id "
                "must be set together"
            )
        return self

    @property
    def is_fresh(self) -> bool:
        return self.last_processed_segment is None
