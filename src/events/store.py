"""Knowledge event store: append-only, hour-segmented JSONL log.

Layout under <project>/events/:
- index.json: EventIndex (active segment, counters, live segments)
- segments/events-YYYYMMDD-HH[_NNN].jsonl: one KnowledgeChangeEvent per line
- checkpoints/last_compacted.json: CompactionCheckpoint

Responsibilities:
- Derive event identity from content and reject mismatched caller ids
- Rotate segments per UTC hour bucket and on size overflow
- Read events since a timestamp in (timestamp, event_id) order
- Resume named consumers from their checkpoint anchor
- Fold old segments into a compaction checkpoint before deleting them
- Report segment count, counters and the last compaction

Corrupt lines are fatal to the read that meets them; nothing is skipped.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from src.config.project import ProjectContext
from src.events.models import (
    CompactionCheckpoint,
    ConsumerCheckpoint,
    EventIndex,
    KnowledgeChangeEvent,
    SegmentEntry,
    compute_event_id,
    is_segment_name,
    normalize_str_set,
    segment_name,
    segment_sort_key,
)
from src.infra.atomic import append_line, file_guard, write_json_atomic
from src.infra.clock import iso_z, parse_timestamp, utc_now
from src.infra.errors import EventIdMismatchError, EventStoreError
from src.infra.records import load_record_optional, parse_json_line, parse_record

logger = structlog.get_logger()

DEFAULT_MAX_SEGMENT_BYTES = 1024 * 1024


@dataclass(frozen=True)
class AppendResult:
    event: KnowledgeChangeEvent
    segment: str  # relative to the events root, e.g. segments/events-20260208-10.jsonl


@dataclass(frozen=True)
class SegmentLine:
    segment: str
    line: int
    event: KnowledgeChangeEvent


@dataclass(frozen=True)
class CompactionResult:
    compacted: int
    events_compacted: int
    checkpoint: CompactionCheckpoint | None


@dataclass(frozen=True)
class EventStoreStatus:
    events_root: str
    segments: int
    active_segment: str | None
    events_total: int
    latest_event: str | None
    last_compaction: CompactionCheckpoint | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "events_root": self.events_root,
            "segments": self.segments,
            "active_segment": self.active_segment,
            "events_total": self.events_total,
            "latest_event": self.latest_event,
            "last_compaction": self.last_compaction.model_dump(mode="json") if self.last_compaction else None,
        }


def _norm(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class EventStore:
    """Durable knowledge change event log for one project."""

    def __init__(
        self,
        context: ProjectContext,
        *,
        max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_segment_bytes <= 0:
            raise ValueError(f"max_segment_bytes must be > 0, got {max_segment_bytes}")
        self._ctx = context
        self._max_segment_bytes = max_segment_bytes
        self._now_fn = now_fn

    @property
    def context(self) -> ProjectContext:
        return self._ctx

    # -- index ---------------------------------------------------------------

    def load_index(self) -> EventIndex:
        return load_record_optional(EventIndex, self._ctx.events_index_file) or EventIndex()

    def _persist_index(self, index: EventIndex, now: datetime) -> EventIndex:
        index.updated_at = iso_z(now)
        write_json_atomic(self._ctx.events_index_file, index)
        return index

    def _guard(self):
        return file_guard(self._ctx.events_dir / ".index.lock")

    def list_segment_files(self) -> list[str]:
        """Segment files on disk, oldest first."""
        segments_dir = self._ctx.segments_dir
        if not segments_dir.is_dir():
            return []
        names = [p.name for p in segments_dir.iterdir() if p.is_file() and is_segment_name(p.name)]
        return sorted(names, key=segment_sort_key)

    # -- rotation ------------------------------------------------------------

    def rotate_if_needed(self, now: datetime | None = None) -> str:
        """Return the active segment, rotating when the hour bucket or size demands it."""
        now = now or self._now_fn()
        with self._guard():
            _, active = self._rotate_locked(now)
        return active

    def _rotate_locked(self, now: datetime) -> tuple[EventIndex, str]:
        index = self.load_index()
        bucket = now.astimezone(UTC).strftime("%Y%m%d-%H")
        current = index.active_segment
        reason = ""
        desired: str | None = None

        if current is None:
            desired, reason = segment_name(bucket), "initial"
        else:
            current_bucket, current_seq = segment_sort_key(current)
            current_path = self._ctx.segments_dir / current
            if current_bucket != bucket:
                desired = self._latest_in_bucket(index, bucket) or segment_name(bucket)
                reason = "hour_bucket"
            elif not current_path.exists():
                desired, reason = current, "missing_file"
            elif current_path.stat().st_size > self._max_segment_bytes:
                desired, reason = segment_name(bucket, current_seq + 1), "size"

        if desired is None:
            return index, current  # type: ignore[return-value]

        self._ctx.segments_dir.mkdir(parents=True, exist_ok=True)
        self._ctx.event_checkpoints_dir.mkdir(parents=True, exist_ok=True)
        (self._ctx.segments_dir / desired).touch(exist_ok=True)
        if index.segment(desired) is None:
            index.segments.append(SegmentEntry(file=desired, created_at=iso_z(now)))
            index.segments.sort(key=lambda s: segment_sort_key(s.file))
        index.active_segment = desired
        self._persist_index(index, now)
        logger.info("segment_rotated", previous=current, active=desired, reason=reason)
        return index, desired

    @staticmethod
    def _latest_in_bucket(index: EventIndex, bucket: str) -> str | None:
        in_bucket = [s.file for s in index.segments if segment_sort_key(s.file)[0] == bucket]
        return max(in_bucket, key=segment_sort_key) if in_bucket else None

    # -- append --------------------------------------------------------------

    def build_event(self, raw: Mapping[str, Any], *, now: datetime | None = None) -> KnowledgeChangeEvent:
        """Normalize producer input into a validated event with its derived id."""
        now = now or self._now_fn()
        event_type = _norm(raw.get("type"))
        repo_id = _norm(raw.get("repo_id")) or None
        commit = _norm(raw.get("commit"))
        artifacts = raw.get("artifacts") or {}
        if not isinstance(artifacts, Mapping):
            artifacts = {"paths": artifacts}
        paths = normalize_str_set(artifacts.get("paths"))
        computed = compute_event_id(type=event_type, repo_id=repo_id, commit=commit, paths=paths)
        supplied = _norm(raw.get("event_id"))
        if supplied and supplied != computed:
            raise EventIdMismatchError(expected=computed, got=supplied)

        scope = _norm(raw.get("scope")) or (f"repo:{repo_id}" if repo_id else "system")
        timestamp = raw.get("timestamp")
        if isinstance(timestamp, datetime):
            timestamp = iso_z(timestamp)
        payload = {
            "version": 1,
            "event_id": computed,
            "type": event_type,
            "scope": scope,
            "repo_id": repo_id,
            "work_id": _norm(raw.get("work_id")),
            "pr_number": raw.get("pr_number"),
            "commit": commit,
            "artifacts": {"paths": paths, "fingerprints": artifacts.get("fingerprints") or []},
            "summary": _norm(raw.get("summary")),
            "timestamp": _norm(timestamp) or iso_z(now),
        }
        if raw.get("obligations") is not None:
            payload["obligations"] = raw["obligations"]
        return parse_record(KnowledgeChangeEvent, payload, source="event input")

    def append(
        self,
        event: Mapping[str, Any] | KnowledgeChangeEvent,
        *,
        now: datetime | None = None,
    ) -> AppendResult:
        """Append one event line to the active segment and bump the index counters.

        Re-appending a logically identical event writes another identical line;
        consumers de-duplicate by event_id.
        """
        now = now or self._now_fn()
        raw = event.model_dump(mode="json") if isinstance(event, KnowledgeChangeEvent) else event
        record = self.build_event(raw, now=now)

        with self._guard():
            index, active = self._rotate_locked(now)
            append_line(self._ctx.segments_dir / active, record.to_line())
            index.events_total += 1
            index.latest_event_at = record.timestamp
            entry = index.segment(active)
            if entry is None:
                entry = SegmentEntry(file=active, created_at=iso_z(now))
                index.segments.append(entry)
            entry.events += 1
            entry.latest_event_at = record.timestamp
            self._persist_index(index, now)

        logger.info(
            "event_appended",
            event_id=record.event_id,
            type=record.type,
            scope=record.scope,
            segment=active,
        )
        return AppendResult(event=record, segment=f"segments/{active}")

    # -- reads ---------------------------------------------------------------

    def _read_segment(self, name: str) -> list[tuple[int, KnowledgeChangeEvent]]:
        path = self._ctx.segments_dir / name
        text = path.read_text(encoding="utf-8")
        out: list[tuple[int, KnowledgeChangeEvent]] = []
        for line_no, raw in enumerate(text.split("\n")):
            line = raw.strip()
            if not line:
                continue
            out.append(
                (
                    line_no,
                    parse_json_line(
                        KnowledgeChangeEvent, line, source=f"{name}:{line_no + 1}", path=path
                    ),
                )
            )
        return out

    def read_events_since(self, since: str | datetime | None = None) -> list[KnowledgeChangeEvent]:
        """Events strictly newer than `since`, ordered by (timestamp, event_id).

        A missing `since` reads from the beginning of the retained log.
        """
        since_dt = parse_timestamp(since) if isinstance(since, str) and since.strip() else None
        if isinstance(since, datetime):
            since_dt = since.astimezone(UTC)

        events: list[tuple[datetime, KnowledgeChangeEvent]] = []
        for name in self.list_segment_files():
            for _, event in self._read_segment(name):
                ts = event.parsed_timestamp
                if since_dt is not None and ts <= since_dt:
                    continue
                events.append((ts, event))
        events.sort(key=lambda pair: (pair[0], pair[1].event_id))
        return [event for _, event in events]

    def read_events_after(self, checkpoint: ConsumerCheckpoint) -> Iterator[SegmentLine]:
        """Yield log lines after a consumer's anchor, in physical log order."""
        anchor_segment = checkpoint.last_processed_segment
        anchor_key = segment_sort_key(anchor_segment) if anchor_segment else None

        for name in self.list_segment_files():
            key = segment_sort_key(name)
            if anchor_key is not None and key < anchor_key:
                continue
            lines = self._read_segment(name)
            if name == anchor_segment:
                lines = self._after_anchor(name, lines, checkpoint)
            for line_no, event in lines:
                yield SegmentLine(segment=name, line=line_no, event=event)

    @staticmethod
    def _after_anchor(
        name: str,
        lines: list[tuple[int, KnowledgeChangeEvent]],
        checkpoint: ConsumerCheckpoint,
    ) -> list[tuple[int, KnowledgeChangeEvent]]:
        for i, (line_no, event) in enumerate(lines):
            if line_no != checkpoint.last_processed_line:
                continue
            if event.event_id != checkpoint.last_processed_event_id:
                raise EventStoreError(
                    f"checkpoint for consumer {checkpoint.consumer} points at {name}:{line_no + 1} "
                    f"holding {event.event_id}, expected {checkpoint.last_processed_event_id}"
                )
            return lines[i + 1 :]
        raise EventStoreError(
            f"checkpoint anchor for consumer {checkpoint.consumer} not found in {name}"
        )

    def latest_events_by_repo(self, event_type: str = "merge") -> dict[str, KnowledgeChangeEvent]:
        """Most recent event of `event_type` per repo, from a single pass over the log."""
        latest: dict[str, KnowledgeChangeEvent] = {}
        for event in self.read_events_since(None):
            if event.type == event_type and event.repo_id is not None:
                latest[event.repo_id] = event
        return latest

    def latest_event_for(self, repo_id: str, event_type: str = "merge") -> KnowledgeChangeEvent | None:
        return self.latest_events_by_repo(event_type).get(repo_id)

    # -- compaction ----------------------------------------------------------

    def read_compaction_checkpoint(self) -> CompactionCheckpoint | None:
        return load_record_optional(CompactionCheckpoint, self._ctx.compaction_checkpoint_file)

    def status(self) -> EventStoreStatus:
        """Read-only summary: segment count, counters and the last compaction.

        Corrupt index or checkpoint files raise RecordValidationError.
        """
        index = self.load_index()
        return EventStoreStatus(
            events_root=str(self._ctx.events_dir),
            segments=len(self.list_segment_files()),
            active_segment=index.active_segment,
            events_total=index.events_total,
            latest_event=index.latest_event_at,
            last_compaction=self.read_compaction_checkpoint(),
        )

    def compact_older_than(self, days: int, *, now: datetime | None = None) -> CompactionResult:
        """Fold segments older than `days` (by mtime) into a checkpoint, then delete them.

        The active segment and anything ordered after it are never touched. The
        checkpoint is written before any deletion, so a crash here only means the
        next run redoes the same work.
        """
        now = now or self._now_fn()
        cutoff = now.timestamp() - max(0, int(days)) * 86400

        with self._guard():
            index = self.load_index()
            active = index.active_segment
            active_key = segment_sort_key(active) if active else None

            victims: list[str] = []
            for name in self.list_segment_files():
                if name == active:
                    continue
                if active_key is not None and segment_sort_key(name) > active_key:
                    continue
                if (self._ctx.segments_dir / name).stat().st_mtime < cutoff:
                    victims.append(name)

            if not victims:
                logger.debug("compaction_noop", days=days, active=active)
                return CompactionResult(compacted=0, events_compacted=0, checkpoint=None)

            events_compacted = 0
            latest: tuple[datetime, str] | None = None
            for name in victims:
                for _, event in self._read_segment(name):
                    events_compacted += 1
                    ts = event.parsed_timestamp
                    if latest is None or ts > latest[0]:
                        latest = (ts, event.timestamp)

            checkpoint = CompactionCheckpoint(
                compacted_at=iso_z(now),
                through_segment=max(victims, key=segment_sort_key),
                segments_compacted=len(victims),
                events_compacted=events_compacted,
                latest_event_at=latest[1] if latest else None,
            )
            write_json_atomic(self._ctx.compaction_checkpoint_file, checkpoint)

            for name in victims:
                (self._ctx.segments_dir / name).unlink(missing_ok=True)
            removed = set(victims)
            index.segments = [s for s in index.segments if s.file not in removed]
            self._persist_index(index, now)

        logger.info(
            "segments_compacted",
            segments=len(victims),
            events_compacted=events_compacted,
            through_segment=checkpoint.through_segment,
        )
        return CompactionResult(
            compacted=len(victims), events_compacted=events_compacted, checkpoint=checkpoint
        )


def segment_path(context: ProjectContext, segment: str) -> Path:
    """Absolute path for an AppendResult.segment value or bare segment name."""
    return context.segments_dir / Path(segment).name
