"""QA follow-ups: one intake item per merge that owes E2E tests it did not bring.

Reads merge/ci_fix events after the consumer checkpoint. The checkpoint moves
past an event only once its intake item (if any) is on disk, and the intake path
is derived from the event_id, so replays after a crash never create duplicates.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from src.config.project import ProjectContext
from src.events.checkpoints import read_checkpoint, write_checkpoint
from src.events.models import KnowledgeChangeEvent
from src.events.store import EventStore, SegmentLine
from src.infra.atomic import write_text_atomic
from src.infra.clock import utc_now

logger = structlog.get_logger()

DEFAULT_CONSUMER = "qa-merge-followups"
CONSUMED_TYPES = frozenset({"merge", "ci_fix"})
_E2E_MARKERS = ("/e2e/", "/cypress/", "/playwright/")


def is_e2e_path(path: str) -> bool:
    p = path.strip().replace("\\", "/").lower()
    return p.startswith("e2e/") or any(m in p for m in _E2E_MARKERS)


def needs_e2e_followup(event: KnowledgeChangeEvent) -> tuple[bool, str]:
    if event.type != "merge":
        return False, "not_a_merge"
    if event.obligations is None:
        return False, "no_obligations"
    if not event.obligations.must_add_e2e:
        return False, "no_e2e_obligation"
    if any(is_e2e_path(p) for p in event.artifacts.paths):
        return False, "e2e_already_merged"
    return True, "missing_e2e_changes"


def render_followup_intake(event: KnowledgeChangeEvent) -> str:
    scope_label = "system scope" if event.scope == "system" else event.scope
    lines = [
        f"Intake: Add E2E tests for {scope_label}.",
        "Source: qa_merge_event",
        "Origin: qa_followup",
        f"Scope: {event.scope}",
        f"Linkage-WorkId: {event.work_id}",
        f"Linkage-MergeEventId: {event.event_id}",
        "",
        "QA follow-up context:",
        f"- Original workId: {event.work_id}",
        f"- Repo: {event.repo_id or 'system'}",
        f"- Commit: {event.commit or '-'}",
        "- Reason: obligations.must_add_e2e=true but no E2E test file changes were merged.",
    ]
    if event.artifacts.paths:
        lines.append("- Changed paths:")
        lines += [f"  - {p}" for p in event.artifacts.paths[:50]]
    lines += [
        "",
        "Deliverable:",
        "- Add or update E2E coverage for the changed behavior.",
        "- Reference original workId and merged scope in PR notes.",
        "",
    ]
    return "\n".join(lines)


@dataclass
class FollowupReport:
    events_seen: int = 0
    created: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"events_seen": self.events_seen, "created": self.created, "skipped": self.skipped}


class QaFollowupConsumer:
    def __init__(
        self,
        context: ProjectContext,
        events: EventStore,
        *,
        consumer: str = DEFAULT_CONSUMER,
        max_events: int | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ctx = context
        self._events = events
        self._consumer = consumer
        self._max_events = max_events
        self._now_fn = now_fn

    def intake_path_for(self, event: KnowledgeChangeEvent) -> Path:
        return self._ctx.intake_inbox_dir / f"I-{event.event_id}.md"

    def run(self) -> FollowupReport:
        report = FollowupReport()
        checkpoint = read_checkpoint(self._ctx, self._consumer)
        last: SegmentLine | None = None

        for position in self._events.read_events_after(checkpoint):
            event = position.event
            if event.type in CONSUMED_TYPES:
                if self._max_events is not None and report.events_seen >= self._max_events:
                    break
                report.events_seen += 1
                if self._handle(event, report):
                    write_checkpoint(self._ctx, self._consumer, position, now=self._now_fn())
                    last = None
                    continue
            last = position

        if last is not None:
            write_checkpoint(self._ctx, self._consumer, last, now=self._now_fn())

        logger.info(
            "followups_processed",
            consumer=self._consumer,
            events_seen=report.events_seen,
            created=len(report.created),
            skipped=len(report.skipped),
        )
        return report

    def _handle(self, event: KnowledgeChangeEvent, report: FollowupReport) -> bool:
        """Process one event; True when an intake item was written."""
        needed, reason = needs_e2e_followup(event)
        if not needed:
            report.skipped.append({"event_id": event.event_id, "reason": reason})
            return False

        path = self.intake_path_for(event)
        if path.exists():
            report.skipped.append({"event_id": event.event_id, "reason": "already_exists"})
            return False

        write_text_atomic(path, render_followup_intake(event))
        rel = path.relative_to(self._ctx.root_path).as_posix()
        report.created.append(rel)
        logger.info("followup_intake_created", event_id=event.event_id, intake=rel)
        return True
