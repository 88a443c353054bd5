"""Decision packet store: decisions/DECISION-<id>.json plus a Markdown rendering.

Packets are never deleted. The only mutation is answer(), which moves a packet
from open to answered exactly once and records a decision_answered event.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog

from src.config.project import ProjectContext
from src.decisions.answers import parse_answer
from src.decisions.models import AnswerType, DecisionPacket, DecisionTrigger
from src.decisions.render import render_decision_md
from src.events.models import KnowledgeChangeEvent
from src.events.store import EventStore
from src.infra.atomic import write_json_atomic, write_text_atomic
from src.infra.clock import iso_z, utc_now
from src.infra.errors import (
    DecisionError,
    DecisionNotFoundError,
    DecisionNotOpenError,
    InvalidAnswerFormatError,
    InvalidAnswerInputError,
    MissingAnswerError,
)
from src.infra.ids import normalize_text, stable_hex
from src.infra.records import load_record, parse_record

logger = structlog.get_logger()

_PREFIX = "DECISION-"


def decision_id_for(
    *, scope: str, trigger: str, blocking_state: str, question: str, constraints: str = ""
) -> str:
    return stable_hex(
        [
            normalize_text(scope),
            normalize_text(trigger),
            normalize_text(blocking_state),
            normalize_text(question),
            normalize_text(constraints),
        ],
        12,
    )


def question_id_for(decision_id: str, question: str) -> str:
    return stable_hex([decision_id, normalize_text(question)], 12)


def normalize_decision_id(value: str) -> str:
    """Accept both DECISION-<id> and bare <id>."""
    raw = (value or "").strip()
    return raw[len(_PREFIX):] if raw.startswith(_PREFIX) else raw


def build_decision_packet(
    *,
    scope: str,
    trigger: DecisionTrigger,
    blocking_state: str,
    question: str,
    expected_answer_type: AnswerType,
    summary: str,
    why_automation_failed: str,
    assumptions_if_unanswered: str,
    constraints: str = "",
    blocks: Iterable[str] = (),
    what_is_known: Iterable[str] = (),
    created_at: datetime | None = None,
) -> DecisionPacket:
    """Build a single-question open packet whose ids derive from its content.

    Raising the same question from the same blocking condition yields the same
    decision_id, so a re-raise never creates a second packet.
    """
    decision_id = decision_id_for(
        scope=scope,
        trigger=trigger,
        blocking_state=blocking_state,
        question=question,
        constraints=constraints,
    )
    payload = {
        "decision_id": decision_id,
        "scope": normalize_text(scope),
        "trigger": normalize_text(trigger),
        "blocking_state": normalize_text(blocking_state),
        "context": {
            "summary": normalize_text(summary),
            "why_automation_failed": normalize_text(why_automation_failed),
            "what_is_known": list(what_is_known),
        },
        "questions": [
            {
                "id": question_id_for(decision_id, question),
                "question": normalize_text(question),
                "expected_answer_type": expected_answer_type,
                "constraints": constraints.strip(),
                "blocks": list(blocks),
            }
        ],
        "assumptions_if_unanswered": normalize_text(assumptions_if_unanswered),
        "created_at": iso_z(created_at or utc_now()),
        "status": "open",
    }
    return parse_record(DecisionPacket, payload, source="decision packet input")


@dataclass(frozen=True)
class SaveResult:
    packet: DecisionPacket
    created: bool


@dataclass(frozen=True)
class AnswerResult:
    packet: DecisionPacket | None = None
    event: KnowledgeChangeEvent | None = None
    error: DecisionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> str | None:
        return self.error.code if self.error else None


class DecisionStore:
    def __init__(
        self,
        context: ProjectContext,
        *,
        events: EventStore | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ctx = context
        self._events = events or EventStore(context, now_fn=now_fn)
        self._now_fn = now_fn

    def _write(self, packet: DecisionPacket) -> None:
        write_json_atomic(self._ctx.decision_json(packet.decision_id), packet, exclude_none=True)
        write_text_atomic(self._ctx.decision_md(packet.decision_id), render_decision_md(packet))

    def save(self, packet: DecisionPacket) -> SaveResult:
        """Persist a new packet. An existing packet with the same id is returned untouched."""
        path = self._ctx.decision_json(packet.decision_id)
        if path.exists():
            existing = load_record(DecisionPacket, path)
            logger.debug("decision_exists", decision_id=packet.decision_id, status=existing.status)
            return SaveResult(packet=existing, created=False)
        self._write(packet)
        logger.info(
            "decision_created",
            decision_id=packet.decision_id,
            scope=packet.scope,
            blocking_state=packet.blocking_state,
        )
        return SaveResult(packet=packet, created=True)

    def load(self, decision_id: str) -> DecisionPacket:
        did = normalize_decision_id(decision_id)
        path = self._ctx.decision_json(did)
        if not did or not path.exists():
            raise DecisionNotFoundError(did or decision_id)
        return load_record(DecisionPacket, path)

    def list_packets(self) -> list[DecisionPacket]:
        """Every packet on disk, oldest first. A corrupt packet fails the listing."""
        decisions_dir = self._ctx.decisions_dir
        if not decisions_dir.is_dir():
            return []
        packets = [
            load_record(DecisionPacket, p)
            for p in sorted(decisions_dir.glob(f"{_PREFIX}*.json"))
            if p.is_file()
        ]
        return sorted(packets, key=lambda p: (p.created_at, p.decision_id))

    def open_packets(self) -> list[DecisionPacket]:
        return [p for p in self.list_packets() if p.is_open]

    def answer(self, decision_id: str, raw_text: str) -> AnswerResult:
        """Answer every question of an open packet.

        Answer-path failures come back as AnswerResult.error; corrupt packet files
        still raise RecordValidationError.
        """
        try:
            return self._answer(decision_id, raw_text)
        except DecisionError as e:
            logger.info("decision_answer_rejected", decision_id=decision_id, code=e.code, reason=str(e))
            return AnswerResult(error=e)

    def answer_from_file(self, decision_id: str, input_path: Path) -> AnswerResult:
        try:
            text = input_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return AnswerResult(error=InvalidAnswerInputError(f"Cannot read --input file {input_path}: {e}"))
        return self.answer(decision_id, text)

    def _answer(self, decision_id: str, raw_text: str) -> AnswerResult:
        packet = self.load(decision_id)
        if not packet.is_open:
            raise DecisionNotOpenError(packet.decision_id, packet.status)

        answered_at = iso_z(self._now_fn())
        if len(packet.questions) == 1:
            answers = {packet.questions[0].id: raw_text}
        else:
            answers = _parse_answer_map(raw_text)

        questions = []
        for q in packet.questions:
            if q.id not in answers:
                raise MissingAnswerError(q.id)
            raw = answers[q.id]
            if isinstance(raw, bool):
                raw = "true" if raw else "false"
            value = parse_answer(q, "" if raw is None else str(raw))
            questions.append(q.model_copy(update={"answer": value, "answered_at": answered_at}))

        updated = parse_record(
            DecisionPacket,
            {
                **packet.model_dump(mode="json"),
                "questions": [q.model_dump(mode="json") for q in questions],
                "status": "answered",
                "answered_at": answered_at,
            },
            source=f"answered decision {packet.decision_id}",
        )
        event_input = {
            "type": "decision_answered",
            "scope": updated.scope,
            "repo_id": updated.repo_id,
            "work_id": f"{_PREFIX}{updated.decision_id}",
            "commit": "",
            "artifacts": {"paths": [f"decisions/{_PREFIX}{updated.decision_id}.json"]},
            "summary": f"Decision {updated.decision_id} answered ({updated.blocking_state})",
            "timestamp": answered_at,
        }
        # a failed append must leave the packet open for a retry
        appended = self._events.append(event_input)
        self._write(updated)
        logger.info(
            "decision_answered",
            decision_id=updated.decision_id,
            scope=updated.scope,
            event_id=appended.event.event_id,
        )
        return AnswerResult(packet=updated, event=appended.event)


def _parse_answer_map(raw_text: str) -> dict[str, object]:
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        raise InvalidAnswerFormatError(
            "Multiple questions require JSON object input mapping question_id -> answer."
        )
    return data
