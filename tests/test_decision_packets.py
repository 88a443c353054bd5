"""Tests for decision packets: ids, persistence, answer parsing and the answer path."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.decisions.answers import choices_from_constraints, parse_answer
from src.decisions.models import DecisionPacket, DecisionQuestion
from src.decisions.render import render_decision_md
from src.decisions.store import (
    DecisionStore,
    build_decision_packet,
    normalize_decision_id,
    question_id_for,
)
from src.events.store import EventStore
from src.infra.errors import DecisionNotFoundError, InvalidAnswerFormatError, RecordValidationError


def _packet(clock, **overrides) -> DecisionPacket:
    kwargs = dict(
        scope="repo:repo-a",
        trigger="repo_committee",
        blocking_state="NEEDS_COMMITTEE",
        question="Is the billing module in scope?",
        expected_answer_type="boolean",
        summary="Committee could not agree",
        why_automation_failed="Conflicting evidence in scan",
        assumptions_if_unanswered="Treat billing as out of scope",
        what_is_known=["scan complete", "scan complete", "index fresh"],
        created_at=clock(),
    )
    kwargs.update(overrides)
    return build_decision_packet(**kwargs)


def _two_question_packet(clock) -> DecisionPacket:
    base = _packet(clock)
    data = base.model_dump(mode="json")
    data["questions"].append(
        {
            "id": question_id_for(base.decision_id, "Which database?"),
            "question": "Which database?",
            "expected_answer_type": "choice",
            "constraints": "choose one: postgres | sqlite",
            "blocks": ["NEEDS_SCAN"],
        }
    )
    return DecisionPacket.model_validate(data)


@pytest.fixture
def events(ctx, clock) -> EventStore:
    return EventStore(ctx, now_fn=clock)


@pytest.fixture
def store(ctx, events, clock) -> DecisionStore:
    return DecisionStore(ctx, events=events, now_fn=clock)


class TestDecisionIds:
    def test_id_is_stable_over_whitespace(self, clock) -> None:
        a = _packet(clock)
        b = _packet(clock, question="  Is the   billing module in scope? ", scope=" repo:repo-a")
        assert a.decision_id == b.decision_id
        assert len(a.decision_id) == 12
        assert a.questions[0].id == question_id_for(a.decision_id, "Is the billing module in scope?")

    def test_id_changes_with_blocking_state(self, clock) -> None:
        assert _packet(clock).decision_id != _packet(clock, blocking_state="NEEDS_SCAN").decision_id

    def test_context_is_normalized(self, clock) -> None:
        packet = _packet(clock)
        assert packet.context.what_is_known == ["index fresh", "scan complete"]
        assert packet.status == "open"
        assert packet.created_at == "2026-02-08T10:15:00.000Z"
        assert packet.repo_id == "repo-a"

    def test_normalize_decision_id(self) -> None:
        assert normalize_decision_id("DECISION-abc123def456") == "abc123def456"
        assert normalize_decision_id(" abc123def456 ") == "abc123def456"

    def test_invalid_scope_rejected(self, clock) -> None:
        with pytest.raises(RecordValidationError):
            _packet(clock, scope="repo:")

    def test_answered_requires_answers(self, clock) -> None:
        data = _packet(clock).model_dump(mode="json")
        data["status"] = "answered"
        data["answered_at"] = "2026-02-08T11:00:00.000Z"
        with pytest.raises(ValueError, match="needs answer"):
            DecisionPacket.model_validate(data)

    def test_duplicate_question_ids_rejected(self, clock) -> None:
        data = _packet(clock).model_dump(mode="json")
        data["questions"].append(dict(data["questions"][0]))
        with pytest.raises(ValueError, match="unique"):
            DecisionPacket.model_validate(data)

    def test_blocked_stages(self, clock) -> None:
        packet = _two_question_packet(clock)
        assert packet.blocked_stages() == {"NEEDS_COMMITTEE", "NEEDS_SCAN"}


class TestParseAnswer:
    def _q(self, kind: str, constraints: str = "") -> DecisionQuestion:
        return DecisionQuestion(
            id="q0000001", question="?", expected_answer_type=kind, constraints=constraints
        )

    @pytest.mark.parametrize(
        ("text", "expected"),
        [("yes", True), ("YES", True), ("true", True), (" no ", False), ("False", False)],
    )
    def test_boolean(self, text: str, expected: bool) -> None:
        assert parse_answer(self._q("boolean"), text) is expected

    def test_boolean_rejects_other_text(self) -> None:
        with pytest.raises(InvalidAnswerFormatError, match="yes\\|no"):
            parse_answer(self._q("boolean"), "maybe")

    def test_choice_returns_canonical_value(self) -> None:
        q = self._q("choice", "choose one: Postgres | SQLite")
        assert parse_answer(q, "sqlite") == "SQLite"

    def test_choice_rejects_unknown(self) -> None:
        q = self._q("choice", "Postgres|SQLite")
        with pytest.raises(InvalidAnswerFormatError, match="Postgres \\| SQLite"):
            parse_answer(q, "mysql")

    def test_choice_without_choices(self) -> None:
        with pytest.raises(InvalidAnswerFormatError, match="no choices"):
            parse_answer(self._q("choice"), "anything")

    def test_reference_needs_colon(self) -> None:
        assert parse_answer(self._q("reference"), "repo:repo-b") == "repo:repo-b"
        with pytest.raises(InvalidAnswerFormatError):
            parse_answer(self._q("reference"), "repo-b")

    def test_string_is_trimmed(self) -> None:
        assert parse_answer(self._q("string"), "  free text \n") == "free text"

    def test_empty_rejected(self) -> None:
        with pytest.raises(InvalidAnswerFormatError, match="empty"):
            parse_answer(self._q("string"), "   ")

    def test_choices_from_constraints(self) -> None:
        assert choices_from_constraints("pick: a | b |") == ["a", "b"]
        assert choices_from_constraints("a|b") == ["a", "b"]
        assert choices_from_constraints("") == []


class TestDecisionStore:
    def test_save_writes_json_and_markdown(self, store, ctx, clock) -> None:
        packet = _packet(clock)
        result = store.save(packet)
        assert result.created is True
        data = json.loads(ctx.decision_json(packet.decision_id).read_text(encoding="utf-8"))
        assert data["status"] == "open"
        assert "answered_at" not in data
        md = ctx.decision_md(packet.decision_id).read_text(encoding="utf-8")
        assert f"# Decision Packet: {packet.decision_id}" in md
        assert "Is the billing module in scope?" in md

    def test_save_is_idempotent(self, store, clock) -> None:
        packet = _packet(clock)
        store.save(packet)
        clock.advance(hours=1)
        again = store.save(_packet(clock))
        assert again.created is False
        assert again.packet.created_at == packet.created_at

    def test_load_accepts_prefixed_id(self, store, clock) -> None:
        packet = store.save(_packet(clock)).packet
        assert store.load(f"DECISION-{packet.decision_id}") == packet

    def test_load_missing(self, store) -> None:
        with pytest.raises(DecisionNotFoundError):
            store.load("DECISION-000000000000")

    def test_list_sorted_and_open_filter(self, store, clock) -> None:
        first = store.save(_packet(clock)).packet
        clock.advance(minutes=1)
        second = store.save(_packet(clock, question="Second question?", expected_answer_type="string")).packet
        assert [p.decision_id for p in store.list_packets()] == [first.decision_id, second.decision_id]
        store.answer(first.decision_id, "yes")
        assert [p.decision_id for p in store.open_packets()] == [second.decision_id]

    def test_corrupt_packet_fails_listing(self, store, ctx, clock) -> None:
        store.save(_packet(clock))
        (ctx.decisions_dir / "DECISION-broken.json").write_text("{", encoding="utf-8")
        with pytest.raises(RecordValidationError):
            store.list_packets()


class TestAnswer:
    def test_single_question_answer(self, store, events, ctx, clock) -> None:
        packet = store.save(_packet(clock)).packet
        clock.advance(minutes=30)
        result = store.answer(f"DECISION-{packet.decision_id}", "Yes\n")
        assert result.ok
        assert result.packet.status == "answered"
        assert result.packet.answered_at == "2026-02-08T10:45:00.000Z"
        assert result.packet.questions[0].answer is True

        saved = store.load(packet.decision_id)
        assert saved == result.packet
        assert "answer: yes" in ctx.decision_md(packet.decision_id).read_text(encoding="utf-8")

        [event] = events.read_events_since(None)
        assert event == result.event
        assert event.type == "decision_answered"
        assert event.scope == "repo:repo-a"
        assert event.repo_id == "repo-a"
        assert event.work_id == f"DECISION-{packet.decision_id}"
        assert event.commit == ""
        assert event.artifacts.paths == [f"decisions/DECISION-{packet.decision_id}.json"]
        assert event.timestamp == result.packet.answered_at

    def test_system_scope_event(self, store, events, clock) -> None:
        packet = store.save(
            _packet(clock, scope="system", trigger="integration_committee")
        ).packet
        result = store.answer(packet.decision_id, "no")
        assert result.ok
        assert result.event.scope == "system"
        assert result.event.repo_id is None

    def test_second_answer_is_not_open(self, store, events, clock) -> None:
        packet = store.save(_packet(clock)).packet
        assert store.answer(packet.decision_id, "yes").ok
        again = store.answer(packet.decision_id, "no")
        assert again.ok is False
        assert again.code == "NOT_OPEN"
        assert store.load(packet.decision_id).questions[0].answer is True
        assert len(events.read_events_since(None)) == 1

    def test_failed_event_append_leaves_packet_open(self, store, events, ctx, clock) -> None:
        packet = store.save(_packet(clock)).packet
        ctx.events_index_file.parent.mkdir(parents=True, exist_ok=True)
        ctx.events_index_file.write_text("{not an index", encoding="utf-8")
        with pytest.raises(RecordValidationError):
            store.answer(packet.decision_id, "yes")
        assert store.load(packet.decision_id).status == "open"

        ctx.events_index_file.unlink()
        retry = store.answer(packet.decision_id, "yes")
        assert retry.ok
        assert store.load(packet.decision_id).status == "answered"
        assert [e.event_id for e in events.read_events_since(None)] == [retry.event.event_id]

    def test_unknown_decision(self, store) -> None:
        result = store.answer("DECISION-000000000000", "yes")
        assert result.code == "NOT_FOUND"

    def test_invalid_format_leaves_packet_open(self, store, events, clock) -> None:
        packet = store.save(_packet(clock)).packet
        result = store.answer(packet.decision_id, "perhaps")
        assert result.code == "INVALID_ANSWER_FORMAT"
        assert store.load(packet.decision_id).is_open
        assert events.read_events_since(None) == []

    def test_multi_question_requires_json_object(self, store, clock) -> None:
        packet = store.save(_two_question_packet(clock)).packet
        result = store.answer(packet.decision_id, "yes")
        assert result.code == "INVALID_ANSWER_FORMAT"
        assert "JSON object" in str(result.error)

    def test_multi_question_missing_answer(self, store, clock) -> None:
        packet = store.save(_two_question_packet(clock)).packet
        first_id = packet.questions[0].id
        result = store.answer(packet.decision_id, json.dumps({first_id: "yes"}))
        assert result.code == "MISSING_ANSWER"
        assert result.error.question_id == packet.questions[1].id

    def test_multi_question_answer(self, store, clock) -> None:
        packet = store.save(_two_question_packet(clock)).packet
        q1, q2 = packet.questions
        result = store.answer(packet.decision_id, json.dumps({q1.id: True, q2.id: "POSTGRES"}))
        assert result.ok
        answers = {q.id: q.answer for q in result.packet.questions}
        assert answers == {q1.id: True, q2.id: "postgres"}

    def test_answer_from_missing_file(self, store, clock, tmp_path: Path) -> None:
        packet = store.save(_packet(clock)).packet
        result = store.answer_from_file(packet.decision_id, tmp_path / "missing.txt")
        assert result.code == "INVALID_INPUT"

    def test_answer_from_file(self, store, clock, tmp_path: Path) -> None:
        packet = store.save(_packet(clock)).packet
        answer_file = tmp_path / "answer.txt"
        answer_file.write_text("no\n", encoding="utf-8")
        result = store.answer_from_file(packet.decision_id, answer_file)
        assert result.ok
        assert result.packet.questions[0].answer is False


class TestRender:
    def test_render_lists_blocks_and_constraints(self, clock) -> None:
        md = render_decision_md(_two_question_packet(clock))
        assert "constraints: choose one: postgres | sqlite" in md
        assert "blocks: NEEDS_SCAN" in md
        assert "- index fresh" in md
