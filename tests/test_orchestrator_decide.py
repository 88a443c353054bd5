"""Tests for the pure next-action function and the staleness signal."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.orchestrator.decide import decide
from src.orchestrator.models import (
    ActionType,
    EvidenceState,
    IntegrationEvidence,
    MissingFact,
    OpenDecision,
    Stage,
)
from src.orchestrator.staleness import evaluate_staleness


def _ready(**overrides) -> EvidenceState:
    fields = dict(
        repos=["repo-a", "repo-b"],
        kickoff_present=True,
        kickoff_sufficiency="sufficient",
        committee_passed=["repo-a", "repo-b"],
        integration=IntegrationEvidence(present=True, evidence_valid=True),
    )
    fields.update(overrides)
    return EvidenceState(**fields)


def _open(decision_id: str, *, stages: list[str], created_at: str = "2026-02-08T10:00:00.000Z", scope: str = "system") -> OpenDecision:
    return OpenDecision(decision_id=decision_id, created_at=created_at, scope=scope, blocked_stages=stages)


class TestPipeline:
    def test_ready(self) -> None:
        decision = decide(_ready())
        assert decision.stage == Stage.COMMITTEE_PASSED
        assert decision.next_action.type == ActionType.READY
        assert decision.next_action.target_repos == []

    def test_missing_index_first(self) -> None:
        decision = decide(_ready(missing_index=["repo-b", "repo-a"], missing_scan=["repo-a"]))
        assert decision.stage == Stage.NEEDS_INDEX
        assert decision.next_action.type == ActionType.INDEX
        assert decision.next_action.target_repos == ["repo-a", "repo-b"]
        assert decision.next_action.scope == "repo"

    def test_missing_scan(self) -> None:
        decision = decide(_ready(missing_scan=["repo-b"]))
        assert decision.stage == Stage.NEEDS_SCAN
        assert decision.next_action.type == ActionType.SCAN
        assert decision.next_action.target_repos == ["repo-b"]

    def test_repo_limit_caps_targets(self) -> None:
        decision = decide(_ready(missing_index=["repo-c", "repo-b", "repo-a"], repo_limit=2))
        assert decision.next_action.target_repos == ["repo-a", "repo-b"]

    def test_kickoff_missing(self) -> None:
        decision = decide(_ready(kickoff_present=False, kickoff_sufficiency=None))
        assert decision.stage == Stage.NEEDS_KICKOFF
        assert decision.next_action.type == ActionType.KICKOFF
        assert "kickoff is missing" in decision.next_action.reason

    def test_kickoff_insufficient(self) -> None:
        decision = decide(_ready(kickoff_sufficiency="insufficient"))
        assert decision.stage == Stage.NEEDS_KICKOFF
        assert "insufficient" in decision.next_action.reason

    def test_minimum_unmet_targets_all_repos(self) -> None:
        decision = decide(
            _ready(
                minimum_sufficient=False,
                missing_facts=[MissingFact(repo_id="repo-a", fact_contains="auth")],
            )
        )
        assert decision.stage == Stage.NEEDS_COMMITTEE
        assert decision.next_action.target_repos == ["repo-a", "repo-b"]

    def test_committee_missing_or_stale(self) -> None:
        decision = decide(
            _ready(committee_missing=["repo-b"], committee_stale=["repo-a"], committee_passed=[])
        )
        assert decision.stage == Stage.NEEDS_COMMITTEE
        assert decision.next_action.type == ActionType.COMMITTEE
        assert decision.next_action.target_repos == ["repo-a", "repo-b"]

    def test_committee_failed_needs_decision(self) -> None:
        decision = decide(_ready(committee_failed=["repo-b"], committee_passed=["repo-a"]))
        assert decision.stage == Stage.DECISION_NEEDED
        assert decision.next_action.type == ActionType.QUESTION
        assert decision.next_action.target_repos == ["repo-b"]
        assert decision.next_action.decision_id is None

    @pytest.mark.parametrize(
        ("integration", "why"),
        [
            (IntegrationEvidence(), "missing"),
            (IntegrationEvidence(present=True, stale=True), "stale"),
            (IntegrationEvidence(present=True, evidence_valid=False), "gaps"),
            (IntegrationEvidence(present=True, evidence_valid=True, gaps=["auth"]), "gaps"),
        ],
    )
    def test_integration_needs_committee(self, integration: IntegrationEvidence, why: str) -> None:
        decision = decide(_ready(integration=integration))
        assert decision.stage == Stage.NEEDS_COMMITTEE
        assert decision.next_action.scope == "system"
        assert decision.next_action.target_repos == []
        assert why in decision.next_action.reason

    def test_staleness_never_changes_stage(self) -> None:
        evidence = _ready()
        stale = evidence.model_copy(
            update={"staleness": evaluate_staleness(
                repos=["repo-a"],
                scanned_at={},
                committee_markers=["repo-a"],
                integration_marker=False,
                merged_at={},
            )}
        )
        assert decide(stale) == decide(evidence)

    def test_deterministic(self) -> None:
        evidence = _ready(missing_scan=["repo-b", "repo-a"])
        assert decide(evidence) == decide(evidence)


class TestOpenDecisions:
    def test_packet_blocking_downstream_stage_takes_precedence(self) -> None:
        evidence = _ready(
            missing_scan=["repo-a"],
            open_decisions=[_open("aaaaaaaaaaaa", stages=["NEEDS_COMMITTEE"], scope="repo:repo-a")],
        )
        decision = decide(evidence)
        assert decision.stage == Stage.DECISION_NEEDED
        assert decision.next_action.type == ActionType.QUESTION
        assert decision.next_action.decision_id == "aaaaaaaaaaaa"
        assert decision.next_action.target_repos == ["repo-a"]
        assert decision.next_action.scope == "repo"

    def test_packet_blocking_earlier_stage_still_blocks(self) -> None:
        evidence = _ready(
            committee_missing=["repo-a"],
            open_decisions=[_open("aaaaaaaaaaaa", stages=["NEEDS_INDEX", "NEEDS_SCAN"])],
        )
        decision = decide(evidence)
        assert decision.stage == Stage.DECISION_NEEDED
        assert decision.next_action.decision_id == "aaaaaaaaaaaa"
        assert "blocks NEEDS_COMMITTEE" in decision.next_action.reason

    @pytest.mark.parametrize("stage", ["NEEDS_INDEX", "NEEDS_KICKOFF", "NEEDS_COMMITTEE", "COMMITTEE_PASSED"])
    def test_ready_never_reported_with_open_packet(self, stage: str) -> None:
        decision = decide(_ready(open_decisions=[_open("dddddddddddd", stages=[stage])]))
        assert decision.stage == Stage.DECISION_NEEDED
        assert decision.next_action.type == ActionType.QUESTION
        assert decision.next_action.decision_id == "dddddddddddd"

    def test_packet_naming_unknown_stage_blocks_everything(self) -> None:
        evidence = _ready(open_decisions=[_open("bbbbbbbbbbbb", stages=["SOMETHING_ELSE"])])
        decision = decide(evidence)
        assert decision.stage == Stage.DECISION_NEEDED
        assert decision.next_action.decision_id == "bbbbbbbbbbbb"
        assert decision.next_action.scope == "system"
        assert decision.next_action.target_repos == []

    def test_packet_blocks_ready_state(self) -> None:
        evidence = _ready(open_decisions=[_open("cccccccccccc", stages=["COMMITTEE_PASSED"])])
        assert decide(evidence).next_action.decision_id == "cccccccccccc"

    def test_oldest_packet_first_then_smallest_id(self) -> None:
        evidence = _ready(
            open_decisions=[
                _open("ffffffffffff", stages=["NEEDS_KICKOFF"], created_at="2026-02-08T09:00:00.000Z"),
                _open("bbbbbbbbbbbb", stages=["NEEDS_KICKOFF"], created_at="2026-02-08T10:00:00.000Z"),
                _open("aaaaaaaaaaaa", stages=["NEEDS_KICKOFF"], created_at="2026-02-08T10:00:00.000Z"),
            ]
        )
        assert decide(evidence).next_action.decision_id == "ffffffffffff"

        tied = evidence.model_copy(update={"open_decisions": evidence.open_decisions[1:]})
        assert decide(tied).next_action.decision_id == "aaaaaaaaaaaa"

    def test_created_at_compared_as_time_not_text(self) -> None:
        evidence = _ready(
            open_decisions=[
                _open("aaaaaaaaaaaa", stages=["NEEDS_KICKOFF"], created_at="2026-02-08T10:00:00.000+00:00"),
                _open("bbbbbbbbbbbb", stages=["NEEDS_KICKOFF"], created_at="2026-02-08T10:30:00.000+02:00"),
            ]
        )
        assert decide(evidence).next_action.decision_id == "bbbbbbbbbbbb"


class TestStaleness:
    def test_merge_after_scan(self) -> None:
        signal = evaluate_staleness(
            repos=["repo-b", "repo-a"],
            scanned_at={"repo-a": "2026-02-08T09:00:00.000Z", "repo-b": "2026-02-08T12:00:00.000Z"},
            committee_markers=[],
            integration_marker=False,
            merged_at={
                "repo-a": datetime(2026, 2, 8, 10, 0, tzinfo=UTC),
                "repo-b": datetime(2026, 2, 8, 10, 0, tzinfo=UTC),
            },
        )
        assert signal.stale is True
        assert signal.repos == ["repo-a"]
        assert signal.reasons == ["repo-a:merge_after_scan"]

    def test_markers(self) -> None:
        signal = evaluate_staleness(
            repos=["repo-a"],
            scanned_at={},
            committee_markers=["repo-a"],
            integration_marker=True,
            merged_at={},
        )
        assert signal.repos == ["repo-a"]
        assert signal.reasons == ["repo-a:committee_marker", "system:integration_marker"]

    def test_fresh(self) -> None:
        signal = evaluate_staleness(
            repos=["repo-a"],
            scanned_at={"repo-a": "2026-02-08T09:00:00.000Z"},
            committee_markers=[],
            integration_marker=False,
            merged_at={},
        )
        assert signal.stale is False
        assert signal.reasons == []


class TestScanScenario:
    def test_indexed_but_unscanned_repo_needs_scan(self) -> None:
        evidence = EvidenceState(repos=["repo-a"], missing_scan=["repo-a"])
        for _ in range(3):
            decision = decide(evidence)
            assert decision.next_action.type == ActionType.SCAN
            assert decision.next_action.target_repos == ["repo-a"]
