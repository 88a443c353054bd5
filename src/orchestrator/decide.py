"""Pure next-action function over an EvidenceState.

No I/O and no clock: the same evidence always yields the same Decision.
"""

from __future__ import annotations

from src.infra.clock import parse_timestamp
from src.orchestrator.models import (
    ActionType,
    Decision,
    EvidenceState,
    NextAction,
    Stage,
)


def _cap(repos: list[str], limit: int | None) -> list[str]:
    ordered = sorted(set(repos))
    return ordered if limit is None else ordered[:limit]


def _pipeline_decision(evidence: EvidenceState) -> Decision:
    limit = evidence.repo_limit

    if evidence.missing_index:
        return Decision(
            stage=Stage.NEEDS_INDEX,
            next_action=NextAction(
                type=ActionType.INDEX,
                target_repos=_cap(evidence.missing_index, limit),
                reason=f"missing repo index for {len(evidence.missing_index)} repo(s)",
                scope="repo",
            ),
        )

    if evidence.missing_scan:
        return Decision(
            stage=Stage.NEEDS_SCAN,
            next_action=NextAction(
                type=ActionType.SCAN,
                target_repos=_cap(evidence.missing_scan, limit),
                reason=f"missing scan outputs for {len(evidence.missing_scan)} repo(s)",
                scope="repo",
            ),
        )

    if not evidence.kickoff_sufficient:
        why = (
            f"kickoff sufficiency is '{evidence.kickoff_sufficiency or '(missing)'}'"
            if evidence.kickoff_present
            else "kickoff is missing"
        )
        return Decision(
            stage=Stage.NEEDS_KICKOFF,
            next_action=NextAction(type=ActionType.KICKOFF, reason=f"NEEDS_KICKOFF: {why}"),
        )

    if not evidence.minimum_sufficient:
        return Decision(
            stage=Stage.NEEDS_COMMITTEE,
            next_action=NextAction(
                type=ActionType.COMMITTEE,
                target_repos=_cap(evidence.repos, limit),
                reason="NEEDS_COMMITTEE: minimum knowledge requirements not satisfied",
                scope="repo",
            ),
        )

    pending = sorted(set(evidence.committee_missing) | set(evidence.committee_stale))
    if pending:
        return Decision(
            stage=Stage.NEEDS_COMMITTEE,
            next_action=NextAction(
                type=ActionType.COMMITTEE,
                target_repos=_cap(pending, limit),
                reason="NEEDS_COMMITTEE: committee outputs missing/stale",
                scope="repo",
            ),
        )

    if evidence.committee_failed:
        return Decision(
            stage=Stage.DECISION_NEEDED,
            next_action=NextAction(
                type=ActionType.QUESTION,
                target_repos=_cap(evidence.committee_failed, limit),
                reason="DECISION_NEEDED: repo committee failed; resolve decision packets and/or rescan",
                scope="repo",
            ),
        )

    integration = evidence.integration
    if integration.needs_committee:
        if not integration.present:
            why = "integration status missing"
        elif integration.stale:
            why = "integration status stale"
        else:
            why = "integration flags gaps"
        return Decision(
            stage=Stage.NEEDS_COMMITTEE,
            next_action=NextAction(type=ActionType.COMMITTEE, reason=f"NEEDS_COMMITTEE: {why}"),
        )

    return Decision(
        stage=Stage.COMMITTEE_PASSED,
        next_action=NextAction(type=ActionType.READY, reason="COMMITTEE_PASSED: ready"),
    )


def decide(evidence: EvidenceState) -> Decision:
    """Derive the single next action.

    Any open decision packet takes precedence over the pipeline: a packet
    blocking an earlier stage also holds back every stage after it. The oldest
    packet is asked first, ties broken by the smallest decision_id.
    """
    planned = _pipeline_decision(evidence)
    if not evidence.open_decisions:
        return planned

    packet = min(evidence.open_decisions, key=lambda p: (parse_timestamp(p.created_at), p.decision_id))
    repo_id = packet.repo_id
    return Decision(
        stage=Stage.DECISION_NEEDED,
        next_action=NextAction(
            type=ActionType.QUESTION,
            target_repos=[repo_id] if repo_id else [],
            reason=f"DECISION_NEEDED: open decision {packet.decision_id} blocks {planned.stage.value}",
            scope="repo" if repo_id else "system",
            decision_id=packet.decision_id,
        ),
    )
