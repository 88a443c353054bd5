"""Reading on-disk evidence into an immutable EvidenceState.

Evidence artifacts are written by external producers; only their existence and
the few fields below matter here. Every file that exists is validated, and a
malformed one fails the gather rather than being read as absent.
"""

from __future__ import annotations

from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.config.project import ProjectContext
from src.decisions.store import DecisionStore
from src.events.store import EventStore
from src.infra.errors import OrchestratorError
from src.infra.records import load_record, load_record_optional
from src.orchestrator.models import (
    EvidenceState,
    IntegrationEvidence,
    MissingFact,
    OpenDecision,
)
from src.orchestrator.staleness import evaluate_staleness

logger = structlog.get_logger()


class _Artifact(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class RepoEntry(_Artifact):
    repo_id: str = Field(min_length=1)
    status: str = "active"
    path: str | None = None


class RepoRegistry(_Artifact):
    repos: list[RepoEntry] = Field(default_factory=list)

    def active_repo_ids(self) -> list[str]:
        return sorted(
            {r.repo_id.strip() for r in self.repos if r.status.strip().lower() == "active" and r.repo_id.strip()}
        )


class RepoIndex(_Artifact):
    repo_id: str
    scanned_at: str | None = None


class ScanFact(_Artifact):
    claim: str = ""


class KnowledgeScan(_Artifact):
    repo_id: str
    scanned_at: str | None = None
    facts: list[ScanFact] = Field(default_factory=list)


class CommitteeStatus(_Artifact):
    repo_id: str
    evidence_valid: bool


class IntegrationStatus(_Artifact):
    evidence_valid: bool
    gaps: list[str] = Field(default_factory=list)


class KickoffSufficiency(_Artifact):
    status: str | None = None


class KickoffScope(_Artifact):
    sufficiency: KickoffSufficiency | None = None


class KickoffLatest(_Artifact):
    latest_by_scope: dict[str, KickoffScope] = Field(default_factory=dict)


class RequiredFact(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    repo_id: str = Field(min_length=1)
    fact_contains: str = Field(min_length=1)


class MinimumRequirements(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    required_facts: list[RequiredFact] = Field(default_factory=list)


def _latest(values: list[str | None]) -> str | None:
    present = sorted(v for v in values if v)
    return present[-1] if present else None


def _check_repo(artifact: RepoIndex | KnowledgeScan | CommitteeStatus, repo_id: str, what: str) -> None:
    if artifact.repo_id != repo_id:
        raise OrchestratorError(f"{what} repo_id mismatch for {repo_id} (found {artifact.repo_id})")


def gather_evidence(
    context: ProjectContext,
    *,
    events: EventStore,
    decisions: DecisionStore,
    repo_limit: int | None = None,
) -> EvidenceState:
    registry = load_record_optional(RepoRegistry, context.repo_registry_file)
    if registry is None:
        raise OrchestratorError(f"Repo registry not found: {context.repo_registry_file}")
    repos = registry.active_repo_ids()
    if not repos:
        raise OrchestratorError(f"No active repos found in {context.repo_registry_file}")

    missing_index: list[str] = []
    missing_scan: list[str] = []
    index_times: list[str | None] = []
    scans: dict[str, KnowledgeScan] = {}

    for repo_id in repos:
        index = load_record_optional(RepoIndex, context.repo_index_file(repo_id))
        if index is None:
            missing_index.append(repo_id)
        else:
            _check_repo(index, repo_id, "repo_index.json")
            index_times.append(index.scanned_at)

        scan = load_record_optional(KnowledgeScan, context.repo_scan_file(repo_id))
        if scan is None:
            missing_scan.append(repo_id)
        else:
            _check_repo(scan, repo_id, "scan.json")
            scans[repo_id] = scan

    kickoff_present = False
    kickoff_sufficiency = None
    kickoff = load_record_optional(KickoffLatest, context.kickoff_latest_file)
    if kickoff is not None and "system" in kickoff.latest_by_scope:
        kickoff_present = True
        system = kickoff.latest_by_scope["system"]
        kickoff_sufficiency = system.sufficiency.status if system.sufficiency else None

    missing_facts: list[MissingFact] = []
    minimum = load_record_optional(MinimumRequirements, context.minimum_file)
    for req in minimum.required_facts if minimum else []:
        facts = scans[req.repo_id].facts if req.repo_id in scans else []
        if not any(req.fact_contains in f.claim for f in facts):
            missing_facts.append(MissingFact(repo_id=req.repo_id, fact_contains=req.fact_contains))

    committee_missing: list[str] = []
    committee_stale: list[str] = []
    committee_failed: list[str] = []
    committee_passed: list[str] = []
    for repo_id in repos:
        committee_dir = context.repo_committee_dir(repo_id)
        if (committee_dir / "STALE.json").exists():
            committee_stale.append(repo_id)
            continue
        status = load_record_optional(CommitteeStatus, committee_dir / "committee_status.json")
        if status is None:
            committee_missing.append(repo_id)
            continue
        _check_repo(status, repo_id, "committee_status.json")
        (committee_passed if status.evidence_valid else committee_failed).append(repo_id)

    integration_dir = context.integration_committee_dir
    integration_marker = (integration_dir / "STALE.json").exists()
    integration_file = integration_dir / "integration_status.json"
    if integration_marker:
        integration = IntegrationEvidence(present=integration_file.exists(), stale=True)
    elif integration_file.exists():
        integration_status = load_record(IntegrationStatus, integration_file)
        integration = IntegrationEvidence(
            present=True,
            evidence_valid=integration_status.evidence_valid,
            gaps=sorted(set(integration_status.gaps)),
        )
    else:
        integration = IntegrationEvidence()

    open_decisions = [
        OpenDecision(
            decision_id=p.decision_id,
            created_at=p.created_at,
            scope=p.scope,
            blocked_stages=sorted(p.blocked_stages()),
        )
        for p in decisions.open_packets()
    ]

    latest_merges = events.latest_events_by_repo("merge")
    merged_at = {
        repo_id: latest_merges[repo_id].parsed_timestamp for repo_id in repos if repo_id in latest_merges
    }

    staleness = evaluate_staleness(
        repos=repos,
        scanned_at={repo_id: scan.scanned_at for repo_id, scan in scans.items()},
        committee_markers=committee_stale,
        integration_marker=integration_marker,
        merged_at=merged_at,
    )

    state = EvidenceState(
        repos=repos,
        repo_limit=repo_limit,
        missing_index=missing_index,
        missing_scan=missing_scan,
        last_index_at=_latest(index_times),
        last_scan_at=_latest([s.scanned_at for s in scans.values()]),
        kickoff_present=kickoff_present,
        kickoff_sufficiency=kickoff_sufficiency,
        minimum_sufficient=not missing_facts,
        missing_facts=missing_facts,
        committee_missing=committee_missing,
        committee_stale=committee_stale,
        committee_failed=committee_failed,
        committee_passed=committee_passed,
        integration=integration,
        open_decisions=open_decisions,
        staleness=staleness,
    )
    logger.debug(
        "evidence_gathered",
        repos=len(repos),
        missing_index=len(missing_index),
        missing_scan=len(missing_scan),
        open_decisions=len(open_decisions),
        stale=staleness.stale,
    )
    return state
