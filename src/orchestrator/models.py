from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Stage(StrEnum):
    NEEDS_INDEX = "NEEDS_INDEX"
    NEEDS_SCAN = "NEEDS_SCAN"
    NEEDS_KICKOFF = "NEEDS_KICKOFF"
    NEEDS_COMMITTEE = "NEEDS_COMMITTEE"
    DECISION_NEEDED = "DECISION_NEEDED"
    COMMITTEE_PASSED = "COMMITTEE_PASSED"


class ActionType(StrEnum):
    QUESTION = "question"
    INDEX = "index"
    SCAN = "scan"
    KICKOFF = "kickoff"
    COMMITTEE = "committee"
    READY = "ready"


class NextAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ActionType
    target_repos: list[str] = Field(default_factory=list)
    reason: str
    scope: Literal["repo", "system"] = "system"
    decision_id: str | None = None


class Decision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: Stage
    next_action: NextAction


class OpenDecision(BaseModel):
    """The parts of an open decision packet that matter to decide()."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    decision_id: str
    created_at: str
    scope: str
    blocked_stages: list[str] = Field(default_factory=list)

    @property
    def repo_id(self) -> str | None:
        return self.scope[len("repo:"):] if self.scope.startswith("repo:") else None


class MissingFact(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    repo_id: str
    fact_contains: str


class IntegrationEvidence(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    present: bool = False
    stale: bool = False
    evidence_valid: bool | None = None
    gaps: list[str] = Field(default_factory=list)

    @property
    def needs_committee(self) -> bool:
        return not self.present or self.stale or self.evidence_valid is not True or bool(self.gaps)


class StalenessSignal(BaseModel):
    """Side-channel signal; reported alongside the stage, never changes it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    stale: bool = False
    repos: list[str] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)


class EvidenceState(BaseModel):
    """Immutable snapshot of everything decide() looks at."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    repos: list[str]
    repo_limit: int | None = Field(None, ge=1)
    missing_index: list[str] = Field(default_factory=list)
    missing_scan: list[str] = Field(default_factory=list)
    last_index_at: str | None = None
    last_scan_at: str | None = None
    kickoff_present: bool = False
    kickoff_sufficiency: str | None = None
    minimum_sufficient: bool = True
    missing_facts: list[MissingFact] = Field(default_factory=list)
    committee_missing: list[str] = Field(default_factory=list)
    committee_stale: list[str] = Field(default_factory=list)
    committee_failed: list[str] = Field(default_factory=list)
    committee_passed: list[str] = Field(default_factory=list)
    integration: IntegrationEvidence = Field(default_factory=IntegrationEvidence)
    open_decisions: list[OpenDecision] = Field(default_factory=list)
    staleness: StalenessSignal = Field(default_factory=StalenessSignal)

    @property
    def scan_coverage_complete(self) -> bool:
        return not self.missing_index and not self.missing_scan

    @property
    def kickoff_sufficient(self) -> bool:
        return self.kickoff_present and self.kickoff_sufficiency == "sufficient"


class OrchestratorCheckpoint(BaseModel):
    """orchestrator/state.json: the current answer to "what should happen next"."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    stage: Stage
    next_action: NextAction
    evidence_state: EvidenceState
    stale: StalenessSignal
    updated_at: str
