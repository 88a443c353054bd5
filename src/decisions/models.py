from __future__ import annotations

from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.infra.clock import parse_timestamp

DecisionTrigger = Literal["repo_committee", "integration_committee", "state_machine"]
AnswerType = Literal["boolean", "choice", "reference", "string"]
DecisionStatus = Literal["open", "answered"]
AnswerValue = bool | str


def _sorted_unique(values: list[str]) -> list[str]:
    return sorted({v.strip() for v in values if isinstance(v, str) and v.strip()})


def _check_timestamp(v: str | None) -> str | None:
    if v is not None:
        parse_timestamp(v)
    return v


class DecisionContext(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    summary: str = Field(min_length=1)
    why_automation_failed: str = Field(min_length=1)
    what_is_known: list[str] = Field(default_factory=list)

    @field_validator("what_is_known")
    @classmethod
    def _normalize_known(cls, v: list[str]) -> list[str]:
        return _sorted_unique(v)


class DecisionQuestion(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=8)
    question: str = Field(min_length=1)
    expected_answer_type: AnswerType
    constraints: str = ""
    blocks: list[str] = Field(default_factory=list)
    answer: AnswerValue | None = None
    answered_at: str | None = None

    @field_validator("blocks")
    @classmethod
    def _normalize_blocks(cls, v: list[str]) -> list[str]:
        return _sorted_unique(v)

    @field_validator("answered_at")
    @classmethod
    def _validate_answered_at(cls, v: str | None) -> str | None:
        return _check_timestamp(v)

    @property
    def is_answered(self) -> bool:
        return self.answer is not None and self.answered_at is not None


class DecisionPacket(BaseModel):
    """A blocking question for a human, with a strict open -> answered lifecycle."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    decision_id: str = Field(min_length=8)
    scope: str = Field(min_length=1)
    trigger: DecisionTrigger
    blocking_state: str = Field(min_length=1)
    context: DecisionContext
    questions: list[DecisionQuestion] = Field(min_length=1)
    assumptions_if_unanswered: str = Field(min_length=1)
    created_at: str
    answered_at: str | None = None
    status: DecisionStatus = "open"

    @field_validator("scope")
    @classmethod
    def _validate_scope(cls, v: str) -> str:
        if v != "system" and not (v.startswith("repo:") and len(v) > len("repo:")):
            raise ValueError("scope must be 'system' or 'repo:<repo_id>'")
        return v

    @field_validator("created_at", "answered_at")
    @classmethod
    def _validate_timestamps(cls, v: str | None) -> str | None:
        return _check_timestamp(v)

    @model_validator(mode="after")
    def _validate_lifecycle(self) -> Self:
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError("question ids must be unique")
        if self.status == "answered":
            if self.answered_at is None:
                raise ValueError("answered_at is required when status is answered")
            for q in self.questions:
                if not q.is_answered:
                    raise ValueError(f"question {q.id} needs answer and answered_at when status is answered")
        return self

    @property
    def repo_id(self) -> str | None:
        return self.scope[len("repo:"):] if self.scope.startswith("repo:") else None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def blocked_stages(self) -> set[str]:
        """Stages this packet names as blocked (blocking_state plus every question's blocks)."""
        stages = {self.blocking_state}
        for q in self.questions:
            stages.update(q.blocks)
        return stages
