"""Parsing raw answer text according to a question's expected_answer_type."""

from __future__ import annotations

from src.decisions.models import AnswerValue, DecisionQuestion
from src.infra.errors import InvalidAnswerFormatError

_TRUE = {"true", "yes"}
_FALSE = {"false", "no"}


def choices_from_constraints(constraints: str) -> list[str]:
    """Choices are the `|`-separated values after the first ':' (or the whole string)."""
    text = constraints or ""
    _, sep, rhs = text.partition(":")
    source = rhs if sep else text
    return [c.strip() for c in source.split("|") if c.strip()]


def parse_answer(question: DecisionQuestion, raw_text: str) -> AnswerValue:
    text = (raw_text or "").strip()
    if not text:
        raise InvalidAnswerFormatError(f"Answer for question {question.id} is empty.")

    kind = question.expected_answer_type
    if kind == "boolean":
        lower = text.lower()
        if lower in _TRUE:
            return True
        if lower in _FALSE:
            return False
        raise InvalidAnswerFormatError(
            f"Invalid boolean answer for question {question.id}. Expected: yes|no|true|false."
        )

    if kind == "choice":
        choices = choices_from_constraints(question.constraints)
        if not choices:
            raise InvalidAnswerFormatError(
                f"Question {question.id} is a choice question but its constraints define no choices."
            )
        for choice in choices:
            if choice.lower() == text.lower():
                return choice
        raise InvalidAnswerFormatError(
            f"Invalid choice answer for question {question.id}. Expected one of: {' | '.join(choices)}"
        )

    if kind == "reference":
        if ":" not in text:
            raise InvalidAnswerFormatError(
                f"Invalid reference answer for question {question.id}. "
                "Expected a reference like 'repo:<id>' or 'url:https://...'."
            )
        return text

    return text
