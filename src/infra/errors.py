"""Custom exception hierarchy for Lanekeeper.

All application-specific exceptions inherit from LanekeeperError,
which carries an error code that the CLI and result objects surface.
"""

from __future__ import annotations

from pathlib import Path


class LanekeeperError(Exception):
    """Base exception for all Lanekeeper errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class RecordValidationError(LanekeeperError):
    """A persisted record is malformed JSON or does not match its schema."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR")
        self.path = path


class IdentityMismatchError(LanekeeperError):
    """A caller-supplied identifier disagrees with the derived one."""

    def __init__(self, message: str, *, code: str = "ID_MISMATCH") -> None:
        super().__init__(message, code=code)


class EventIdMismatchError(IdentityMismatchError):
    """Supplied event_id is not the content-derived event_id."""

    def __init__(self, *, expected: str, got: str) -> None:
        super().__init__(
            f"event_id mismatch (expected {expected}, got {got})",
            code="EVENT_ID_MISMATCH",
        )
        self.expected = expected
        self.got = got


class EventStoreError(LanekeeperError):
    """Errors in the knowledge event store that are not record corruption."""

    def __init__(self, message: str, *, code: str = "EVENT_STORE_ERROR") -> None:
        super().__init__(message, code=code)


class LockError(LanekeeperError):
    """I/O failure while handling the advisory lock file.

    A lock held by someone else is not an error; see LockAcquisition.
    """

    def __init__(self, message: str, *, code: str = "LOCK_ERROR") -> None:
        super().__init__(message, code=code)


class DecisionError(LanekeeperError):
    """Errors on the decision packet answer path."""

    def __init__(self, message: str, *, code: str = "DECISION_ERROR") -> None:
        super().__init__(message, code=code)


class DecisionNotFoundError(DecisionError):
    def __init__(self, decision_id: str) -> None:
        super().__init__(f"Decision not found: {decision_id}", code="NOT_FOUND")
        self.decision_id = decision_id


class DecisionNotOpenError(DecisionError):
    def __init__(self, decision_id: str, status: str) -> None:
        super().__init__(
            f"Decision {decision_id} is not open (status={status}).", code="NOT_OPEN"
        )
        self.decision_id = decision_id
        self.status = status


class MissingAnswerError(DecisionError):
    def __init__(self, question_id: str) -> None:
        super().__init__(f"Missing answer for question_id {question_id}.", code="MISSING_ANSWER")
        self.question_id = question_id


class InvalidAnswerFormatError(DecisionError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_ANSWER_FORMAT")


class InvalidAnswerInputError(DecisionError):
    """The answer input file is missing or unreadable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_INPUT")


class OrchestratorError(LanekeeperError):
    """Evidence is present but inconsistent for the orchestrator."""

    def __init__(self, message: str, *, code: str = "ORCHESTRATOR_ERROR") -> None:
        super().__init__(message, code=code)
