"""Typed failures raised by the workflow engines.

Engines raise these for ordinary business rejections. The service layer
catches every WorkflowError and converts it into a failed ServiceResult
carrying the matching ErrorKind, so callers never see a raw exception
for a refused decision, vote or trust operation.

Genuine invariant violations (an unknown kind tag while decoding, a
details payload of the wrong type reaching the codec) are raised as
plain ValueError and are not part of this hierarchy.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of a failed operation."""
    VALIDATION = "validation"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    UNAUTHORIZED_ACTOR = "unauthorized_actor"
    ALREADY_VOTED = "already_voted"
    DISPUTE_PRECONDITION = "dispute_precondition"
    NOT_FOUND = "not_found"
    PERSISTENCE_FAILURE = "persistence_failure"
    STALE_WRITE = "stale_write"


class WorkflowError(Exception):
    """Base class for every business rejection."""
    kind: ErrorKind = ErrorKind.VALIDATION


class ValidationError(WorkflowError):
    """Malformed request or missing required field."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class InvalidStateTransition(WorkflowError):
    """Decision on a terminal or mis-ordered entity."""
    kind = ErrorKind.INVALID_STATE_TRANSITION


class UnauthorizedActor(WorkflowError):
    """Actor is neither the current approver nor (for CANCEL) the requester."""
    kind = ErrorKind.UNAUTHORIZED_ACTOR


class AlreadyVoted(WorkflowError):
    """Panel member has already cast a vote on this dispute."""
    kind = ErrorKind.ALREADY_VOTED


class DisputePreconditionError(WorkflowError):
    """Dispute is not in a state that accepts the operation."""
    kind = ErrorKind.DISPUTE_PRECONDITION


class NotFound(WorkflowError):
    """Unknown request, claimant, panel member, evidence or user."""
    kind = ErrorKind.NOT_FOUND


class PersistenceFailure(WorkflowError):
    """The persistence collaborator is unavailable. Never retried here."""
    kind = ErrorKind.PERSISTENCE_FAILURE


class StaleWrite(WorkflowError):
    """Another writer updated the entity after it was read."""
    kind = ErrorKind.STALE_WRITE
