"""Error taxonomy for the assessment service.

Every error carries a machine-readable `reason`, the HTTP status the API layer
maps it to, and optional `guidance` for the learner.
"""

from typing import Any, Optional


class AssessmentError(Exception):
    """Base class for lifecycle, grading and persistence errors."""

    reason = "assessment_error"
    status_code = 400
    default_guidance: Optional[str] = None

    def __init__(self, message: str, *, guidance: Optional[str] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.guidance = guidance or self.default_guidance
        self.context = context

    def to_dict(self) -> dict:
        """Structured payload returned to API callers."""
        return {"error": self.reason, "detail": self.message, "guidance": self.guidance}


class NotFound(AssessmentError):
    reason = "not_found"
    status_code = 404


class MaxAttemptsExceeded(AssessmentError):
    reason = "max_attempts_exceeded"
    status_code = 409
    default_guidance = "Maximum attempts exceeded; no further attempts are allowed for this assessment."


class AssessmentUnavailable(AssessmentError):
    reason = "assessment_unavailable"
    status_code = 403


class InvalidStateTransition(AssessmentError):
    reason = "invalid_state_transition"
    status_code = 409


class ActiveAttemptExists(InvalidStateTransition):
    """A new attempt was requested while another one is still in progress."""

    reason = "attempt_in_progress"
    default_guidance = "Resume the attempt that is already in progress."


class GradingError(AssessmentError):
    """Per-question grading failure; recovered locally and never surfaced."""

    reason = "grading_error"
    status_code = 500


class PersistenceError(AssessmentError):
    reason = "persistence_error"
    status_code = 503
    default_guidance = "Temporary storage problem; retry the request."


class ConcurrentModification(PersistenceError):
    """A write was based on a stale read of the record."""

    reason = "concurrent_modification"
    status_code = 409
    default_guidance = "The attempt changed while this request was processed; reload it and retry."
