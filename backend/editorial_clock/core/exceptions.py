"""
Custom exceptions for the Editorial Clock.
Provides meaningful error types for every failure the deadline engine can surface.

Two families:
- Domain-invariant violations (UnknownStage, AlreadyInStage, InvalidTransition,
  TooEarly): programming or race errors, surfaced to the caller, never swallowed.
- Transient failures (StoreConflict, DispatchFailure): retried with bounded backoff.
"""
from datetime import datetime
from typing import Any, Optional


class EditorialClockException(Exception):
    """Base exception for all Editorial Clock errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ==========================================
# STAGE CONFIGURATION
# ==========================================

class UnknownStage(EditorialClockException):
    """Raised when a stage key is not present in the StageConfig store."""

    def __init__(self, stage_key: str, message: Optional[str] = None):
        self.stage_key = stage_key
        super().__init__(
            message or f"Unknown workflow stage '{stage_key}'",
            {"stage_key": stage_key},
            status_code=404
        )


class StageConfigError(EditorialClockException):
    """Raised when a stage definition breaks the offset rules."""

    def __init__(
        self,
        message: str,
        stage_key: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None
    ):
        details = {}
        if stage_key:
            details["stage_key"] = stage_key
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details, status_code=422)


# ==========================================
# DOMAIN TRANSITIONS
# ==========================================

class NotFoundError(EditorialClockException):
    """Raised when a referenced occupancy or invitation doesn't exist."""

    def __init__(self, entity_type: str, entity_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{entity_type} '{entity_id}' not found",
            {"entity_type": entity_type, "entity_id": entity_id},
            status_code=404
        )


class AlreadyInStage(EditorialClockException):
    """Raised when a manuscript is asked to enter the stage it already occupies."""

    def __init__(self, manuscript_id: str, stage_key: str):
        super().__init__(
            f"Manuscript '{manuscript_id}' is already in stage '{stage_key}'",
            {"manuscript_id": manuscript_id, "stage_key": stage_key},
            status_code=409
        )


class InvalidTransition(EditorialClockException):
    """Raised when a state machine transition is not allowed from the current state."""

    def __init__(
        self,
        entity_id: str,
        current_state: str,
        attempted: str,
        message: Optional[str] = None
    ):
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            message or f"Cannot {attempted} '{entity_id}' from state '{current_state}'",
            {
                "entity_id": entity_id,
                "current_state": current_state,
                "attempted": attempted,
            },
            status_code=409
        )


class TooEarly(EditorialClockException):
    """Raised when a timer transition is attempted before its fire time."""

    def __init__(self, entity_id: str, not_before: datetime, attempted: str = "withdraw"):
        self.not_before = not_before
        super().__init__(
            f"Cannot {attempted} '{entity_id}' before {not_before.isoformat()}",
            {
                "entity_id": entity_id,
                "attempted": attempted,
                "not_before": not_before.isoformat(),
            },
            status_code=409
        )


# ==========================================
# TRANSIENT FAILURES
# ==========================================

class StoreConflict(EditorialClockException):
    """
    Raised when an optimistic write loses against a concurrent writer.

    Transient: the tick retries on its next cycle, human operations
    re-read and re-validate.
    """

    def __init__(self, entity_id: str, reason: str, message: Optional[str] = None):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            message or f"Concurrent update on '{entity_id}': {reason}",
            {"entity_id": entity_id, "reason": reason},
            status_code=409
        )


class FireEventAlreadyClaimed(StoreConflict):
    """Raised when a reminder/escalation has already been fired (dedup hit)."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            key,
            "already_fired",
            message=f"Fire event '{key}' has already been claimed"
        )


class DispatchFailure(EditorialClockException):
    """Raised when a notification transport fails to deliver."""

    def __init__(self, idempotency_key: str, attempts: int, error: str):
        super().__init__(
            f"Notification '{idempotency_key}' failed after {attempts} attempt(s): {error}",
            {"idempotency_key": idempotency_key, "attempts": attempts, "error": error},
            status_code=502
        )


class DatabaseError(EditorialClockException):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[str] = None
    ):
        details = {}
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=500)


# ==========================================
# CONFIGURATION & OPERATIONS
# ==========================================

class ConfigurationError(EditorialClockException):
    """Raised when required configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        config_key: str,
        expected_type: Optional[str] = None,
        actual_value: Optional[str] = None
    ):
        details = {
            "config_key": config_key
        }
        if expected_type:
            details["expected_type"] = expected_type
        if actual_value:
            details["actual_value"] = actual_value[:50] if len(str(actual_value)) > 50 else actual_value

        super().__init__(message, details, status_code=500)


class SchedulerJobError(EditorialClockException):
    """Raised when a scheduler job keeps failing."""

    def __init__(
        self,
        message: str,
        job_id: str,
        failure_count: int,
        last_error: Optional[str] = None
    ):
        details = {
            "job_id": job_id,
            "failure_count": failure_count,
        }
        if last_error:
            details["last_error"] = last_error

        super().__init__(message, details, status_code=500)


# ==========================================
# REVIEWER RESPONSE LINKS
# ==========================================

class TokenError(EditorialClockException):
    """Base exception for reviewer response link errors."""

    def __init__(self, message: str, token_hint: Optional[str] = None):
        details = {}
        if token_hint:
            details["token_hint"] = token_hint[:8] + "..."  # Only show prefix
        super().__init__(message, details, status_code=401)


class TokenExpiredError(TokenError):
    """Raised when a response link has expired."""

    def __init__(self, message: str = "This link has expired"):
        super().__init__(message)


class TokenInvalidError(TokenError):
    """Raised when a response link is malformed or tampered with."""
    pass
