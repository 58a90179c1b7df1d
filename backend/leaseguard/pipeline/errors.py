"""Error taxonomy for the defense pipeline.

Which layer handles what:
  - AuthError / NetworkError      → answered locally by the Model Gateway
  - MalformedResponseError        → repaired silently by the Recovery Engine
  - UnrecoverableParseError       → caller supplies its own deterministic fallback
  - ValidationError               → fails the single ledger operation
  - StageFailure                  → aborts (Context, Report) or degrades (Evaluation) a run
"""

from enum import Enum
from typing import Any


class Stage(str, Enum):
    CONTEXT = "Context"
    REPORT = "Report"
    EVALUATION = "Evaluation"


class LeaseGuardError(Exception):
    """Base class for every error raised by the pipeline."""

    error_type = "internal"
    recoverable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        data = {
            "error_type": self.error_type,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            data["details"] = self.details
        return data


class AuthError(LeaseGuardError):
    """No model-service credential, or the service rejected it."""

    error_type = "auth"
    recoverable = True


class NetworkError(LeaseGuardError):
    """Transport failure or non-success HTTP status from the model service."""

    error_type = "network"
    recoverable = True

    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None):
        super().__init__(message, details)
        self.status_code = status_code


class MalformedResponseError(LeaseGuardError):
    error_type = "malformed_response"
    recoverable = True


class UnrecoverableParseError(LeaseGuardError):
    """Repair heuristics exhausted; the caller must fall back."""

    error_type = "unrecoverable_parse"

    def __init__(self, message: str, raw_excerpt: str = "", details: dict | None = None):
        super().__init__(message, details)
        self.raw_excerpt = raw_excerpt


class ValidationError(LeaseGuardError):
    """Evidence Ledger invariant violation."""

    error_type = "validation"


class StageFailure(LeaseGuardError):
    """A pipeline stage could not produce a valid output."""

    error_type = "stage_failure"

    def __init__(self, stage: Stage, reason: str, remediation: str = ""):
        super().__init__(f"Cannot generate defense ({stage.value} stage failed): {reason}")
        self.stage = stage
        self.reason = reason
        self.remediation = remediation

    @property
    def fatal(self) -> bool:
        return self.stage is not Stage.EVALUATION

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["stage"] = self.stage.value
        data["reason"] = self.reason
        if self.remediation:
            data["remediation"] = self.remediation
        return data
