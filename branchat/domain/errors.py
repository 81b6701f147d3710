from typing import Dict, Any, Optional


class BranchatError(Exception):
    """Base class for errors surfaced to callers"""

    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(BranchatError):
    """Malformed input, rejected before any side effect"""
    default_code = "VALIDATION_ERROR"


class MergeRejected(ValidationError):
    """A subchat that cannot be merged in its current state"""
    default_code = "MERGE_REJECTED"


class NotFoundError(BranchatError):
    """Missing conversation, subchat or message"""
    default_code = "NOT_FOUND"


class UpstreamUnavailable(BranchatError):
    """Memory index or generation provider could not be reached"""
    default_code = "UPSTREAM_UNAVAILABLE"


class PartialFailure(BranchatError):
    """An optional step failed without aborting the operation"""
    default_code = "PARTIAL_FAILURE"


class FatalError(BranchatError):
    """The primary path of an operation could not complete"""
    default_code = "FATAL"
