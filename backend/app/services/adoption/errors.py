"""
Adoption Engine Errors

Typed failures raised by the adoption services. The HTTP layer maps each
to a status code and a stable error code; nothing in the services knows
about HTTP beyond that number.
"""
from typing import Any, Dict, Optional


class AdoptionError(Exception):
    """Base error for the adoption engine."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AdoptionError):
    """Malformed input. Never retried automatically."""
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AdoptionError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(AdoptionError):
    """Illegal state transition or duplicate active record."""
    code = "CONFLICT"
    status_code = 409


class DatabaseError(AdoptionError):
    code = "DB_ERROR"
    status_code = 500


class RateLimitedError(AdoptionError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message, {"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class SchemaMissingError(DatabaseError):
    """
    An optional relation is not provisioned.

    Raised by the repository instead of leaking driver error strings;
    the freshness and benchmark paths catch it and degrade to compat mode.
    """

    def __init__(self, relation: str):
        super().__init__(f"Relation '{relation}' is not available", {"relation": relation})
        self.relation = relation
