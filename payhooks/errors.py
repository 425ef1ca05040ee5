"""Error taxonomy shared by the webhook, store and checkout layers.

Every ``ReconcileError`` carries the HTTP status the API answers with, plus
optional extra fields echoed in the JSON body (for example the ``api_ref``
that could not be matched). Providers retry on 404 and 5xx but not on 400,
so the status code is part of the contract, not decoration.
"""
from typing import Any, Dict, Optional


class ReconcileError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, **self.extra}
        if request_id:
            body["request_id"] = request_id
        return body


class ValidationError(ReconcileError):
    """Malformed input: missing reference, bad JSON, or missing signature in strict production."""

    status_code = 400


class AuthenticityError(ReconcileError):
    """Signature mismatch, or an unverifiable webhook while failing closed."""

    status_code = 400


class NotFoundError(ReconcileError):
    status_code = 404


class ConflictError(ReconcileError):
    """Order number collision. Absorbed by the checkout service."""

    status_code = 409


class DependencyError(ReconcileError):
    """Store unreachable or a write failed."""

    status_code = 500


class UnknownProviderStatus(UserWarning):
    """A provider sent a status string with no mapping; the event is recorded as ``unknown``."""
