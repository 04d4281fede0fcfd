"""
Errors raised by the service layer.

A refusal is not a crash - it is the system protecting an invariant. Each
error knows the HTTP status it is reported with, so the API layer can
translate without a lookup table.
"""
from typing import Dict, List, Optional


class LifecycleError(Exception):
    """Base class. `failures` lists per-item reasons for batch rejections."""
    status_code = 400

    def __init__(self, message: str, failures: Optional[List[Dict]] = None):
        self.message = message
        self.failures = failures or []
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"message": self.message, "failures": self.failures}


class ValidationError(LifecycleError):
    """Malformed input: empty batch, missing field, inactive target."""
    status_code = 422


class NotFoundError(LifecycleError):
    status_code = 404


class ConflictError(LifecycleError):
    """Current state forbids the operation. Re-fetch and retry is allowed."""
    status_code = 409


class ForbiddenError(LifecycleError):
    """Policy denial, e.g. a protocol requested before confirmation."""
    status_code = 403


class ExpiredError(LifecycleError):
    """Confirmation link past its expiry."""
    status_code = 410


class PersistenceError(LifecycleError):
    """The atomic commit failed. Nothing from the operation was applied."""
    status_code = 500


def failure(entity_id, code: str, reason: str) -> Dict:
    """One entry of a batch rejection."""
    return {"id": entity_id, "code": code, "reason": reason}
