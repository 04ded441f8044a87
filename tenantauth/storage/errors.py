from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached or failed mid-operation.

    Retryable. Callers must not read anything into it about session state.
    """


class PrincipalNotFound(LookupError):
    """No principal exists for the given id."""

    def __init__(self, principal_id: str):
        super().__init__(f"principal not found: {principal_id}")
        self.principal_id = principal_id


__all__ = ["ConstraintViolation", "StoreUnavailable", "PrincipalNotFound"]
