from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """The backing store cannot be reached.

    Deliberately not a ``ServiceError``: callers must not render it as a
    rejected credential.
    """

    def __init__(self, message: str = "credential store unavailable") -> None:
        super().__init__(message)
        self.message = message


__all__ = ["ConstraintViolation", "StorageUnavailable"]
