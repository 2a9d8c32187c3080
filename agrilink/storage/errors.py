from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for errors raised by the identity and second-factor stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint was violated (duplicate email/phone, unknown user)."""


class StoreUnavailable(StorageError):
    """The backing datastore could not be reached or failed mid-operation."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
