from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the token and user stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint was violated (e.g. duplicate email)."""


class SchemaMissing(StorageError):
    """Required tables are absent; the database has not been initialised."""


__all__ = ["StorageError", "ConstraintViolation", "SchemaMissing"]
