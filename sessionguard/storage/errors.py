from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a token store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or FK constraint rejected the write (e.g. duplicate secret hash)."""


class StorageUnavailable(StorageError):
    """The backing database could not be reached or failed mid-operation."""


__all__ = ["StorageError", "ConstraintViolation", "StorageUnavailable"]
