from __future__ import annotations

from typing import Any, Dict, Optional


class BackendError(Exception):
    """Base for failures raised by a document backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(BackendError):
    """A uniqueness constraint (one user per email digest) was violated."""


class RecordMissing(BackendError):
    """A write targeted a user document that does not exist."""


__all__ = ["BackendError", "ConstraintViolation", "RecordMissing"]
