from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for durable-store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(StorageError):
    """Raised when the durable store cannot be reached or a call times out.

    Distinct from "document not found" so callers never mistake an outage for
    an absent session.
    """


class DocumentIntegrityError(StorageError):
    """Raised when a stored document is malformed or inconsistent with its key."""


__all__ = ["StorageError", "StoreUnavailableError", "DocumentIntegrityError"]
