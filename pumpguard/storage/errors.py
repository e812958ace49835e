from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a key/value backend cannot be read or written."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StorageError"]
