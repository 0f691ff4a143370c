from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised by the key-value adapter when the fast store cannot serve a call.

    Only raised at call sites that did not supply a fail-open ``default``.
    """

    def __init__(self, op: str, cause: Optional[BaseException] = None):
        super().__init__(f"key-value store unavailable during {op}")
        self.op = op
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
