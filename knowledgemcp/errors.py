"""
Error taxonomy for KnowledgeMCP.

Core services raise these; the tool layer converts them into error dicts
with ``to_dict()`` so callers always get a typed result.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


class KnowledgeError(Exception):
    """Base class for errors surfaced to callers."""

    code = "KNOWLEDGE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        **details: Any
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.key = key
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "error": self.code,
            "operation": self.operation,
            "message": self.message,
        }
        if self.key is not None:
            result["key"] = self.key
        result.update(self.details)
        return result


class ValidationError(KnowledgeError):
    """Bad input shape: unknown kind, missing required field, bad parameter."""

    code = "VALIDATION_ERROR"


class NotFoundError(KnowledgeError):
    """A referenced id does not exist."""

    code = "NOT_FOUND"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        side: Optional[str] = None,
        **details: Any
    ):
        if side is not None:
            details["side"] = side
        super().__init__(message, operation=operation, key=key, **details)
        self.side = side


class ConflictError(KnowledgeError):
    """A write collided with an existing unique key."""

    code = "CONFLICT"


class StoreUnavailable(KnowledgeError):
    """The record store failed underneath an operation."""

    code = "STORE_UNAVAILABLE"


@dataclass
class SoftDegradation:
    """A non-fatal condition reported alongside a still-valid response."""

    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
