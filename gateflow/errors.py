"""
Structured error classes for access and refund operations.

Every error carries a machine-readable code so the API layer can map it to
an HTTP status without inspecting messages.
"""

from typing import Any, Dict, Optional


class ErrorCode:
    """Machine-readable error codes shared by all services."""
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    INVALID_INPUT = "INVALID_INPUT"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    UNDETERMINED = "UNDETERMINED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    REFUND_IN_PROGRESS = "REFUND_IN_PROGRESS"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


class GateflowError(Exception):
    """Base exception for access core errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def public_code(self) -> str:
        """Code exposed to callers that only know the base taxonomy."""
        return self.code

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": {
                "code": self.public_code,
                "message": self.message,
                "details": self.details,
            }
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code}, message={self.message!r})>"


class InvalidProductWindowError(GateflowError):
    """Raised when a product's availability window is inverted or empty."""

    def __init__(self, available_from, available_until):
        super().__init__(
            ErrorCode.INVALID_INPUT,
            "available_from must be earlier than available_until",
            {
                "available_from": available_from.isoformat() if available_from else None,
                "available_until": available_until.isoformat() if available_until else None,
            },
        )


class ProductNotFoundError(GateflowError):
    """Raised when a product lookup by id or slug misses."""

    def __init__(self, key: str):
        super().__init__(ErrorCode.NOT_FOUND, f"Product not found: {key}", {"product": key})
