"""Error taxonomy shared by the payment verifier and the disclosure engine."""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-readable failure categories surfaced to callers."""

    CONFLICT = "conflict"
    INVALID_TRANSACTION = "invalid_transaction"
    EXPIRED = "expired"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"
    ALREADY_CLAIMED = "already_claimed"
    INVALID_STATE = "invalid_state"
    CONTENTION = "contention"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"

    # Raised by collaborators
    RATE_UNAVAILABLE = "rate_unavailable"
    QUORUM_UNAVAILABLE = "quorum_unavailable"
    POLICY_EXPIRED = "policy_expired"
    DISCLOSURE_UNAVAILABLE = "disclosure_unavailable"


class CoreError(Exception):
    """Base exception for every failure this core reports."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": {
                "kind": self.kind.value,
                "message": self.message,
                "details": self.details,
            }
        }
