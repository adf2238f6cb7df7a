"""
otcx Exception Hierarchy

All exceptions inherit from OtcxError for easy catching.
"""

from dataclasses import dataclass
from typing import Any


class OtcxError(Exception):
    """Base exception for all otcx errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ReadFailure(OtcxError):
    """Raised when a ledger query fails or times out"""
    pass


class ResolutionFailure(OtcxError):
    """Raised when a proof reference cannot be resolved to transaction data"""
    pass


class MutationRejected(OtcxError):
    """Raised when the ledger declines a write"""
    pass


class InvariantViolation(OtcxError):
    """Raised when a client-side pre-check blocks a mutation"""
    pass


class SchemaError(OtcxError):
    """Raised when a ledger record does not match its schema"""
    pass


class ConfigError(OtcxError):
    """Raised when configuration is invalid"""
    pass


class RefreshCancelled(OtcxError):
    """Raised when a refresh is abandoned through its cancellation token"""
    pass


class ReportIntegrityError(OtcxError):
    """Raised when an exported audit report fails digest or signature checks"""
    pass


@dataclass(frozen=True)
class FieldMismatch:
    """
    One itemized disagreement between a resolved transaction and the order.

    Not raised. Collected into ValidationVerdict.errors, one per field.
    """
    field: str
    expected: Any
    found: Any

    def describe(self) -> str:
        return f"{self.field} mismatch: expected {self.expected}, found {self.found}"
