"""
otcx/__init__.py

otcx: Escrow Settlement Coordination Engine for a P2P OTC market in
pre-launch tokens and points.

Reads the escrow ledger into consistent snapshots, classifies orders,
aggregates market statistics, validates settlement proofs against
on-chain transfers and coordinates the administrator's accept/reject
decisions back onto the ledger.
"""

__version__ = "0.1.0"

from otcx.core.exceptions import (
    ConfigError,
    InvariantViolation,
    MutationRejected,
    OtcxError,
    ReadFailure,
    ResolutionFailure,
    SchemaError,
)
from otcx.core.models import (
    POINTS_SENTINEL,
    Bucket,
    Order,
    OrderStatus,
    Project,
    ProjectSettlementState,
    ProofRecord,
    ValidationVerdict,
    VerdictStatus,
)

__all__ = [
    # Entities
    "Order",
    "OrderStatus",
    "Project",
    "ProjectSettlementState",
    "ProofRecord",
    "Bucket",
    "ValidationVerdict",
    "VerdictStatus",
    # Errors
    "OtcxError",
    "ReadFailure",
    "ResolutionFailure",
    "MutationRejected",
    "InvariantViolation",
    "SchemaError",
    "ConfigError",
    # Constants
    "POINTS_SENTINEL",
]
