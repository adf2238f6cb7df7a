"""
otcx ledger layer: record schemas, the read/write interface, the
in-memory escrow and the snapshot mirror.
"""

from otcx.ledger.interface import LedgerReader, LedgerWriter, TransactionLookup
from otcx.ledger.schema import ORDER_SCHEMA_V4, PROJECT_SCHEMA_V2, RecordSchema

__all__ = [
    "LedgerReader",
    "LedgerWriter",
    "TransactionLookup",
    "RecordSchema",
    "ORDER_SCHEMA_V4",
    "PROJECT_SCHEMA_V2",
]
