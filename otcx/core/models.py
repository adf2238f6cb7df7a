"""
otcx/core/models.py

Typed entities mirrored from the escrow ledger, plus the derived values
computed from them.

═══════════════════════════════════════════════════════════════════
FIXED-POINT CONTRACT
═══════════════════════════════════════════════════════════════════
    amount            int, 18 fractional digits   (AMOUNT_DECIMALS)
    unit_price        int,  6 fractional digits   (PRICE_DECIMALS)
    conversion_ratio  int, 18 fractional digits   (RATIO_DECIMALS)
    total value       amount * unit_price // 10**18   -> 6 fractional digits

No floats anywhere. Integer division truncates toward zero exactly as the
ledger does, so a value computed here is the value the ledger computes.

═══════════════════════════════════════════════════════════════════
STATUS CONTRACT
═══════════════════════════════════════════════════════════════════
    OPEN   -> FUNDED    (counterparty locked collateral)
    OPEN   -> CANCELED  (maker cancelled an untaken order)
    FUNDED -> SETTLED
    FUNDED -> DEFAULTED

Nothing else is a legal transition. OrderStatus.can_transition_to() is
the only encoding of this table; can_reach() follows it over several
steps (two reads may straddle OPEN -> FUNDED -> SETTLED).
═══════════════════════════════════════════════════════════════════
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────

AMOUNT_DECIMALS = 18
PRICE_DECIMALS  = 6
RATIO_DECIMALS  = 18

AMOUNT_SCALE = 10 ** AMOUNT_DECIMALS
PRICE_SCALE  = 10 ** PRICE_DECIMALS
RATIO_SCALE  = 10 ** RATIO_DECIMALS

ZERO_ADDRESS = "0x" + "0" * 40

# address(uint160(uint256(keccak256("otcX.POINTS_SENTINEL.v4"))))
POINTS_SENTINEL = "0x602EE57D45A64a39E996Fa8c78B3BC88B4D107E2"


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address equality. None never equals anything."""
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


def is_zero_address(address: Optional[str]) -> bool:
    """True for None, empty string and the all-zero address."""
    return not address or same_address(address, ZERO_ADDRESS)


# ─────────────────────────────────────────────────────────────
# Enumerations
# ─────────────────────────────────────────────────────────────

class OrderStatus(Enum):
    """Ledger-side order status."""
    OPEN      = "OPEN"
    FUNDED    = "FUNDED"
    SETTLED   = "SETTLED"
    DEFAULTED = "DEFAULTED"
    CANCELED  = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition_to(self, other: "OrderStatus") -> bool:
        """True iff self -> other is a legal forward transition."""
        return other in _TRANSITIONS[self]

    def can_reach(self, other: "OrderStatus") -> bool:
        """True iff other follows self through one or more legal transitions."""
        frontier = set(_TRANSITIONS[self])
        while frontier:
            if other in frontier:
                return True
            frontier = {nxt for status in frontier for nxt in _TRANSITIONS[status]}
        return False


_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.OPEN:      frozenset({OrderStatus.FUNDED, OrderStatus.CANCELED}),
    OrderStatus.FUNDED:    frozenset({OrderStatus.SETTLED, OrderStatus.DEFAULTED}),
    OrderStatus.SETTLED:   frozenset(),
    OrderStatus.DEFAULTED: frozenset(),
    OrderStatus.CANCELED:  frozenset(),
}

_TERMINAL = frozenset({
    OrderStatus.SETTLED,
    OrderStatus.DEFAULTED,
    OrderStatus.CANCELED,
})


class Bucket(Enum):
    """Display bucket derived by the classifier."""
    OPEN          = "open"
    FILLED        = "filled"
    IN_SETTLEMENT = "in_settlement"
    ENDED         = "ended"


class VerdictStatus(Enum):
    """Outcome of proof validation."""
    APPROVED      = "APPROVED"
    NOT_APPROVED  = "NOT_APPROVED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


# ─────────────────────────────────────────────────────────────
# Ledger entities
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Order:
    """One escrow order as stored on the ledger."""

    id:                  int
    maker:               str
    buyer:               str
    seller:              str
    project_id:          str
    amount:              int
    unit_price:          int
    buyer_funds:         int
    seller_collateral:   int
    settlement_deadline: int
    is_sell:             bool
    status:              OrderStatus
    allowed_taker:       Optional[str] = None
    proof:               Optional[str] = None

    @property
    def total_value(self) -> int:
        """amount x unit_price in stable units (6 decimals), truncated."""
        return self.amount * self.unit_price // AMOUNT_SCALE

    @property
    def is_public(self) -> bool:
        return is_zero_address(self.allowed_taker)

    @property
    def counterparty_locked(self) -> bool:
        """
        True once the side opposite the maker has locked funds.
        Sell orders wait on buyer funds, buy orders on seller collateral.
        """
        if self.is_sell:
            return self.buyer_funds > 0
        return self.seller_collateral > 0

    def involves(self, party: str) -> bool:
        return any(
            same_address(party, p) for p in (self.maker, self.buyer, self.seller)
        )


@dataclass(frozen=True)
class Project:
    """Registry record for a tradable project."""

    project_id:    str
    slug:          str
    name:          str
    token_address: str
    is_points:     bool
    metadata_uri:  str = ""
    active:        bool = True
    added_at:      int = 0


@dataclass(frozen=True)
class ProjectSettlementState:
    """
    Per-project TGE state. tge_activated is a one-way latch; once it is
    true, settlement_asset and conversion_ratio never change.
    """

    project_id:          str
    tge_activated:       bool
    settlement_deadline: int = 0
    settlement_asset:    str = ZERO_ADDRESS
    conversion_ratio:    int = RATIO_SCALE

    @classmethod
    def inactive(cls, project_id: str) -> "ProjectSettlementState":
        """Fail-safe stand-in for a project whose state could not be read."""
        return cls(project_id=project_id, tge_activated=False)

    @property
    def is_points_path(self) -> bool:
        """Off-chain delivery attested by proof rather than an on-ledger deposit."""
        return same_address(self.settlement_asset, POINTS_SENTINEL)


@dataclass(frozen=True)
class ProofRecord:
    """Seller-submitted delivery evidence and its acceptance state."""

    order_id:        int
    proof:           Optional[str]
    submitted_at:    int = 0
    accepted:        bool = False
    accepted_at:     int = 0
    rejected_reason: Optional[str] = None

    @property
    def has_proof(self) -> bool:
        return bool(self.proof and self.proof.strip())


@dataclass(frozen=True)
class GlobalParams:
    """
    Venue-wide parameters. Any field may be None when its read failed;
    a missing value is never defaulted.
    """

    paused:               Optional[bool] = None
    settlement_fee_bps:   Optional[int] = None
    cancellation_fee_bps: Optional[int] = None
    min_order_value:      Optional[int] = None
    points_sentinel:      Optional[str] = None


# ─────────────────────────────────────────────────────────────
# Validation values
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TransactionDetails:
    """Structured transfer data resolved from a proof reference."""

    hash:   str
    sender: str
    to:     str
    asset:  str
    amount: int

    def to_dict(self) -> Dict[str, str]:
        return {
            "hash":   self.hash,
            "from":   self.sender,
            "to":     self.to,
            "asset":  self.asset,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class ExpectedTransfer:
    """What a valid delivery transaction must look like for one order."""

    seller: str
    buyer:  str
    asset:  str
    amount: int


@dataclass(frozen=True)
class ValidationVerdict:
    """
    Derived result of validating one proof. Recomputed on every refresh,
    never persisted.
    """

    order_id:       int
    status:         VerdictStatus
    errors:         List[str] = field(default_factory=list)
    transaction:    Optional[TransactionDetails] = None
    source_matches: Optional[bool] = None

    @property
    def resolved(self) -> bool:
        return self.transaction is not None

    @property
    def is_approved(self) -> bool:
        return self.status is VerdictStatus.APPROVED
