"""
otcx/ledger/interface.py

Async boundary to the external escrow ledger.

LedgerReader returns raw records (decoded by otcx.ledger.schema) and
scalar values. LedgerWriter issues single, atomic mutations; a declined
write raises MutationRejected carrying the ledger's reason. Nothing in
otcx retries a write.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from otcx.core.models import TransactionDetails
from otcx.ledger.schema import RawRecord


class LedgerReader(ABC):
    """Query-only view of the escrow. Order ids run from 1 to order_count()."""

    # ── Registry ──────────────────────────────────────────────

    @abstractmethod
    async def list_project_ids(self) -> List[str]: ...

    @abstractmethod
    async def get_project(self, project_id: str) -> RawRecord: ...

    @abstractmethod
    async def get_project_by_slug(self, slug: str) -> RawRecord: ...

    # ── Orders ────────────────────────────────────────────────

    @abstractmethod
    async def get_order(self, order_id: int) -> RawRecord: ...

    @abstractmethod
    async def order_count(self) -> int: ...

    # ── Project settlement state ──────────────────────────────

    @abstractmethod
    async def tge_activated(self, project_id: str) -> bool: ...

    @abstractmethod
    async def settlement_deadline(self, project_id: str) -> int: ...

    @abstractmethod
    async def settlement_asset(self, project_id: str) -> str: ...

    @abstractmethod
    async def conversion_ratio(self, project_id: str) -> int: ...

    # ── Proofs ────────────────────────────────────────────────

    @abstractmethod
    async def proof_of(self, order_id: int) -> str:
        """Submitted evidence string, empty when none."""

    @abstractmethod
    async def proof_submitted_at(self, order_id: int) -> int: ...

    @abstractmethod
    async def proof_acceptance(self, order_id: int) -> Tuple[bool, int]:
        """(accepted, accepted_at)."""

    # ── Global parameters ─────────────────────────────────────

    @abstractmethod
    async def points_sentinel(self) -> str: ...

    @abstractmethod
    async def is_paused(self) -> bool: ...

    @abstractmethod
    async def settlement_fee_bps(self) -> int: ...

    @abstractmethod
    async def cancellation_fee_bps(self) -> int: ...

    @abstractmethod
    async def min_order_value(self) -> int: ...

    @abstractmethod
    async def allowance(self, token: str, owner: str) -> int:
        """Amount of `token` the escrow may pull from `owner`."""


class LedgerWriter(ABC):
    """
    State-changing calls. The party argument on each call stands in for
    the signing wallet; signing itself happens outside otcx.
    """

    @abstractmethod
    async def create_order(
        self,
        is_sell:       bool,
        amount:        int,
        unit_price:    int,
        project_id:    str,
        maker:         str,
        allowed_taker: Optional[str] = None,
    ) -> int:
        """Returns the new order id."""

    @abstractmethod
    async def take_order(self, order_id: int, taker: str) -> None: ...

    @abstractmethod
    async def cancel_order(self, order_id: int, caller: str) -> None: ...

    @abstractmethod
    async def activate_project_tge(
        self,
        project_id:     str,
        asset:          str,
        window_seconds: int,
        ratio:          int,
    ) -> None:
        """One-way. A second activation for the same project is rejected."""

    @abstractmethod
    async def submit_proof(self, order_id: int, seller: str, proof: str) -> None: ...

    @abstractmethod
    async def accept_proof(self, order_id: int) -> None: ...

    @abstractmethod
    async def accept_proof_batch(self, order_ids: Sequence[int]) -> None:
        """All-or-nothing over the whole batch."""

    @abstractmethod
    async def reject_proof(self, order_id: int, reason: str) -> None: ...

    @abstractmethod
    async def settle_order(self, order_id: int, caller: str) -> None:
        """Token path: seller delivers the settlement asset through the escrow."""

    @abstractmethod
    async def settle_order_manual(self, order_id: int) -> None:
        """Points path: permissionless once the proof is accepted."""

    @abstractmethod
    async def claim_default(self, order_id: int, caller: str) -> None: ...

    @abstractmethod
    async def extend_settlement(self, project_id: str, hours: int) -> None:
        """Push a project's deadline out by 4 or 24 hours."""


class TransactionLookup(ABC):
    """A ledger that can describe its own transfers by hash."""

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[TransactionDetails]: ...
