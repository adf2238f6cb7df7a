"""
otcx/ledger/memory.py

In-memory escrow ledger.

Implements LedgerReader and LedgerWriter with the escrow's rules so the
whole coordination layer can run against a local state file (CLI) or a
fixture (tests) without a chain:

    - pause flag blocks new orders and takes
    - orders below min_order_value are rejected
    - maker locks their side at creation, taker locks the other side
    - TGE activation is one-way; asset and ratio never change after it
    - proof acceptance only after the project deadline, and only once
    - rejection requires a reason and clears the submitted proof
    - default only after the deadline, claimed by the buyer

Every declined call raises MutationRejected with a specific reason.
Every call, accepted or declined, is appended to `journal`.

Transfers recorded with record_transfer() are what get_transaction()
resolves, so proof validation can run offline.

State persists as YAML (pyyaml):

    params:    {paused, settlement_fee_bps, cancellation_fee_bps, min_order_value}
    projects:  [{project_id, slug, ..., tge: {activated, deadline, asset, ratio}}]
    orders:    [ORDER_SCHEMA_V4 mapping]
    proofs:    {order_id: {proof, submitted_at, accepted, accepted_at, rejected_reason}}
    allowances:[{token, owner, amount}]
    transfers: [{hash, from, to, asset, amount}]
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from otcx.core.exceptions import MutationRejected, ReadFailure
from otcx.core.models import (
    POINTS_SENTINEL,
    RATIO_SCALE,
    ZERO_ADDRESS,
    Order,
    OrderStatus,
    Project,
    ProjectSettlementState,
    ProofRecord,
    TransactionDetails,
    is_zero_address,
    same_address,
)
from otcx.core.time import Clock, now_unix
from otcx.ledger.interface import LedgerReader, LedgerWriter, TransactionLookup
from otcx.ledger.schema import ORDER_SCHEMA_V4, PROJECT_SCHEMA_V2, RawRecord
from otcx.settlement.conversion import (
    MAX_CONVERSION_RATIO,
    review_open,
    to_settlement_amount,
)

logger = logging.getLogger(__name__)

EXTENSION_HOURS = (4, 24)


@dataclass(frozen=True)
class JournalEntry:
    """One mutation attempt against the in-memory ledger."""

    method:   str
    args:     Tuple[Any, ...]
    accepted: bool
    reason:   str = ""


class InMemoryLedger(LedgerReader, LedgerWriter, TransactionLookup):
    """Escrow ledger held in process memory."""

    def __init__(
        self,
        clock:                Clock = now_unix,
        paused:               bool = False,
        settlement_fee_bps:   int = 0,
        cancellation_fee_bps: int = 0,
        min_order_value:      int = 0,
    ):
        self.clock = clock
        self.paused = paused
        self.fee_bps = settlement_fee_bps
        self.cancel_fee_bps = cancellation_fee_bps
        self.min_value = min_order_value

        self.projects:   Dict[str, Project] = {}
        self.states:     Dict[str, ProjectSettlementState] = {}
        self.orders:     Dict[int, Order] = {}
        self.proofs:     Dict[int, ProofRecord] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self.transfers:  Dict[str, TransactionDetails] = {}
        self.journal:    List[JournalEntry] = []

    # ── Fixture setup ─────────────────────────────────────────

    def add_project(self, project: Project) -> None:
        """Register a project (admin-side; not part of the writer interface)."""
        key = project.project_id.lower()
        self.projects[key] = project
        self.states.setdefault(key, ProjectSettlementState.inactive(project.project_id))

    def approve(self, token: str, owner: str, amount: int) -> None:
        """Set the escrow's allowance over `owner`'s `token`."""
        self.allowances[(token.lower(), owner.lower())] = amount

    def record_transfer(
        self, tx_hash: str, sender: str, to: str, asset: str, amount: int
    ) -> TransactionDetails:
        """Record an asset transfer so it can be resolved by hash."""
        details = TransactionDetails(
            hash=tx_hash, sender=sender, to=to, asset=asset, amount=amount
        )
        self.transfers[tx_hash.lower()] = details
        return details

    def calls(self, method: str) -> List[JournalEntry]:
        """Journal entries for one mutation method."""
        return [e for e in self.journal if e.method == method]

    # ── Internal helpers ──────────────────────────────────────

    def _reject(self, method: str, args: tuple, reason: str, **details) -> None:
        self.journal.append(JournalEntry(method, args, accepted=False, reason=reason))
        logger.debug("ledger rejected %s%r: %s", method, args, reason)
        raise MutationRejected(reason, {"call": method, **details})

    def _accept(self, method: str, args: tuple) -> None:
        self.journal.append(JournalEntry(method, args, accepted=True))
        logger.debug("ledger accepted %s%r", method, args)

    def _project(self, project_id: str) -> Project:
        try:
            return self.projects[project_id.lower()]
        except KeyError:
            raise ReadFailure("unknown project", {"project_id": project_id}) from None

    def _state(self, project_id: str) -> ProjectSettlementState:
        self._project(project_id)
        return self.states[project_id.lower()]

    def _order(self, order_id: int) -> Order:
        try:
            return self.orders[order_id]
        except KeyError:
            raise ReadFailure("unknown order", {"order_id": order_id}) from None

    def _proof(self, order_id: int) -> ProofRecord:
        return self.proofs.get(order_id) or ProofRecord(order_id=order_id, proof=None)

    def _mutable_order(self, method: str, args: tuple, order_id: int) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            self._reject(method, args, "order does not exist", order_id=order_id)
        return order

    # ── LedgerReader: registry ────────────────────────────────

    async def list_project_ids(self) -> List[str]:
        return [p.project_id for p in self.projects.values()]

    async def get_project(self, project_id: str) -> RawRecord:
        project = self._project(project_id)
        return tuple(PROJECT_SCHEMA_V2.encode(project)[f] for f in PROJECT_SCHEMA_V2.fields)

    async def get_project_by_slug(self, slug: str) -> RawRecord:
        for project in self.projects.values():
            if project.slug.lower() == slug.lower():
                return await self.get_project(project.project_id)
        raise ReadFailure("unknown project slug", {"slug": slug})

    # ── LedgerReader: orders ──────────────────────────────────

    async def get_order(self, order_id: int) -> RawRecord:
        order = self._order(order_id)
        state = self.states[order.project_id.lower()]
        record = ORDER_SCHEMA_V4.encode(order)
        record["settlement_deadline"] = state.settlement_deadline
        return tuple(record[f] for f in ORDER_SCHEMA_V4.fields)

    async def order_count(self) -> int:
        return len(self.orders)

    # ── LedgerReader: project settlement state ────────────────

    async def tge_activated(self, project_id: str) -> bool:
        return self._state(project_id).tge_activated

    async def settlement_deadline(self, project_id: str) -> int:
        return self._state(project_id).settlement_deadline

    async def settlement_asset(self, project_id: str) -> str:
        return self._state(project_id).settlement_asset

    async def conversion_ratio(self, project_id: str) -> int:
        return self._state(project_id).conversion_ratio

    # ── LedgerReader: proofs ──────────────────────────────────

    async def proof_of(self, order_id: int) -> str:
        self._order(order_id)
        return self._proof(order_id).proof or ""

    async def proof_submitted_at(self, order_id: int) -> int:
        self._order(order_id)
        return self._proof(order_id).submitted_at

    async def proof_acceptance(self, order_id: int) -> Tuple[bool, int]:
        self._order(order_id)
        record = self._proof(order_id)
        return record.accepted, record.accepted_at

    # ── LedgerReader: globals ─────────────────────────────────

    async def points_sentinel(self) -> str:
        return POINTS_SENTINEL

    async def is_paused(self) -> bool:
        return self.paused

    async def settlement_fee_bps(self) -> int:
        return self.fee_bps

    async def cancellation_fee_bps(self) -> int:
        return self.cancel_fee_bps

    async def min_order_value(self) -> int:
        return self.min_value

    async def allowance(self, token: str, owner: str) -> int:
        return self.allowances.get((token.lower(), owner.lower()), 0)

    # ── TransactionLookup ─────────────────────────────────────

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionDetails]:
        return self.transfers.get(tx_hash.lower())

    # ── LedgerWriter: orders ──────────────────────────────────

    async def create_order(
        self,
        is_sell:       bool,
        amount:        int,
        unit_price:    int,
        project_id:    str,
        maker:         str,
        allowed_taker: Optional[str] = None,
    ) -> int:
        method = "create_order"
        args = (is_sell, amount, unit_price, project_id, maker, allowed_taker)

        if self.paused:
            self._reject(method, args, "trading is paused")
        project = self.projects.get(project_id.lower())
        if project is None or not project.active:
            self._reject(method, args, "project is not active", project_id=project_id)
        if self.states[project_id.lower()].tge_activated:
            self._reject(method, args, "project already reached TGE", project_id=project_id)
        if amount <= 0 or unit_price <= 0:
            self._reject(method, args, "amount and price must be positive")
        if same_address(maker, allowed_taker):
            self._reject(method, args, "maker cannot restrict the order to themselves")

        order_id = len(self.orders) + 1
        order = Order(
            id                  = order_id,
            maker               = maker,
            buyer               = ZERO_ADDRESS if is_sell else maker,
            seller              = maker if is_sell else ZERO_ADDRESS,
            project_id          = project.project_id,
            amount              = amount,
            unit_price          = unit_price,
            buyer_funds         = 0,
            seller_collateral   = 0,
            settlement_deadline = 0,
            is_sell             = is_sell,
            status              = OrderStatus.OPEN,
            allowed_taker       = None if is_zero_address(allowed_taker) else allowed_taker,
        )
        value = order.total_value
        if value < self.min_value:
            self._reject(
                method, args, "order value below minimum",
                value=value, minimum=self.min_value,
            )

        if is_sell:
            order = replace(order, seller_collateral=value)
        else:
            order = replace(order, buyer_funds=value)

        self.orders[order_id] = order
        self._accept(method, args)
        return order_id

    async def take_order(self, order_id: int, taker: str) -> None:
        method, args = "take_order", (order_id, taker)
        order = self._mutable_order(method, args, order_id)

        if self.paused:
            self._reject(method, args, "trading is paused")
        if order.status is not OrderStatus.OPEN:
            self._reject(method, args, "order is not open", status=order.status.value)
        if not self.projects[order.project_id.lower()].active:
            self._reject(method, args, "project is not active")
        if same_address(taker, order.maker):
            self._reject(method, args, "maker cannot take their own order")
        if not order.is_public and not same_address(taker, order.allowed_taker):
            self._reject(method, args, "order is restricted to another taker")

        value = order.total_value
        if order.is_sell:
            order = replace(order, buyer=taker, buyer_funds=value)
        else:
            order = replace(order, seller=taker, seller_collateral=value)

        self.orders[order_id] = replace(order, status=OrderStatus.FUNDED)
        self._accept(method, args)

    async def cancel_order(self, order_id: int, caller: str) -> None:
        method, args = "cancel_order", (order_id, caller)
        order = self._mutable_order(method, args, order_id)

        if order.status is not OrderStatus.OPEN:
            self._reject(method, args, "only open orders can be canceled")
        if not same_address(caller, order.maker):
            self._reject(method, args, "only the maker can cancel")
        if order.counterparty_locked:
            self._reject(method, args, "counterparty already locked funds")

        self.orders[order_id] = replace(order, status=OrderStatus.CANCELED)
        self._accept(method, args)

    # ── LedgerWriter: TGE ─────────────────────────────────────

    async def activate_project_tge(
        self,
        project_id:     str,
        asset:          str,
        window_seconds: int,
        ratio:          int,
    ) -> None:
        method, args = "activate_project_tge", (project_id, asset, window_seconds, ratio)
        project = self.projects.get(project_id.lower())

        if project is None:
            self._reject(method, args, "project does not exist", project_id=project_id)
        state = self.states[project_id.lower()]
        if state.tge_activated:
            self._reject(method, args, "TGE already activated", project_id=project_id)
        if is_zero_address(asset):
            self._reject(method, args, "settlement asset is required")
        if window_seconds <= 0:
            self._reject(method, args, "settlement window must be positive")
        if ratio <= 0 or ratio > MAX_CONVERSION_RATIO:
            self._reject(method, args, "conversion ratio out of range", ratio=ratio)
        if not project.is_points and ratio != RATIO_SCALE:
            self._reject(method, args, "token projects must use ratio 1.0", ratio=ratio)

        self.states[project_id.lower()] = ProjectSettlementState(
            project_id          = project.project_id,
            tge_activated       = True,
            settlement_deadline = self.clock() + window_seconds,
            settlement_asset    = asset,
            conversion_ratio    = ratio,
        )
        self._accept(method, args)

    async def extend_settlement(self, project_id: str, hours: int) -> None:
        method, args = "extend_settlement", (project_id, hours)
        state = self.states.get(project_id.lower())

        if state is None or not state.tge_activated:
            self._reject(method, args, "TGE not activated", project_id=project_id)
        if hours not in EXTENSION_HOURS:
            self._reject(method, args, "extension must be 4 or 24 hours", hours=hours)

        self.states[project_id.lower()] = replace(
            state, settlement_deadline=state.settlement_deadline + hours * 3600
        )
        self._accept(method, args)

    # ── LedgerWriter: proofs ──────────────────────────────────

    def _settling_order(self, method: str, args: tuple, order_id: int):
        order = self._mutable_order(method, args, order_id)
        state = self.states[order.project_id.lower()]
        if order.status is not OrderStatus.FUNDED:
            self._reject(method, args, "order is not funded", status=order.status.value)
        if not state.tge_activated:
            self._reject(method, args, "TGE not activated")
        return order, state

    async def submit_proof(self, order_id: int, seller: str, proof: str) -> None:
        method, args = "submit_proof", (order_id, seller, proof)
        order, state = self._settling_order(method, args, order_id)

        if not state.is_points_path:
            self._reject(method, args, "proofs are only for points settlement")
        if not same_address(seller, order.seller):
            self._reject(method, args, "only the seller can submit proof")
        if not proof or not proof.strip():
            self._reject(method, args, "proof is empty")
        if self._proof(order_id).accepted:
            self._reject(method, args, "proof already accepted")
        if self.clock() > state.settlement_deadline:
            self._reject(method, args, "settlement window closed")

        self.proofs[order_id] = ProofRecord(
            order_id=order_id, proof=proof.strip(), submitted_at=self.clock()
        )
        self._accept(method, args)

    def _check_acceptable(self, method: str, args: tuple, order_id: int) -> None:
        order, state = self._settling_order(method, args, order_id)
        record = self._proof(order_id)
        if not record.has_proof:
            self._reject(method, args, "no proof submitted", order_id=order_id)
        if record.accepted:
            self._reject(method, args, "proof already accepted", order_id=order_id)
        if not review_open(state.settlement_deadline, self.clock()):
            self._reject(method, args, "settlement deadline has not passed", order_id=order_id)

    def _mark_accepted(self, order_id: int) -> None:
        self.proofs[order_id] = replace(
            self._proof(order_id), accepted=True, accepted_at=self.clock()
        )

    async def accept_proof(self, order_id: int) -> None:
        method, args = "accept_proof", (order_id,)
        self._check_acceptable(method, args, order_id)
        self._mark_accepted(order_id)
        self._accept(method, args)

    async def accept_proof_batch(self, order_ids: Sequence[int]) -> None:
        method, args = "accept_proof_batch", (tuple(order_ids),)
        if not order_ids:
            self._reject(method, args, "empty batch")
        if len(set(order_ids)) != len(order_ids):
            self._reject(method, args, "duplicate order in batch")
        # validate all before touching any
        for order_id in order_ids:
            self._check_acceptable(method, args, order_id)
        for order_id in order_ids:
            self._mark_accepted(order_id)
        self._accept(method, args)

    async def reject_proof(self, order_id: int, reason: str) -> None:
        method, args = "reject_proof", (order_id, reason)
        self._settling_order(method, args, order_id)
        record = self._proof(order_id)

        if not reason or not reason.strip():
            self._reject(method, args, "rejection reason is required")
        if not record.has_proof:
            self._reject(method, args, "no proof submitted", order_id=order_id)
        if record.accepted:
            self._reject(method, args, "proof already accepted", order_id=order_id)

        self.proofs[order_id] = ProofRecord(
            order_id=order_id, proof=None, rejected_reason=reason.strip()
        )
        self._accept(method, args)

    # ── LedgerWriter: settlement ──────────────────────────────

    async def settle_order(self, order_id: int, caller: str) -> None:
        method, args = "settle_order", (order_id, caller)
        order, state = self._settling_order(method, args, order_id)

        if state.is_points_path:
            self._reject(method, args, "points orders settle through proof")
        if not same_address(caller, order.seller):
            self._reject(method, args, "only the seller can settle")
        if self.clock() > state.settlement_deadline:
            self._reject(method, args, "settlement window closed")

        due = to_settlement_amount(order.amount, state.conversion_ratio)
        key = (state.settlement_asset.lower(), order.seller.lower())
        if self.allowances.get(key, 0) < due:
            self._reject(method, args, "insufficient allowance", required=due)

        self.allowances[key] -= due
        self.record_transfer(
            f"0x{order_id:064x}", order.seller, order.buyer, state.settlement_asset, due
        )
        self.orders[order_id] = replace(order, status=OrderStatus.SETTLED)
        self._accept(method, args)

    async def settle_order_manual(self, order_id: int) -> None:
        method, args = "settle_order_manual", (order_id,)
        _, state = self._settling_order(method, args, order_id)

        if not state.is_points_path:
            self._reject(method, args, "token orders settle through settle_order")
        if not self._proof(order_id).accepted:
            self._reject(method, args, "proof not accepted", order_id=order_id)

        self.orders[order_id] = replace(self.orders[order_id], status=OrderStatus.SETTLED)
        self._accept(method, args)

    async def claim_default(self, order_id: int, caller: str) -> None:
        method, args = "claim_default", (order_id, caller)
        order, state = self._settling_order(method, args, order_id)

        if not same_address(caller, order.buyer):
            self._reject(method, args, "only the buyer can claim default")
        if self.clock() <= state.settlement_deadline:
            self._reject(method, args, "settlement deadline has not passed")
        if self._proof(order_id).accepted:
            self._reject(method, args, "proof accepted; order must be settled")

        self.orders[order_id] = replace(order, status=OrderStatus.DEFAULTED)
        self._accept(method, args)

    # ── Persistence ───────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        projects = []
        for key, project in self.projects.items():
            state = self.states[key]
            entry = PROJECT_SCHEMA_V2.encode(project)
            entry["tge"] = {
                "activated": state.tge_activated,
                "deadline":  state.settlement_deadline,
                "asset":     state.settlement_asset,
                "ratio":     state.conversion_ratio,
            }
            projects.append(entry)

        return {
            "params": {
                "paused":               self.paused,
                "settlement_fee_bps":   self.fee_bps,
                "cancellation_fee_bps": self.cancel_fee_bps,
                "min_order_value":      self.min_value,
            },
            "projects": projects,
            "orders": [ORDER_SCHEMA_V4.encode(o) for o in self.orders.values()],
            "proofs": {
                order_id: {
                    "proof":           p.proof,
                    "submitted_at":    p.submitted_at,
                    "accepted":        p.accepted,
                    "accepted_at":     p.accepted_at,
                    "rejected_reason": p.rejected_reason,
                }
                for order_id, p in self.proofs.items()
            },
            "allowances": [
                {"token": token, "owner": owner, "amount": amount}
                for (token, owner), amount in self.allowances.items()
            ],
            "transfers": [t.to_dict() for t in self.transfers.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Clock = now_unix) -> "InMemoryLedger":
        params = data.get("params") or {}
        ledger = cls(
            clock                = clock,
            paused               = bool(params.get("paused", False)),
            settlement_fee_bps   = int(params.get("settlement_fee_bps", 0)),
            cancellation_fee_bps = int(params.get("cancellation_fee_bps", 0)),
            min_order_value      = int(params.get("min_order_value", 0)),
        )

        for entry in data.get("projects") or []:
            entry = dict(entry)
            tge = entry.pop("tge", None) or {}
            project = PROJECT_SCHEMA_V2.decode(entry)
            ledger.add_project(project)
            if tge.get("activated"):
                ledger.states[project.project_id.lower()] = ProjectSettlementState(
                    project_id          = project.project_id,
                    tge_activated       = True,
                    settlement_deadline = int(tge["deadline"]),
                    settlement_asset    = tge["asset"],
                    conversion_ratio    = int(tge.get("ratio", RATIO_SCALE)),
                )

        for entry in data.get("orders") or []:
            order = ORDER_SCHEMA_V4.decode(entry)
            ledger.orders[order.id] = order

        for order_id, p in (data.get("proofs") or {}).items():
            ledger.proofs[int(order_id)] = ProofRecord(
                order_id        = int(order_id),
                proof           = p.get("proof"),
                submitted_at    = int(p.get("submitted_at", 0)),
                accepted        = bool(p.get("accepted", False)),
                accepted_at     = int(p.get("accepted_at", 0)),
                rejected_reason = p.get("rejected_reason"),
            )

        for a in data.get("allowances") or []:
            ledger.approve(a["token"], a["owner"], int(a["amount"]))

        for t in data.get("transfers") or []:
            ledger.record_transfer(t["hash"], t["from"], t["to"], t["asset"], int(t["amount"]))

        return ledger

    @classmethod
    def from_yaml(cls, path: Path, clock: Clock = now_unix) -> "InMemoryLedger":
        """Load ledger state from a YAML file. A missing file yields an empty ledger."""
        path = Path(path)
        if not path.exists():
            return cls(clock=clock)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, clock=clock)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    def __repr__(self) -> str:
        return (
            f"InMemoryLedger(projects={len(self.projects)}, "
            f"orders={len(self.orders)}, proofs={len(self.proofs)})"
        )
