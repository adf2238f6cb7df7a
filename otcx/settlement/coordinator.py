"""
otcx/settlement/coordinator.py

Batch Settlement Coordinator: admin review of submitted proofs.

═══════════════════════════════════════════════════════════════════
COORDINATION RULES
═══════════════════════════════════════════════════════════════════
Reviewable:
    status FUNDED, proof present, not accepted, project TGE activated,
    and review_open(project deadline). Orders that are not reviewable
    are excluded from every accept and reject, whatever the selection
    or verdict says.

Selection:
    Explicit order ids, changed only by select / deselect / select_all /
    select_approved_only / clear_selection. load() never touches it.

Accept:
    accept_selected()  one mutation over selection ∩ reviewable ∩ APPROVED
    accept(id)         single accept; non-APPROVED needs override=True;
                       an already accepted proof is a no-op

Reject:
    Mandatory non-empty reason per order. Accepted or non-reviewable
    orders fail the whole request before any mutation is issued.

After a mutation:
    success  selection cleared; acceptance is NOT recorded locally, the
             next refresh reads it from the ledger. Submitted accept ids
             are held until the next load() so they are neither
             accepted again nor rejected in between.
    failure  MutationRejected propagates; selection and pending state
             unchanged; nothing is retried
═══════════════════════════════════════════════════════════════════
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from otcx.core.exceptions import InvariantViolation, MutationRejected
from otcx.core.models import (
    Order,
    OrderStatus,
    ProjectSettlementState,
    ProofRecord,
    ValidationVerdict,
    VerdictStatus,
)
from otcx.core.time import Clock, now_unix
from otcx.ledger.interface import LedgerWriter
from otcx.settlement.conversion import review_open
from otcx.settlement.session import ProjectSession

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Pending proofs
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PendingProof:
    """One submitted proof with everything needed to decide on it."""

    order:         Order
    record:        ProofRecord
    deadline:      int
    tge_activated: bool
    verdict:       Optional[ValidationVerdict] = None

    @property
    def order_id(self) -> int:
        return self.order.id

    @property
    def verdict_status(self) -> Optional[VerdictStatus]:
        return self.verdict.status if self.verdict is not None else None

    def blocker(self, now: int) -> Optional[str]:
        """Why this proof is not reviewable at `now`, or None if it is."""
        if self.order.status is not OrderStatus.FUNDED:
            return f"order is {self.order.status.value}"
        if not self.record.has_proof:
            return "no proof submitted"
        if self.record.accepted:
            return "proof already accepted"
        if not self.tge_activated:
            return "TGE not activated"
        if not review_open(self.deadline, now):
            return "settlement deadline has not passed"
        return None

    def reviewable(self, now: int) -> bool:
        return self.blocker(now) is None


def pending_proofs(
    orders:   Iterable[Order],
    proofs:   Mapping[int, ProofRecord],
    state:    Optional[ProjectSettlementState],
    verdicts: Optional[Mapping[int, ValidationVerdict]] = None,
) -> List[PendingProof]:
    """
    Pending set for one project: every FUNDED order with a proof on
    record, accepted or not, in id order.
    """
    verdicts = verdicts or {}
    pending = []
    for order in sorted(orders, key=lambda o: o.id):
        record = proofs.get(order.id)
        if order.status is not OrderStatus.FUNDED or record is None:
            continue
        if not (record.has_proof or record.accepted):
            continue
        pending.append(PendingProof(
            order         = order,
            record        = record,
            deadline      = state.settlement_deadline if state else 0,
            tge_activated = bool(state and state.tge_activated),
            verdict       = verdicts.get(order.id),
        ))
    return pending


# ─────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────

class SettlementCoordinator:
    """
    Args:
        session: the project's working session (selection lives there)
        writer:  ledger mutation interface
        clock:   unix-seconds clock for the deadline gate
    """

    def __init__(self, session: ProjectSession, writer: LedgerWriter, clock: Clock = now_unix):
        self.session = session
        self.writer = writer
        self.clock = clock
        self._pending: Dict[int, PendingProof] = {}
        self._submitted: Set[int] = set()

    # ── Working set ───────────────────────────────────────────

    def load(self, pending: Iterable[PendingProof]) -> None:
        """Replace the pending set from a fresh projection. Selection is kept."""
        self._pending = {p.order_id: p for p in pending}
        self._submitted.clear()

    def apply_acceptance(self, records: Mapping[int, ProofRecord]) -> List[int]:
        """
        Fold a fast acceptance poll into the pending set.

        Returns:
            ids that read as accepted for the first time, in id order
        """
        newly = []
        for order_id, record in records.items():
            item = self._pending.get(order_id)
            if item is None or item.record.accepted:
                continue
            if record.accepted:
                newly.append(order_id)
                self._submitted.discard(order_id)
            self._pending[order_id] = replace(item, record=record)
        return sorted(newly)

    @property
    def pending(self) -> List[PendingProof]:
        return [self._pending[k] for k in sorted(self._pending)]

    @property
    def selection(self) -> FrozenSet[int]:
        return self.session.selection

    def reviewable(self, now: Optional[int] = None) -> List[PendingProof]:
        now = self.clock() if now is None else now
        return [
            p for p in self.pending
            if p.reviewable(now) and p.order_id not in self._submitted
        ]

    def eligible_for_bulk_accept(self, now: Optional[int] = None) -> List[int]:
        """Selected, reviewable and APPROVED, in id order."""
        selected = self.session.selection
        return [
            p.order_id
            for p in self.reviewable(now)
            if p.order_id in selected and p.verdict_status is VerdictStatus.APPROVED
        ]

    # ── Selection ─────────────────────────────────────────────

    def select(self, order_ids: Iterable[int]) -> None:
        order_ids = list(order_ids)
        unknown = [i for i in order_ids if i not in self._pending]
        if unknown:
            raise InvariantViolation(
                "order has no pending proof", {"order_ids": _ids(unknown)}
            )
        self.session.add(order_ids)

    def deselect(self, order_ids: Iterable[int]) -> None:
        self.session.remove(order_ids)

    def select_all(self, now: Optional[int] = None) -> None:
        """Select every reviewable proof, whatever its verdict."""
        self.session.replace(p.order_id for p in self.reviewable(now))

    def select_approved_only(self, now: Optional[int] = None) -> None:
        """Select exactly the reviewable proofs whose verdict is APPROVED."""
        self.session.replace(
            p.order_id
            for p in self.reviewable(now)
            if p.verdict_status is VerdictStatus.APPROVED
        )

    def clear_selection(self) -> None:
        self.session.clear()

    # ── Accept ────────────────────────────────────────────────

    async def accept_selected(self, now: Optional[int] = None) -> List[int]:
        """
        Accept selection ∩ reviewable ∩ APPROVED in ONE mutation.

        Returns:
            the order ids submitted

        Raises:
            InvariantViolation: nothing eligible; no mutation issued
            MutationRejected:   the ledger declined the batch
        """
        eligible = self.eligible_for_bulk_accept(now)
        skipped = sorted(self.session.selection - set(eligible))
        if skipped:
            logger.info(
                "project %s: excluding selected orders from bulk accept: %s",
                self.session.project_id, _ids(skipped),
            )
        if not eligible:
            raise InvariantViolation(
                "no selected proof is reviewable and approved",
                {"selected": _ids(sorted(self.session.selection))},
            )

        if len(eligible) == 1:
            await self._issue("accept_proof", self.writer.accept_proof(eligible[0]), eligible)
        else:
            await self._issue(
                "accept_proof_batch", self.writer.accept_proof_batch(eligible), eligible
            )
        self._submitted.update(eligible)
        self.session.clear()
        return eligible

    async def accept(self, order_id: int, override: bool = False, now: Optional[int] = None) -> bool:
        """
        Accept a single proof.

        A proof whose verdict is not APPROVED is accepted only with
        override=True. An already accepted proof is left alone.

        Returns:
            True if a mutation was issued, False for the already-accepted no-op
        """
        now = self.clock() if now is None else now
        item = self._require(order_id)

        if item.record.accepted:
            logger.info(
                "order %d proof already accepted at %d; nothing to do",
                order_id, item.record.accepted_at,
            )
            return False
        if order_id in self._submitted:
            logger.info("order %d accept already submitted; nothing to do", order_id)
            return False

        blocker = item.blocker(now)
        if blocker is not None:
            raise InvariantViolation(
                "proof is not reviewable", {"order_id": order_id, "reason": blocker}
            )

        if item.verdict_status is not VerdictStatus.APPROVED:
            status = item.verdict_status.value if item.verdict_status else "UNVALIDATED"
            if not override:
                raise InvariantViolation(
                    "verdict is not APPROVED; accepting requires an explicit override",
                    {"order_id": order_id, "verdict": status},
                )
            logger.warning(
                "order %d: administrator override accepting %s proof", order_id, status
            )

        await self._issue("accept_proof", self.writer.accept_proof(order_id), [order_id])
        self._submitted.add(order_id)
        self.session.clear()
        return True

    # ── Reject ────────────────────────────────────────────────

    async def reject(self, reasons: Mapping[int, str], now: Optional[int] = None) -> List[int]:
        """
        Reject proofs, each with its own reason.

        All checks run before the first mutation. Mutations are issued one
        per order in id order; the first failure stops the run.

        Raises:
            InvariantViolation: empty request, blank reason, accepted or
                                non-reviewable order; no mutation issued
            MutationRejected:   the ledger declined one rejection; details
                                list the orders already rejected
        """
        if not reasons:
            raise InvariantViolation("no proofs to reject")

        now = self.clock() if now is None else now
        order_ids = sorted(reasons)

        for order_id in order_ids:
            reason = reasons[order_id]
            if not reason or not reason.strip():
                raise InvariantViolation(
                    "a rejection reason is required", {"order_id": order_id}
                )
            item = self._require(order_id)
            if item.record.accepted or order_id in self._submitted:
                raise InvariantViolation(
                    "proof already accepted; rejection is no longer possible",
                    {"order_id": order_id},
                )
            blocker = item.blocker(now)
            if blocker is not None:
                raise InvariantViolation(
                    "proof is not reviewable", {"order_id": order_id, "reason": blocker}
                )

        done: List[int] = []
        for order_id in order_ids:
            reason = reasons[order_id].strip()
            try:
                await self._issue(
                    "reject_proof", self.writer.reject_proof(order_id, reason), [order_id]
                )
            except MutationRejected as e:
                raise MutationRejected(
                    f"rejecting order {order_id} failed: {e.message}",
                    {"order_id": order_id, "rejected": _ids(done) or "none"},
                ) from e
            done.append(order_id)

        self.session.clear()
        return done

    async def reject_selected(self, reason: str, now: Optional[int] = None) -> List[int]:
        """Reject every selected proof with the same reason."""
        selected = sorted(self.session.selection)
        if not selected:
            raise InvariantViolation("no proofs selected")
        return await self.reject({order_id: reason for order_id in selected}, now=now)

    # ── Internals ─────────────────────────────────────────────

    def _require(self, order_id: int) -> PendingProof:
        item = self._pending.get(order_id)
        if item is None:
            raise InvariantViolation("order has no pending proof", {"order_id": order_id})
        return item

    async def _issue(self, method: str, call, order_ids: List[int]) -> None:
        logger.info(
            "project %s: issuing %s for %s",
            self.session.project_id, method, _ids(order_ids),
        )
        try:
            await call
        except MutationRejected as e:
            logger.error("project %s: %s declined: %s", self.session.project_id, method, e)
            raise
        logger.info("project %s: %s submitted", self.session.project_id, method)


def _ids(order_ids: Iterable[int]) -> str:
    return ",".join(str(i) for i in order_ids)
