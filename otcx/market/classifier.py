"""
otcx/market/classifier.py

Order Classifier: display bucket and action eligibility for one order.

Pure function of its inputs. Nothing here reads the ledger, the clock
(except through `now`), or mutates state.

Buckets:
    OPEN           status OPEN
    FILLED         status FUNDED, project TGE not activated
    IN_SETTLEMENT  status FUNDED, project TGE activated
    ENDED          status SETTLED, DEFAULTED or CANCELED

A missing project settlement state is treated as "TGE not activated",
so an order whose state could not be read is never offered settlement
or default actions.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from otcx.core.models import (
    Bucket,
    Order,
    OrderStatus,
    Project,
    ProjectSettlementState,
    ProofRecord,
    same_address,
)
from otcx.core.time import resolve_now
from otcx.settlement.conversion import to_settlement_amount


@dataclass(frozen=True)
class Actions:
    can_cancel:  bool = False
    can_lock:    bool = False
    can_settle:  bool = False
    can_default: bool = False

    def enabled(self) -> List[str]:
        names = ("cancel", "lock", "settle", "default")
        flags = (self.can_cancel, self.can_lock, self.can_settle, self.can_default)
        return [n for n, f in zip(names, flags) if f]


@dataclass(frozen=True)
class Classification:
    order:   Order
    bucket:  Bucket
    actions: Actions = field(default_factory=Actions)


def bucket_for(order: Order, state: Optional[ProjectSettlementState]) -> Bucket:
    if order.status is OrderStatus.OPEN:
        return Bucket.OPEN
    if order.status is OrderStatus.FUNDED:
        activated = state is not None and state.tge_activated
        return Bucket.IN_SETTLEMENT if activated else Bucket.FILLED
    return Bucket.ENDED


def classify(
    order:     Order,
    project:   Optional[Project],
    state:     Optional[ProjectSettlementState],
    caller:    Optional[str] = None,
    now:       Optional[int] = None,
    proof:     Optional[ProofRecord] = None,
    allowance: Optional[int] = None,
) -> Classification:
    """
    Classify one order.

    Args:
        order:     the order
        project:   its registry record, if known
        state:     its project's settlement state, if it could be read
        caller:    party asking; caller-specific actions are False without one
        now:       unix seconds, defaults to the wall clock
        proof:     the order's proof record, if any
        allowance: caller's settlement-asset allowance to the escrow

    Returns:
        Classification with bucket and actions
    """
    bucket = bucket_for(order, state)
    is_open = order.status is OrderStatus.OPEN

    can_cancel = is_open and not order.counterparty_locked
    if caller is not None:
        can_cancel = can_cancel and same_address(caller, order.maker)

    can_lock = (
        is_open
        and caller is not None
        and not same_address(caller, order.maker)
        and (order.is_public or same_address(caller, order.allowed_taker))
        and (project is None or project.active)
    )

    can_settle = False
    can_default = False
    if bucket is Bucket.IN_SETTLEMENT:
        if state.is_points_path:
            can_settle = proof is not None and proof.accepted
        else:
            due = to_settlement_amount(order.amount, state.conversion_ratio)
            can_settle = (
                same_address(caller, order.seller)
                and allowance is not None
                and allowance >= due
            )
        can_default = (
            resolve_now(now) > state.settlement_deadline
            and not (state.is_points_path and proof is not None and proof.accepted)
            and (caller is None or same_address(caller, order.buyer))
        )

    return Classification(
        order   = order,
        bucket  = bucket,
        actions = Actions(
            can_cancel  = can_cancel,
            can_lock    = can_lock,
            can_settle  = can_settle,
            can_default = can_default,
        ),
    )


def classify_all(
    orders:   Iterable[Order],
    projects: Dict[str, Project],
    states:   Dict[str, ProjectSettlementState],
    proofs:   Optional[Dict[int, ProofRecord]] = None,
    caller:   Optional[str] = None,
    now:      Optional[int] = None,
) -> List[Classification]:
    """Classify many orders; project maps are keyed by lowercase project id."""
    proofs = proofs or {}
    now = resolve_now(now)
    return [
        classify(
            order,
            projects.get(order.project_id.lower()),
            states.get(order.project_id.lower()),
            caller=caller,
            now=now,
            proof=proofs.get(order.id),
        )
        for order in orders
    ]
