"""
tests/test_coordinator.py

Batch Settlement Coordinator: selection, bulk accept, override, reject.

  DEADLINE GATE
    Nothing is reviewable, selectable in bulk, or mutated before the
    project's settlement deadline

  ACCEPT
    Bulk accept sends ONE mutation for selection ∩ reviewable ∩ APPROVED
    A non-APPROVED proof is accepted only with override=True
    Accepting an accepted proof is a no-op

  REJECT
    Every order needs a reason; accepted orders fail before any mutation
    Sequential, stops at the first ledger failure
"""

import pytest

from otcx.core.exceptions import InvariantViolation, MutationRejected
from otcx.core.models import ValidationVerdict, VerdictStatus
from otcx.ledger.mirror import LedgerMirror
from otcx.settlement.coordinator import PendingProof, SettlementCoordinator, pending_proofs
from otcx.settlement.session import ProjectSession

from tests.helpers.ledger_factory import (
    POINTS_PROJECT_ID,
    T0,
    FakeClock,
    activate_points,
    funded_order,
    new_ledger,
    points,
    submit_delivery,
)

WINDOW = 3_600


def verdict(order_id: int, status: VerdictStatus = VerdictStatus.APPROVED) -> ValidationVerdict:
    return ValidationVerdict(order_id=order_id, status=status)


async def reload(coordinator: SettlementCoordinator, ledger, verdicts=None) -> None:
    snap = await LedgerMirror(ledger, clock=ledger.clock).refresh(POINTS_PROJECT_ID)
    coordinator.load(pending_proofs(
        snap.orders_for(POINTS_PROJECT_ID),
        snap.proofs,
        snap.state_for(POINTS_PROJECT_ID),
        verdicts,
    ))


async def setup(n: int = 3, statuses=None, past_deadline: bool = True):
    """
    n funded points orders with submitted proofs, loaded into a coordinator.
    statuses maps order id -> verdict status; default APPROVED.
    """
    clock = FakeClock()
    ledger = new_ledger(clock)
    ids = [await funded_order(ledger) for _ in range(n)]
    await activate_points(ledger, window=WINDOW)
    for order_id in ids:
        await submit_delivery(ledger, order_id, points(1000))
    if past_deadline:
        clock.advance(WINDOW)

    statuses = statuses or {}
    verdicts = {i: verdict(i, statuses.get(i, VerdictStatus.APPROVED)) for i in ids}
    coordinator = SettlementCoordinator(ProjectSession(POINTS_PROJECT_ID), ledger, clock=clock)
    await reload(coordinator, ledger, verdicts)
    return ledger, clock, coordinator, verdicts


# ─────────────────────────────────────────────────────────────
# Pending set
# ─────────────────────────────────────────────────────────────

class TestPending:

    @pytest.mark.asyncio
    async def test_pending_in_id_order(self):
        _, _, coordinator, _ = await setup()
        assert [p.order_id for p in coordinator.pending] == [1, 2, 3]
        assert all(p.deadline == T0 + WINDOW for p in coordinator.pending)

    @pytest.mark.asyncio
    async def test_load_keeps_selection(self):
        ledger, _, coordinator, verdicts = await setup()
        coordinator.select([1, 3])
        await reload(coordinator, ledger, verdicts)
        assert coordinator.selection == {1, 3}

    @pytest.mark.asyncio
    async def test_select_unknown_order(self):
        _, _, coordinator, _ = await setup()
        with pytest.raises(InvariantViolation):
            coordinator.select([99])
        assert coordinator.selection == frozenset()

    @pytest.mark.asyncio
    async def test_select_approved_only(self):
        _, _, coordinator, _ = await setup(statuses={2: VerdictStatus.MANUAL_REVIEW})
        coordinator.select_approved_only()
        assert coordinator.selection == {1, 3}
        coordinator.select_all()
        assert coordinator.selection == {1, 2, 3}
        coordinator.deselect([1])
        assert coordinator.selection == {2, 3}


# ─────────────────────────────────────────────────────────────
# Deadline gate
# ─────────────────────────────────────────────────────────────

class TestDeadlineGate:

    @pytest.mark.asyncio
    async def test_nothing_reviewable_before_deadline(self):
        ledger, clock, coordinator, _ = await setup(past_deadline=False)

        assert coordinator.reviewable() == []
        assert coordinator.pending[0].blocker(clock()) == "settlement deadline has not passed"

        coordinator.select_all()
        assert coordinator.selection == frozenset()

        with pytest.raises(InvariantViolation):
            await coordinator.accept(1)
        with pytest.raises(InvariantViolation):
            await coordinator.reject({1: "wrong recipient"})
        assert ledger.calls("accept_proof") == []
        assert ledger.calls("reject_proof") == []

    @pytest.mark.asyncio
    async def test_review_opens_exactly_at_deadline(self):
        _, clock, coordinator, _ = await setup(past_deadline=False)
        clock.advance(WINDOW - 1)
        assert coordinator.reviewable() == []
        clock.advance(1)
        assert [p.order_id for p in coordinator.reviewable()] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_explicit_selection_before_deadline_is_excluded(self):
        """An APPROVED proof picked by id still waits for the deadline."""
        ledger, _, coordinator, _ = await setup(past_deadline=False)
        coordinator.select([2])
        assert coordinator.selection == {2}
        assert coordinator.eligible_for_bulk_accept() == []

        with pytest.raises(InvariantViolation):
            await coordinator.accept_selected()

        assert ledger.calls("accept_proof") == []
        assert ledger.calls("accept_proof_batch") == []
        assert coordinator.selection == {2}


# ─────────────────────────────────────────────────────────────
# Accept
# ─────────────────────────────────────────────────────────────

class TestAccept:

    @pytest.mark.asyncio
    async def test_bulk_accept_single_id_uses_accept_proof(self):
        ledger, _, coordinator, _ = await setup()
        coordinator.select([2])

        submitted = await coordinator.accept_selected()

        assert submitted == [2]
        assert [e.args for e in ledger.calls("accept_proof")] == [(2,)]
        assert ledger.calls("accept_proof_batch") == []
        assert coordinator.selection == frozenset()

    @pytest.mark.asyncio
    async def test_bulk_accept_is_one_batch_of_approved_only(self):
        """Selected non-APPROVED proofs are excluded from the batch."""
        ledger, _, coordinator, _ = await setup(statuses={3: VerdictStatus.NOT_APPROVED})
        coordinator.select_all()

        submitted = await coordinator.accept_selected()

        assert submitted == [1, 2]
        batches = ledger.calls("accept_proof_batch")
        assert len(batches) == 1
        assert batches[0].args == ((1, 2),)
        assert batches[0].accepted
        assert not ledger.proofs[3].accepted

    @pytest.mark.asyncio
    async def test_bulk_accept_with_nothing_eligible(self):
        ledger, _, coordinator, _ = await setup(statuses={1: VerdictStatus.MANUAL_REVIEW})
        coordinator.select([1])
        with pytest.raises(InvariantViolation):
            await coordinator.accept_selected()
        assert ledger.calls("accept_proof") == []
        assert ledger.calls("accept_proof_batch") == []
        assert coordinator.selection == {1}

    @pytest.mark.asyncio
    async def test_declined_batch_keeps_selection(self):
        """A failed mutation changes nothing: no partial accept, selection intact."""
        ledger, _, coordinator, _ = await setup()
        coordinator.select([1, 2])
        await ledger.accept_proof(1)

        with pytest.raises(MutationRejected):
            await coordinator.accept_selected()

        assert coordinator.selection == {1, 2}
        assert not ledger.proofs[2].accepted
        assert len(ledger.calls("accept_proof_batch")) == 1

    @pytest.mark.asyncio
    async def test_non_approved_needs_override(self):
        ledger, _, coordinator, _ = await setup(statuses={1: VerdictStatus.MANUAL_REVIEW})

        with pytest.raises(InvariantViolation):
            await coordinator.accept(1)
        assert ledger.calls("accept_proof") == []

        assert await coordinator.accept(1, override=True) is True
        assert ledger.proofs[1].accepted

    @pytest.mark.asyncio
    async def test_unvalidated_proof_needs_override(self):
        ledger, _, coordinator, _ = await setup()
        await reload(coordinator, ledger, verdicts=None)
        with pytest.raises(InvariantViolation):
            await coordinator.accept(1)

    @pytest.mark.asyncio
    async def test_accepting_accepted_proof_is_noop(self):
        ledger, _, coordinator, verdicts = await setup()
        assert await coordinator.accept(1) is True
        await reload(coordinator, ledger, verdicts)

        assert await coordinator.accept(1) is False
        assert len(ledger.calls("accept_proof")) == 1

    @pytest.mark.asyncio
    async def test_acceptance_is_not_recorded_locally(self):
        """Only the next refresh reports the proof as accepted."""
        ledger, _, coordinator, verdicts = await setup()
        await coordinator.accept(1)
        assert not coordinator.pending[0].record.accepted
        await reload(coordinator, ledger, verdicts)
        assert coordinator.pending[0].record.accepted

    @pytest.mark.asyncio
    async def test_submitted_accept_is_not_repeated_before_refresh(self):
        ledger, _, coordinator, _ = await setup()
        coordinator.select([1, 2])
        assert await coordinator.accept_selected() == [1, 2]

        assert await coordinator.accept(1) is False
        assert [p.order_id for p in coordinator.reviewable()] == [3]
        coordinator.select_all()
        assert coordinator.selection == {3}
        assert ledger.calls("accept_proof") == []
        assert len(ledger.calls("accept_proof_batch")) == 1


# ─────────────────────────────────────────────────────────────
# Reject
# ─────────────────────────────────────────────────────────────

class TestReject:

    @pytest.mark.asyncio
    async def test_reject_with_reasons(self):
        ledger, _, coordinator, _ = await setup()
        done = await coordinator.reject({3: "wrong asset", 1: "amount short"})

        assert done == [1, 3]
        assert [e.args for e in ledger.calls("reject_proof")] == [(1, "amount short"), (3, "wrong asset")]
        assert ledger.proofs[1].rejected_reason == "amount short"
        assert ledger.proofs[1].proof is None

    @pytest.mark.asyncio
    async def test_blank_reason_fails_before_any_mutation(self):
        ledger, _, coordinator, _ = await setup()
        with pytest.raises(InvariantViolation):
            await coordinator.reject({1: "wrong asset", 2: "   "})
        assert ledger.calls("reject_proof") == []

    @pytest.mark.asyncio
    async def test_rejecting_accepted_proof_issues_nothing(self):
        ledger, _, coordinator, verdicts = await setup()
        await coordinator.accept(2)
        await reload(coordinator, ledger, verdicts)

        with pytest.raises(InvariantViolation) as exc:
            await coordinator.reject({1: "bad", 2: "bad"})

        assert exc.value.details["order_id"] == 2
        assert ledger.calls("reject_proof") == []

    @pytest.mark.asyncio
    async def test_rejecting_just_accepted_proof_issues_nothing(self):
        """Accepted through this coordinator, not yet refreshed: still refused locally."""
        ledger, _, coordinator, _ = await setup()
        await coordinator.accept(2)

        with pytest.raises(InvariantViolation) as exc:
            await coordinator.reject({2: "bad"})

        assert exc.value.details["order_id"] == 2
        assert ledger.calls("reject_proof") == []
        assert ledger.proofs[2].accepted

    @pytest.mark.asyncio
    async def test_acceptance_poll_blocks_reject(self):
        """Accepted elsewhere, seen by the fast poll before the next full refresh."""
        ledger, _, coordinator, _ = await setup()
        await ledger.accept_proof(2)

        records = await LedgerMirror(ledger, clock=ledger.clock).refresh_acceptance([1, 2, 3])
        assert coordinator.apply_acceptance(records) == [2]
        assert coordinator.apply_acceptance(records) == []
        assert [p.order_id for p in coordinator.reviewable()] == [1, 3]

        with pytest.raises(InvariantViolation):
            await coordinator.reject({2: "bad"})
        assert ledger.calls("reject_proof") == []

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self):
        """Order 2 was accepted behind the coordinator's back; 3 is never attempted."""
        ledger, _, coordinator, _ = await setup()
        await ledger.accept_proof(2)

        with pytest.raises(MutationRejected) as exc:
            await coordinator.reject({1: "bad", 2: "bad", 3: "bad"})

        assert exc.value.details == {"order_id": 2, "rejected": "1"}
        assert [e.args[0] for e in ledger.calls("reject_proof")] == [1, 2]
        assert ledger.proofs[3].has_proof

    @pytest.mark.asyncio
    async def test_reject_selected(self):
        ledger, _, coordinator, _ = await setup()
        coordinator.select([2, 3])
        assert await coordinator.reject_selected("unreadable link") == [2, 3]
        assert coordinator.selection == frozenset()

    @pytest.mark.asyncio
    async def test_reject_selected_needs_selection(self):
        _, _, coordinator, _ = await setup()
        with pytest.raises(InvariantViolation):
            await coordinator.reject_selected("reason")


class TestPendingProof:

    @pytest.mark.asyncio
    async def test_inactive_state_blocks_review(self):
        _, clock, coordinator, _ = await setup()
        item = coordinator.pending[0]
        blocked = PendingProof(item.order, item.record, item.deadline, tge_activated=False)
        assert blocked.blocker(clock()) == "TGE not activated"
        assert not blocked.reviewable(clock())
