"""
tests/test_end_to_end.py

RuntimeContext wired over an InMemoryLedger, driven through a whole
points settlement:

    list -> fill -> TGE at ratio 1.5 -> seller delivers 1500 points
    -> proof APPROVED -> admin bulk accept -> anyone settles
"""

import pytest

from otcx.config import OtcxConfig
from otcx.core.exceptions import ConfigError, ReadFailure
from otcx.core.models import Bucket, OrderStatus, VerdictStatus
from otcx.runtime.context import RuntimeContext, build_market_overview

from tests.helpers.ledger_factory import (
    DELIVERY_ASSET,
    EXPLORER,
    OTHER,
    POINTS_PROJECT_ID,
    FakeClock,
    activate_points,
    funded_order,
    new_ledger,
    points,
    ratio,
    submit_delivery,
)

WINDOW = 3_600


def config(**explorers) -> OtcxConfig:
    return OtcxConfig.from_dict({
        "explorers": {
            "default":         EXPLORER,
            "delivery_assets": {"grass": DELIVERY_ASSET},
            **explorers,
        },
        "refresh": {"timeout": 5},
    })


async def settled_market(delivered: int = points(1500)):
    clock = FakeClock()
    ledger = new_ledger(clock)
    order_id = await funded_order(ledger, amount=points(1000))
    await activate_points(ledger, window=WINDOW, conversion=ratio(1.5))
    await submit_delivery(ledger, order_id, delivered)
    runtime = RuntimeContext.from_config(config(), ledger=ledger, clock=clock)
    return ledger, clock, runtime, order_id


# ─────────────────────────────────────────────────────────────
# Full flow
# ─────────────────────────────────────────────────────────────

class TestPointsSettlement:

    @pytest.mark.asyncio
    async def test_approve_accept_settle(self):
        ledger, clock, runtime, order_id = await settled_market()

        view = await runtime.review("grass")
        item = view.pending[0]
        assert item.verdict_status is VerdictStatus.APPROVED
        assert item.verdict.transaction.amount == points(1500)
        assert not item.reviewable(clock())

        clock.advance(WINDOW)
        view = await runtime.review("grass")
        coordinator = runtime.coordinator_for(view.project)
        coordinator.select_approved_only()
        assert await coordinator.accept_selected() == [order_id]
        assert len(ledger.calls("accept_proof")) == 1

        view = await runtime.review(POINTS_PROJECT_ID)
        assert view.pending[0].record.accepted
        [c] = view.classified
        assert c.bucket is Bucket.IN_SETTLEMENT
        assert c.actions.can_settle

        await ledger.settle_order_manual(order_id)
        view = await runtime.review("grass")
        assert view.classified[0].order.status is OrderStatus.SETTLED
        assert view.pending == []

    @pytest.mark.asyncio
    async def test_short_delivery_is_not_approved(self):
        """1000 points delivered where ratio 1.5 requires 1500."""
        _, _, runtime, _ = await settled_market(delivered=points(1000))
        view = await runtime.review("grass")
        verdict = view.pending[0].verdict
        assert verdict.status is VerdictStatus.NOT_APPROVED
        assert len(verdict.errors) == 1
        assert verdict.errors[0].startswith("amount mismatch")

    @pytest.mark.asyncio
    async def test_project_explorer_from_config(self):
        """A proof on another explorer host is NOT_APPROVED without resolving."""
        clock = FakeClock()
        ledger = new_ledger(clock)
        order_id = await funded_order(ledger)
        await activate_points(ledger, window=WINDOW)
        await submit_delivery(ledger, order_id, points(1000))
        cfg = config(projects={"grass": "https://arbiscan.io"})
        runtime = RuntimeContext.from_config(cfg, ledger=ledger, clock=clock)

        view = await runtime.review("grass")

        assert runtime.session_for(view.project).explorer_url == "https://arbiscan.io"
        verdict = view.pending[0].verdict
        assert verdict.status is VerdictStatus.NOT_APPROVED
        assert verdict.source_matches is False

    @pytest.mark.asyncio
    async def test_no_validation_before_tge(self):
        clock = FakeClock()
        ledger = new_ledger(clock)
        await funded_order(ledger)
        runtime = RuntimeContext.from_config(config(), ledger=ledger, clock=clock)
        view = await runtime.review("grass")
        assert view.pending == []
        assert view.classified[0].bucket is Bucket.FILLED


# ─────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────

class TestRuntime:

    def test_needs_a_ledger(self):
        with pytest.raises(ConfigError):
            RuntimeContext.from_config(OtcxConfig())

    def test_missing_state_file_is_empty_ledger(self, tmp_path):
        runtime = RuntimeContext.from_config(OtcxConfig(), state_path=tmp_path / "absent.yaml")
        assert runtime.reader.projects == {}

    @pytest.mark.asyncio
    async def test_unknown_project(self):
        runtime = RuntimeContext.from_config(OtcxConfig(), ledger=new_ledger())
        with pytest.raises(ReadFailure) as exc:
            await runtime.resolve_project("nope")
        assert exc.value.message == "could not load project nope"

    @pytest.mark.asyncio
    async def test_one_coordinator_per_project(self):
        runtime = RuntimeContext.from_config(OtcxConfig(), ledger=new_ledger())
        project = await runtime.resolve_project("grass")
        again = await runtime.resolve_project(POINTS_PROJECT_ID)
        assert runtime.coordinator_for(project) is runtime.coordinator_for(again)
        assert runtime.coordinator_for(project).session.explorer_url is None

    @pytest.mark.asyncio
    async def test_market_overview(self):
        ledger = new_ledger()
        await funded_order(ledger)
        await ledger.create_order(False, points(10), 1_000_000, POINTS_PROJECT_ID, OTHER)
        runtime = RuntimeContext.from_config(OtcxConfig(), ledger=ledger)

        overview = build_market_overview(await runtime.snapshot(), now=0)

        grass = overview.views[POINTS_PROJECT_ID]
        assert grass.market.trade_count == 1
        assert grass.market.best_bid == 1_000_000
        assert overview.global_stats.project_count == 1
        assert overview.missing == []

    @pytest.mark.asyncio
    async def test_acceptance_poll_between_refreshes(self):
        ledger, clock, runtime, order_id = await settled_market()
        clock.advance(WINDOW)
        view = await runtime.review("grass")
        assert await runtime.poll_acceptance(view.project) == []

        await ledger.accept_proof(order_id)

        assert await runtime.poll_acceptance(view.project) == [order_id]
        assert runtime.coordinator_for(view.project).pending[0].record.accepted
        assert runtime.coordinator_for(view.project).reviewable() == []
        assert await runtime.poll_acceptance(view.project) == []
