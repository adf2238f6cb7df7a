"""
otcx: Basic Usage Example

Demonstrates:
- An in-memory escrow ledger with one points project
- Mirror refresh and market statistics
- Proof validation against the chosen explorer
- Bulk accept, then permissionless settlement
- A signed JSON audit report
"""

import asyncio
import tempfile
from pathlib import Path

from otcx.config import OtcxConfig
from otcx.core.crypto import ReportSigningKey
from otcx.core.models import POINTS_SENTINEL, Project
from otcx.ledger.memory import InMemoryLedger
from otcx.runtime.context import RuntimeContext
from otcx.settlement.conversion import format_fixed
from otcx.settlement.export import build_report, export_rows, verify_report, write_report

SELLER   = "0x" + "a1" * 20
BUYER    = "0x" + "b2" * 20
GRASS_ID = "0x" + "11" * 32
DELIVERY = "0x" + "d4" * 20
EXPLORER = "https://sepolia.etherscan.io"


class Clock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


async def main():
    """Basic otcx usage."""

    print("=" * 60)
    print("otcx: Basic Usage Example")
    print("=" * 60)
    print()

    # 1. Ledger with one points project
    print("1. Listing and filling an order...")
    clock = Clock(1_700_000_000)
    ledger = InMemoryLedger(clock=clock)
    ledger.add_project(Project(
        project_id    = GRASS_ID,
        slug          = "grass",
        name          = "Grass",
        token_address = "0x" + "00" * 20,
        is_points     = True,
    ))
    order_id = await ledger.create_order(True, 1000 * 10**18, 500_000, GRASS_ID, SELLER)
    await ledger.take_order(order_id, BUYER)
    print(f"   order {order_id}: 1000 points @ 0.5, funded by {BUYER[:10]}...")
    print()

    # 2. Runtime over the ledger
    config = OtcxConfig.from_dict({
        "explorers": {"default": EXPLORER, "delivery_assets": {"grass": DELIVERY}},
    })
    runtime = RuntimeContext.from_config(config, ledger=ledger, clock=clock)

    view = await runtime.review("grass")
    print("2. Market")
    print(f"   last price   {format_fixed(view.market.last_price, 6)}")
    print(f"   trades       {view.market.trade_count}")
    print(f"   bucket       {view.classified[0].bucket.value}")
    print()

    # 3. TGE at 1.5 tokens per point; seller delivers 1500 and submits proof
    print("3. TGE and delivery...")
    await ledger.activate_project_tge(GRASS_ID, POINTS_SENTINEL, 3_600, 15 * 10**17)
    tx_hash = "0x" + "ab" * 32
    ledger.record_transfer(tx_hash, SELLER, BUYER, DELIVERY, 1500 * 10**18)
    await ledger.submit_proof(order_id, SELLER, f"{EXPLORER}/tx/{tx_hash}")

    view = await runtime.review("grass")
    item = view.pending[0]
    print(f"   verdict      {item.verdict.status.value}")
    print(f"   reviewable   {item.blocker(clock()) or 'yes'}")
    print()

    # 4. After the deadline: bulk accept, then anyone may settle
    print("4. Review window open...")
    clock.now += 3_600
    view = await runtime.review("grass")
    coordinator = runtime.coordinator_for(view.project)
    coordinator.select_approved_only()
    accepted = await coordinator.accept_selected()
    print(f"   accepted     {accepted}")

    view = await runtime.review("grass")
    print(f"   actions      {view.classified[0].actions.enabled()}")
    await ledger.settle_order_manual(order_id)
    print(f"   status       {ledger.orders[order_id].status.value}")
    print()

    # 5. Signed audit report
    print("5. Audit report...")
    key = ReportSigningKey.generate()
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "report.json"
        rows = export_rows(view.pending, EXPLORER)
        write_report(build_report(rows, GRASS_ID, clock(), key), path)
        result = verify_report(path)
    print(f"   rows         {result['rows']}")
    print(f"   signed by    {result['public_key'][:16]}...")
    print()
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
