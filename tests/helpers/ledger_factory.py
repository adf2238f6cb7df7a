"""
tests/helpers/ledger_factory.py

Shared fixtures-as-functions for otcx tests: a pinned clock, well-known
addresses, and builders that drive an InMemoryLedger through the same
calls the escrow would see.
"""

import asyncio
from typing import Optional, Set

from otcx.core.exceptions import ReadFailure
from otcx.core.models import (
    AMOUNT_SCALE,
    POINTS_SENTINEL,
    PRICE_SCALE,
    RATIO_SCALE,
    Project,
)
from otcx.ledger.memory import InMemoryLedger
from otcx.ledger.schema import RawRecord

T0 = 1_700_000_000

SELLER = "0x" + "a1" * 20
BUYER  = "0x" + "b2" * 20
OTHER  = "0x" + "c3" * 20

POINTS_PROJECT_ID = "0x" + "11" * 32
TOKEN_PROJECT_ID  = "0x" + "22" * 32

DELIVERY_ASSET = "0x" + "d4" * 20
TOKEN_ASSET    = "0x" + "e5" * 20

EXPLORER = "https://sepolia.etherscan.io"


class FakeClock:
    """Callable clock pinned to `now`; advance() moves it forward."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def points(n) -> int:
    return int(n * AMOUNT_SCALE)


def usd(n) -> int:
    return int(n * PRICE_SCALE)


def ratio(n) -> int:
    return int(n * RATIO_SCALE)


def tx_hash(n: int) -> str:
    return f"0x{n:064x}"


def explorer_tx(n: int, base: str = EXPLORER) -> str:
    return f"{base}/tx/{tx_hash(n)}"


def points_project(project_id: str = POINTS_PROJECT_ID, slug: str = "grass", active: bool = True) -> Project:
    return Project(
        project_id    = project_id,
        slug          = slug,
        name          = slug.capitalize(),
        token_address = "0x" + "00" * 20,
        is_points     = True,
        metadata_uri  = "ipfs://bafy-" + slug,
        active        = active,
        added_at      = T0 - 86_400,
    )


def token_project(project_id: str = TOKEN_PROJECT_ID, slug: str = "zeta") -> Project:
    return Project(
        project_id    = project_id,
        slug          = slug,
        name          = slug.capitalize(),
        token_address = TOKEN_ASSET,
        is_points     = False,
        active        = True,
        added_at      = T0 - 86_400,
    )


def new_ledger(clock: Optional[FakeClock] = None, **kwargs) -> InMemoryLedger:
    ledger = InMemoryLedger(clock=clock or FakeClock(), **kwargs)
    ledger.add_project(points_project())
    ledger.add_project(token_project())
    return ledger


async def funded_order(
    ledger:     InMemoryLedger,
    project_id: str = POINTS_PROJECT_ID,
    amount:     int = points(1000),
    price:      int = usd(0.5),
    seller:     str = SELLER,
    buyer:      str = BUYER,
) -> int:
    """Seller lists, buyer takes: one FUNDED order."""
    order_id = await ledger.create_order(True, amount, price, project_id, seller)
    await ledger.take_order(order_id, buyer)
    return order_id


async def activate_points(
    ledger:     InMemoryLedger,
    window:     int = 3_600,
    conversion: int = RATIO_SCALE,
    project_id: str = POINTS_PROJECT_ID,
) -> None:
    await ledger.activate_project_tge(project_id, POINTS_SENTINEL, window, conversion)


async def submit_delivery(
    ledger:   InMemoryLedger,
    order_id: int,
    amount:   int,
    n:        Optional[int] = None,
    asset:    str = DELIVERY_ASSET,
    seller:   str = SELLER,
    buyer:    str = BUYER,
) -> str:
    """Record an on-chain delivery transfer and submit its explorer link as proof."""
    n = order_id if n is None else n
    ledger.record_transfer(tx_hash(n), seller, buyer, asset, amount)
    proof = explorer_tx(n)
    await ledger.submit_proof(order_id, seller, proof)
    return proof


# ─────────────────────────────────────────────────────────────
# Misbehaving readers
# ─────────────────────────────────────────────────────────────

class SlowLedger(InMemoryLedger):
    """get_order sleeps `delay` seconds for the orders in `slow`."""

    def __init__(self, *args, slow: Set[int] = frozenset(), delay: float = 5.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.slow = set(slow)
        self.delay = delay

    async def get_order(self, order_id: int) -> RawRecord:
        if order_id in self.slow:
            await asyncio.sleep(self.delay)
        return await super().get_order(order_id)


class FlakyLedger(InMemoryLedger):
    """Reads of the listed orders and projects fail with ReadFailure."""

    def __init__(self, *args, failing_orders: Set[int] = frozenset(), failing_projects: Set[str] = frozenset(), **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_orders = set(failing_orders)
        self.failing_projects = {p.lower() for p in failing_projects}

    async def get_order(self, order_id: int) -> RawRecord:
        if order_id in self.failing_orders:
            raise ReadFailure("node returned an error", {"order_id": order_id})
        return await super().get_order(order_id)

    async def tge_activated(self, project_id: str) -> bool:
        if project_id.lower() in self.failing_projects:
            raise ReadFailure("node returned an error", {"project_id": project_id})
        return await super().tge_activated(project_id)


def with_projects(ledger: InMemoryLedger) -> InMemoryLedger:
    ledger.add_project(points_project())
    ledger.add_project(token_project())
    return ledger
