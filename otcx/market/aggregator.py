"""
otcx/market/aggregator.py

Market Aggregator: order book and summary statistics per project.

    open book      OPEN orders, split by side
                     asks  ascending by unit_price   (best ask = lowest)
                     bids  descending by unit_price  (best bid = highest)
                     equal prices: lower order id first
    trade history  FUNDED or SETTLED orders, descending by id
                     last_price = unit_price of the highest-id trade

Volumes are reported in stable units (6 decimals):
    realized_volume   sum of total value over trade history
    potential_volume  sum of total value over the open book
    total_volume      realized + potential

Realized and potential are always exposed separately.

A project with no orders at all has no market: every statistic is None,
which is distinct from a market whose values happen to be zero.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from otcx.core.models import Order, OrderStatus

_TRADE_STATUSES = frozenset({OrderStatus.FUNDED, OrderStatus.SETTLED})


@dataclass(frozen=True)
class MarketSnapshot:
    best_bid:         Optional[int] = None
    best_ask:         Optional[int] = None
    spread_pct:       Optional[Decimal] = None
    mid_market:       Optional[Decimal] = None
    last_price:       Optional[int] = None
    open_order_count: Optional[int] = None
    trade_count:      Optional[int] = None
    realized_volume:  Optional[int] = None
    potential_volume: Optional[int] = None
    total_volume:     Optional[int] = None
    bids:             List[Order] = field(default_factory=list)
    asks:             List[Order] = field(default_factory=list)
    trades:           List[Order] = field(default_factory=list)

    @property
    def has_market(self) -> bool:
        return self.open_order_count is not None


@dataclass(frozen=True)
class GlobalStats:
    project_count:    int
    trade_count:      int
    open_order_count: int
    realized_volume:  int
    potential_volume: int

    @property
    def total_volume(self) -> int:
        return self.realized_volume + self.potential_volume


def orders_for_project(orders: Iterable[Order], project_id: str) -> List[Order]:
    key = project_id.lower()
    return [o for o in orders if o.project_id.lower() == key]


def aggregate(orders: Iterable[Order]) -> MarketSnapshot:
    """Build the order book and statistics for one project's orders."""
    orders = list(orders)
    if not orders:
        return MarketSnapshot()

    open_orders = [o for o in orders if o.status is OrderStatus.OPEN]
    asks = sorted(
        (o for o in open_orders if o.is_sell),
        key=lambda o: (o.unit_price, o.id),
    )
    bids = sorted(
        (o for o in open_orders if not o.is_sell),
        key=lambda o: (-o.unit_price, o.id),
    )
    trades = sorted(
        (o for o in orders if o.status in _TRADE_STATUSES),
        key=lambda o: o.id,
        reverse=True,
    )

    best_ask = asks[0].unit_price if asks else None
    best_bid = bids[0].unit_price if bids else None

    spread_pct = None
    mid_market = None
    if best_ask is not None and best_bid is not None:
        if best_bid > 0:
            spread_pct = Decimal(best_ask - best_bid) / Decimal(best_bid) * 100
        mid_market = Decimal(best_ask + best_bid) / 2

    realized = sum(o.total_value for o in trades)
    potential = sum(o.total_value for o in open_orders)

    return MarketSnapshot(
        best_bid         = best_bid,
        best_ask         = best_ask,
        spread_pct       = spread_pct,
        mid_market       = mid_market,
        last_price       = trades[0].unit_price if trades else None,
        open_order_count = len(open_orders),
        trade_count      = len(trades),
        realized_volume  = realized,
        potential_volume = potential,
        total_volume     = realized + potential,
        bids             = bids,
        asks             = asks,
        trades           = trades,
    )


def aggregate_global(snapshots: Iterable[MarketSnapshot]) -> Optional[GlobalStats]:
    """Venue-wide totals over per-project snapshots. None when no project has a market."""
    markets = [s for s in snapshots if s.has_market]
    if not markets:
        return None
    return GlobalStats(
        project_count    = len(markets),
        trade_count      = sum(s.trade_count for s in markets),
        open_order_count = sum(s.open_order_count for s in markets),
        realized_volume  = sum(s.realized_volume for s in markets),
        potential_volume = sum(s.potential_volume for s in markets),
    )
