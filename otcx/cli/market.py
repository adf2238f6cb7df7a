"""
otcx/cli/market.py

otcx market / otcx orders: read-only views over one ledger snapshot.

Usage:
    otcx market                         Every project, plus venue totals
    otcx market --project grass         One project
    otcx market --format json           Machine-readable JSON
    otcx orders grass                   Orders by bucket
    otcx orders grass --caller 0xabc... Actions available to one party

Anything that could not be read is reported as "could not load <item>"
and left out; the rest of the output is still printed.
"""

import json
from typing import Any, Dict, Optional

import click

from otcx.cli.common import (
    _Color,
    amount,
    emit_missing,
    pass_state,
    price,
    run_async,
    run_command,
)
from otcx.core.models import Bucket
from otcx.market.aggregator import GlobalStats, MarketSnapshot
from otcx.market.classifier import classify
from otcx.runtime.context import ProjectView, build_market_overview, build_project_view
from otcx.settlement.conversion import format_remaining, remaining


# ── Rendering ─────────────────────────────────────────────────

def _market_dict(market: MarketSnapshot) -> Dict[str, Any]:
    return {
        "best_bid":         market.best_bid,
        "best_ask":         market.best_ask,
        "spread_pct":       str(market.spread_pct) if market.spread_pct is not None else None,
        "mid_market":       str(market.mid_market) if market.mid_market is not None else None,
        "last_price":       market.last_price,
        "open_order_count": market.open_order_count,
        "trade_count":      market.trade_count,
        "realized_volume":  market.realized_volume,
        "potential_volume": market.potential_volume,
        "total_volume":     market.total_volume,
    }


def _global_dict(stats: Optional[GlobalStats]) -> Optional[Dict[str, Any]]:
    if stats is None:
        return None
    return {
        "project_count":    stats.project_count,
        "trade_count":      stats.trade_count,
        "open_order_count": stats.open_order_count,
        "realized_volume":  stats.realized_volume,
        "potential_volume": stats.potential_volume,
        "total_volume":     stats.total_volume,
    }


def _render_market(view: ProjectView, now: int) -> None:
    m = view.market
    click.echo(_Color.bold(view.label))
    if view.state is not None and view.state.tge_activated:
        click.echo(f"  settlement   {format_remaining(remaining(view.state.settlement_deadline, now))}")
    if not m.has_market:
        click.echo(_Color.dim("  no orders"))
        return
    spread = f"{m.spread_pct:.2f}%" if m.spread_pct is not None else "-"
    click.echo(f"  best bid     {price(m.best_bid)}")
    click.echo(f"  best ask     {price(m.best_ask)}")
    click.echo(f"  spread       {spread}")
    click.echo(f"  last price   {price(m.last_price)}")
    click.echo(f"  open orders  {m.open_order_count}")
    click.echo(f"  trades       {m.trade_count}")
    click.echo(f"  volume       {price(m.total_volume)} "
               f"(realized {price(m.realized_volume)}, open {price(m.potential_volume)})")


def _render_global(stats: Optional[GlobalStats]) -> None:
    click.echo(_Color.bold("All markets"))
    if stats is None:
        click.echo(_Color.dim("  no orders"))
        return
    click.echo(f"  projects     {stats.project_count}")
    click.echo(f"  open orders  {stats.open_order_count}")
    click.echo(f"  trades       {stats.trade_count}")
    click.echo(f"  volume       {price(stats.total_volume)}")


# ── Commands ──────────────────────────────────────────────────

@click.command("market")
@click.option(
    "--project", "project_ref",
    default = None,
    metavar = "REF",
    help    = "Project id or slug. Default: every project.",
)
@click.option(
    "--format", "fmt",
    type         = click.Choice(["human", "json"]),
    default      = "human",
    show_default = True,
    help         = "Output format.",
)
@pass_state
def market_command(state, project_ref: Optional[str], fmt: str) -> None:
    """
    Market statistics per project and across the venue.

    \b
    Examples:
      otcx market
      otcx market --project grass --format json
    """
    def body() -> None:
        runtime = state.runtime()
        now = state.clock()

        if project_ref is not None:
            project = run_async(runtime.resolve_project(project_ref))
            snapshot = run_async(runtime.snapshot(project.project_id))
            views = {project.project_id: build_project_view(snapshot, project.project_id, now=now)}
            stats = None
        else:
            snapshot = run_async(runtime.snapshot())
            overview = build_market_overview(snapshot, now)
            views, stats = overview.views, overview.global_stats

        if fmt == "json":
            click.echo(json.dumps({
                "projects": {
                    pid: {"name": v.label, **_market_dict(v.market)} for pid, v in views.items()
                },
                "global":   _global_dict(stats),
                "missing":  snapshot.missing_items(),
            }, indent=2))
            return

        emit_missing(snapshot.missing_items())
        for view in views.values():
            _render_market(view, now)
        if project_ref is None:
            _render_global(stats)

    run_command(fmt, body)


_BUCKET_ORDER = (Bucket.OPEN, Bucket.FILLED, Bucket.IN_SETTLEMENT, Bucket.ENDED)


@click.command("orders")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--caller",
    default = None,
    metavar = "ADDRESS",
    help    = "Show the actions this address could take.",
)
@click.option(
    "--format", "fmt",
    type         = click.Choice(["human", "json"]),
    default      = "human",
    show_default = True,
    help         = "Output format.",
)
@pass_state
def orders_command(state, project_ref: str, caller: Optional[str], fmt: str) -> None:
    """
    Orders of one project, grouped by bucket, with available actions.
    """
    def body() -> None:
        runtime = state.runtime()
        now = state.clock()
        project = run_async(runtime.resolve_project(project_ref))
        snapshot = run_async(runtime.snapshot(project.project_id))
        view = build_project_view(snapshot, project.project_id, now=now, caller=caller)

        classified = view.classified
        settle_state = view.state
        if caller and settle_state is not None and settle_state.tge_activated \
                and not settle_state.is_points_path:
            allowance = run_async(runtime.reader.allowance(settle_state.settlement_asset, caller))
            classified = [
                classify(
                    c.order, project, settle_state,
                    caller=caller, now=now,
                    proof=snapshot.proofs.get(c.order.id), allowance=allowance,
                )
                for c in classified
            ]

        if fmt == "json":
            click.echo(json.dumps({
                "project": project.project_id,
                "orders": [
                    {
                        "id":         c.order.id,
                        "side":       "sell" if c.order.is_sell else "buy",
                        "status":     c.order.status.value,
                        "bucket":     c.bucket.value,
                        "amount":     c.order.amount,
                        "unit_price": c.order.unit_price,
                        "actions":    c.actions.enabled(),
                    }
                    for c in classified
                ],
                "missing": snapshot.missing_items(),
            }, indent=2))
            return

        emit_missing(snapshot.missing_items())
        click.echo(_Color.bold(view.label))
        for bucket in _BUCKET_ORDER:
            rows = [c for c in classified if c.bucket is bucket]
            if not rows:
                continue
            click.echo(f"  {bucket.value} ({len(rows)})")
            for c in rows:
                o = c.order
                actions = ",".join(c.actions.enabled()) or "-"
                side = "sell" if o.is_sell else "buy "
                click.echo(
                    f"    #{o.id:<5} {side} {amount(o.amount):>14} @ {price(o.unit_price):>10}"
                    f"  {o.status.value:<9} {_Color.dim(actions)}"
                )

    run_command(fmt, body)
