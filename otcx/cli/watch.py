"""
otcx/cli/watch.py

otcx watch: periodic refresh of one project's market and proofs.

Usage:
    otcx watch grass                     Refresh every refresh.order_interval seconds
    otcx watch grass --interval 10
    otcx watch grass --cycles 3          Stop after three cycles

Two schedules run side by side: the full refresh, and a fast poll of
proof acceptance every refresh.acceptance_interval seconds. Each cycle
is cancellable; a cycle that finishes after a newer one has started is
dropped instead of printed.
"""

from typing import List, Optional

import click

from otcx.cli.common import _Color, emit_missing, pass_state, price, run_async, run_command
from otcx.core.models import Project
from otcx.core.time import iso_timestamp
from otcx.runtime.context import ProjectView, RuntimeContext
from otcx.runtime.refresh import CancellationToken, RefreshScheduler, SchedulerStats


def _print_cycle(view: ProjectView) -> None:
    m = view.market
    reviewable = sum(1 for p in view.pending if p.reviewable(view.taken_at))
    emit_missing(view.missing)
    click.echo(
        f"{_Color.dim(iso_timestamp(view.taken_at))}  {view.label}  "
        f"bid {price(m.best_bid)}  ask {price(m.best_ask)}  "
        f"open {m.open_order_count or 0}  trades {m.trade_count or 0}  "
        f"proofs {len(view.pending)} ({reviewable} reviewable)"
    )


async def watch_project(
    runtime:             RuntimeContext,
    project:             Project,
    interval:            float,
    acceptance_interval: float,
    cycles:              Optional[int] = None,
) -> SchedulerStats:
    """
    Run the full refresh for `cycles` cycles (or until cancelled) with the
    acceptance poll alongside it. Returns the full refresh's stats.
    """
    label = project.slug or project.project_id

    async def fetch(token: CancellationToken) -> ProjectView:
        return await runtime.review(project.project_id, token)

    async def poll(token: CancellationToken) -> List[int]:
        return await runtime.poll_acceptance(project, token)

    def print_accepted(order_ids: List[int]) -> None:
        if order_ids:
            ids = ", ".join(str(i) for i in order_ids)
            click.echo(f"{label}  {_Color.green('accepted')} {ids}")

    orders = RefreshScheduler(
        fetch     = fetch,
        on_result = _print_cycle,
        interval  = interval,
        name      = f"watch {label}",
    )
    acceptance = RefreshScheduler(
        fetch     = poll,
        on_result = print_accepted,
        interval  = acceptance_interval,
        name      = f"acceptance {label}",
    )
    acceptance.start()
    try:
        return await orders.run(cycles)
    finally:
        await acceptance.stop()


@click.command("watch")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--interval",
    type    = float,
    default = None,
    metavar = "SECONDS",
    help    = "Refresh period. Default: refresh.order_interval from config.",
)
@click.option(
    "--cycles",
    type    = click.IntRange(min=1),
    default = None,
    metavar = "N",
    help    = "Stop after N cycles. Default: run until interrupted.",
)
@pass_state
def watch_command(state, project_ref: str, interval: Optional[float], cycles: Optional[int]) -> None:
    """Refresh one project on a schedule and print a line per cycle."""
    if interval is not None and interval <= 0:
        raise click.BadParameter("must be positive", param_hint="--interval")

    def body() -> None:
        runtime = state.runtime()
        refresh = state.config.refresh

        async def main() -> SchedulerStats:
            project = await runtime.resolve_project(project_ref)
            return await watch_project(
                runtime, project,
                interval            = interval or refresh.order_interval,
                acceptance_interval = refresh.acceptance_interval,
                cycles              = cycles,
            )

        try:
            stats = run_async(main())
        except KeyboardInterrupt:
            click.echo(_Color.dim("stopped"))
            return
        if stats.failed:
            click.echo(_Color.yellow(f"{stats.failed} cycle(s) failed; see log"), err=True)

    run_command("human", body)
