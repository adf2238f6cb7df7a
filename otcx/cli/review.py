"""
otcx/cli/review.py

otcx review: administrator review of submitted settlement proofs.

Usage:
    otcx review list grass                       Pending proofs with verdicts
    otcx review accept grass --approved-only     Bulk accept every APPROVED proof
    otcx review accept grass --ids 3,7           Bulk accept selected APPROVED proofs
    otcx review accept grass --override 9        Accept one non-APPROVED proof
    otcx review reject grass --ids 3,7 --reason "wrong recipient"
    otcx review reject grass --order 3 "wrong recipient" --order 7 "amount short"

Each invocation refreshes the project, validates every unaccepted proof,
then acts. Acceptance is never recorded locally: the next refresh reads
it back from the ledger.

Exit codes:
    0  OK
    1  Nothing eligible, or the ledger declined the mutation
    2  Usage or configuration error
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import click

from otcx.cli.common import (
    EXIT_USAGE,
    _Color,
    amount,
    emit_error,
    emit_missing,
    pass_state,
    run_async,
    run_command,
)
from otcx.core.models import VerdictStatus
from otcx.settlement.conversion import format_remaining, remaining
from otcx.settlement.coordinator import PendingProof


def _parse_ids(text: Optional[str]) -> List[int]:
    if not text:
        return []
    try:
        return sorted({int(part) for part in text.split(",") if part.strip()})
    except ValueError:
        raise click.BadParameter("expected comma-separated order ids", param_hint="--ids")


def _load(state, project_ref: str):
    runtime = state.runtime()
    project = run_async(runtime.resolve_project(project_ref))
    view = run_async(runtime.review(project.project_id))
    return runtime.coordinator_for(project), view


# ── Rendering ─────────────────────────────────────────────────

_VERDICT_COLOR = {
    VerdictStatus.APPROVED:      _Color.green,
    VerdictStatus.NOT_APPROVED:  _Color.red,
    VerdictStatus.MANUAL_REVIEW: _Color.yellow,
}


def _pending_dict(item: PendingProof, now: int) -> Dict[str, Any]:
    verdict = item.verdict
    return {
        "order_id":   item.order_id,
        "seller":     item.order.seller,
        "buyer":      item.order.buyer,
        "amount":     item.order.amount,
        "proof":      item.record.proof,
        "accepted":   item.record.accepted,
        "verdict":    verdict.status.value if verdict else None,
        "errors":     list(verdict.errors) if verdict else [],
        "reviewable": item.reviewable(now),
        "blocker":    item.blocker(now),
    }


def _render_pending(item: PendingProof, now: int) -> None:
    if item.record.accepted:
        status = _Color.dim("ACCEPTED")
    elif item.verdict is None:
        status = _Color.dim("UNVALIDATED")
    else:
        status = _VERDICT_COLOR[item.verdict.status](item.verdict.status.value)

    click.echo(f"  #{item.order_id:<5} {amount(item.order.amount):>14}  {status}")
    click.echo(f"         proof   {item.record.proof or '-'}")
    if item.verdict is not None:
        for error in item.verdict.errors:
            click.echo(f"         {_Color.red('x')} {error}")
    blocker = item.blocker(now)
    if blocker and not item.record.accepted:
        click.echo(_Color.dim(f"         not reviewable: {blocker}"))


# ── Commands ──────────────────────────────────────────────────

@click.group("review")
def review_group() -> None:
    """
    Review submitted proofs for points settlement.

    \b
    Commands:
      list      Pending proofs with validation verdicts.
      accept    Accept proofs (bulk for APPROVED, --override for one other).
      reject    Reject proofs; every rejection needs a reason.
    """
    pass


@review_group.command("list")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--format", "fmt",
    type         = click.Choice(["human", "json"]),
    default      = "human",
    show_default = True,
    help         = "Output format.",
)
@pass_state
def list_command(state, project_ref: str, fmt: str) -> None:
    """Pending proofs of one project and whether each can be reviewed now."""
    def body() -> None:
        coordinator, view = _load(state, project_ref)
        now = state.clock()
        pending = coordinator.pending

        if fmt == "json":
            click.echo(json.dumps({
                "project":  view.project_id,
                "deadline": view.state.settlement_deadline if view.state else None,
                "explorer": coordinator.session.explorer_url,
                "pending":  [_pending_dict(p, now) for p in pending],
                "missing":  view.missing,
            }, indent=2))
            return

        emit_missing(view.missing)
        click.echo(_Color.bold(view.label))
        if view.state is not None and view.state.tge_activated:
            left = remaining(view.state.settlement_deadline, now)
            click.echo(f"  deadline  {format_remaining(left)}")
        click.echo(f"  explorer  {coordinator.session.explorer_url or '-'}")
        if not pending:
            click.echo(_Color.dim("  no submitted proofs"))
        for item in pending:
            _render_pending(item, now)

    run_command(fmt, body)


@review_group.command("accept")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--ids",
    default = None,
    metavar = "ID[,ID...]",
    help    = "Select these orders for bulk accept.",
)
@click.option(
    "--approved-only",
    is_flag = True,
    default = False,
    help    = "Select every reviewable APPROVED proof for bulk accept.",
)
@click.option(
    "--override", "override_id",
    type    = int,
    default = None,
    metavar = "ID",
    help    = "Accept one proof whatever its verdict.",
)
@pass_state
def accept_command(
    state,
    project_ref:   str,
    ids:           Optional[str],
    approved_only: bool,
    override_id:   Optional[int],
) -> None:
    """
    Accept proofs. Bulk accept covers only selected APPROVED proofs and
    is submitted as a single ledger mutation.
    """
    chosen = sum(bool(x) for x in (ids, approved_only, override_id is not None))
    if chosen != 1:
        emit_error("pass exactly one of --ids, --approved-only, --override")
        raise SystemExit(EXIT_USAGE)
    order_ids = _parse_ids(ids)

    def body() -> None:
        coordinator, _ = _load(state, project_ref)

        if override_id is not None:
            issued = run_async(coordinator.accept(override_id, override=True))
            state.save()
            if issued:
                click.echo(_Color.green(f"accepted order {override_id}"))
            else:
                click.echo(_Color.dim(f"order {override_id} already accepted"))
            return

        if approved_only:
            coordinator.select_approved_only()
        else:
            coordinator.select(order_ids)

        accepted = run_async(coordinator.accept_selected())
        state.save()
        click.echo(_Color.green(f"accepted {len(accepted)} proof(s): {', '.join(map(str, accepted))}"))

    run_command("human", body)


def _reject_reasons(
    ids:    Optional[str],
    reason: Optional[str],
    pairs:  Tuple[Tuple[int, str], ...],
) -> Dict[int, str]:
    if pairs and (ids or reason):
        raise click.UsageError("use either --order ID REASON or --ids with --reason")
    if pairs:
        return {order_id: text for order_id, text in pairs}
    if not ids or reason is None:
        raise click.UsageError("--ids needs --reason")
    return {order_id: reason for order_id in _parse_ids(ids)}


@review_group.command("reject")
@click.argument("project_ref", metavar="PROJECT")
@click.option(
    "--ids",
    default = None,
    metavar = "ID[,ID...]",
    help    = "Orders to reject with the same --reason.",
)
@click.option(
    "--reason",
    default = None,
    metavar = "TEXT",
    help    = "Rejection reason shared by every --ids order.",
)
@click.option(
    "--order", "pairs",
    type     = (int, str),
    multiple = True,
    metavar  = "ID REASON",
    help     = "One order and its own reason. Repeatable.",
)
@pass_state
def reject_command(
    state,
    project_ref: str,
    ids:         Optional[str],
    reason:      Optional[str],
    pairs:       Tuple[Tuple[int, str], ...],
) -> None:
    """
    Reject proofs. Every rejection carries a non-empty reason; accepted
    proofs cannot be rejected.
    """
    reasons = _reject_reasons(ids, reason, pairs)

    def body() -> None:
        coordinator, _ = _load(state, project_ref)
        try:
            rejected = run_async(coordinator.reject(reasons))
        finally:
            state.save()
        click.echo(_Color.yellow(f"rejected {len(rejected)} proof(s): {', '.join(map(str, rejected))}"))

    run_command("human", body)
