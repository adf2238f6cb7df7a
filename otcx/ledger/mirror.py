"""
otcx/ledger/mirror.py

Ledger Mirror: reads raw ledger state into a typed LedgerSnapshot.

═══════════════════════════════════════════════════════════════════
REFRESH CONTRACT
═══════════════════════════════════════════════════════════════════
1. Every read is issued concurrently, bounded by a semaphore, and the
   whole cycle is raced against ONE overall timeout.
2. A read that fails or misses the timeout is omitted from the snapshot
   and listed in snapshot.missing. The rest of the snapshot survives.
3. A value that could not be read stays None. It is never defaulted to
   False or zero.
4. Cancelling the cycle's token cancels in-flight reads; refresh() then
   raises RefreshCancelled and produces no snapshot.
5. reconcile() never lets an order move backward in its lifecycle.
═══════════════════════════════════════════════════════════════════

Read phases (each phase concurrent, phases sequential):
    1. globals, project ids, order count
    2. project records + settlement state, order records
    3. proof records for FUNDED orders
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Sequence

from otcx.core.exceptions import ReadFailure, RefreshCancelled, SchemaError
from otcx.core.models import (
    GlobalParams,
    Order,
    OrderStatus,
    Project,
    ProjectSettlementState,
    ProofRecord,
)
from otcx.core.time import Clock, now_unix
from otcx.ledger.interface import LedgerReader
from otcx.ledger.schema import ORDER_SCHEMA_V4, PROJECT_SCHEMA_V2, OrderSchema, ProjectSchema
from otcx.runtime.refresh import CancellationToken

logger = logging.getLogger(__name__)

_MISSING = object()

Read = Callable[[], Awaitable[Any]]


# ─────────────────────────────────────────────────────────────
# Snapshot
# ─────────────────────────────────────────────────────────────

@dataclass
class LedgerSnapshot:
    """Everything one refresh cycle managed to read."""

    taken_at:    int
    params:      GlobalParams = field(default_factory=GlobalParams)
    order_count: Optional[int] = None
    projects:    Dict[str, Project] = field(default_factory=dict)
    states:      Dict[str, ProjectSettlementState] = field(default_factory=dict)
    orders:      Dict[int, Order] = field(default_factory=dict)
    proofs:      Dict[int, ProofRecord] = field(default_factory=dict)
    missing:     List[ReadFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing

    def project(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id.lower())

    def project_by_slug(self, slug: str) -> Optional[Project]:
        for project in self.projects.values():
            if project.slug.lower() == slug.lower():
                return project
        return None

    def state_for(self, project_id: str) -> Optional[ProjectSettlementState]:
        return self.states.get(project_id.lower())

    def orders_for(self, project_id: str) -> List[Order]:
        key = project_id.lower()
        return sorted(
            (o for o in self.orders.values() if o.project_id.lower() == key),
            key=lambda o: o.id,
        )

    def missing_items(self) -> List[str]:
        return [str(f.details.get("item", f.message)) for f in self.missing]


def _failure(item: str, reason: str) -> ReadFailure:
    return ReadFailure(f"could not load {item}", {"item": item, "reason": reason})


# ─────────────────────────────────────────────────────────────
# Mirror
# ─────────────────────────────────────────────────────────────

class LedgerMirror:
    """
    Periodic reader over a LedgerReader.

    Args:
        reader:          ledger read interface
        timeout:         overall budget for one refresh, seconds
        max_concurrency: maximum reads in flight at once
    """

    def __init__(
        self,
        reader:          LedgerReader,
        timeout:         float = 30.0,
        max_concurrency: int = 16,
        order_schema:    OrderSchema = ORDER_SCHEMA_V4,
        project_schema:  ProjectSchema = PROJECT_SCHEMA_V2,
        clock:           Clock = now_unix,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.reader = reader
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.order_schema = order_schema
        self.project_schema = project_schema
        self.clock = clock

    # ── Public API ────────────────────────────────────────────

    async def refresh(
        self,
        project_id: Optional[str] = None,
        token:      Optional[CancellationToken] = None,
    ) -> LedgerSnapshot:
        """
        Read a full snapshot, optionally scoped to one project.

        Raises:
            RefreshCancelled: the token was cancelled before the cycle finished
        """
        return await self._cancellable(self._collect(project_id), token)

    async def refresh_acceptance(
        self,
        order_ids: Sequence[int],
        token:     Optional[CancellationToken] = None,
    ) -> Dict[int, ProofRecord]:
        """
        Fast poll: re-read proof records for the given orders only.
        Orders whose reads fail are absent from the result.
        """
        return await self._cancellable(self._collect_acceptance(order_ids), token)

    def reconcile(
        self,
        previous: Optional[LedgerSnapshot],
        current:  LedgerSnapshot,
    ) -> LedgerSnapshot:
        """
        Guard against stale reads. An order whose new status is not
        reachable from its previous status keeps the previous record.
        Orders missing from `current` carry over from `previous`.
        """
        if previous is None:
            return current

        orders = dict(current.orders)
        for order_id, old in previous.orders.items():
            new = orders.get(order_id)
            if new is None:
                orders[order_id] = old
                continue
            if new.status is old.status or old.status.can_reach(new.status):
                continue
            logger.warning(
                "order %d read as %s after %s; keeping previous state",
                order_id, new.status.value, old.status.value,
            )
            orders[order_id] = old

        proofs = dict(current.proofs)
        for order_id, old in previous.proofs.items():
            new = proofs.get(order_id)
            if new is None:
                if order_id not in current.orders:
                    proofs[order_id] = old
                continue
            if old.accepted and not new.accepted:
                logger.warning("order %d proof acceptance read as reverted; keeping previous", order_id)
                proofs[order_id] = old

        return replace(current, orders=orders, proofs=proofs)

    # ── Cancellation ──────────────────────────────────────────

    async def _cancellable(self, work: Coroutine[Any, Any, Any], token: Optional[CancellationToken]):
        token = token or CancellationToken()
        if token.cancelled:
            work.close()
            token.raise_if_cancelled()

        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if token.cancelled:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.debug("refresh abandoned: %s", token.reason)
            raise RefreshCancelled("refresh cancelled", {"reason": token.reason})

        return task.result()

    # ── Bounded reads ─────────────────────────────────────────

    async def _gather(
        self,
        reads:    Dict[str, Read],
        deadline: float,
        missing:  List[ReadFailure],
        sem:      asyncio.Semaphore,
    ) -> Dict[str, Any]:
        """
        Run labelled reads concurrently. Returns {label: value} for the
        reads that succeeded; every other label is appended to `missing`.
        """
        loop = asyncio.get_running_loop()

        async def one(label: str, read: Read) -> Any:
            try:
                async with sem:
                    budget = deadline - loop.time()
                    if budget <= 0:
                        raise asyncio.TimeoutError()
                    return await asyncio.wait_for(read(), timeout=budget)
            except asyncio.TimeoutError:
                failure = _failure(label, "timed out")
            except (ReadFailure, SchemaError) as e:
                failure = _failure(label, str(e))
            except Exception as e:
                failure = _failure(label, f"{type(e).__name__}: {e}")
            logger.warning("%s", failure)
            missing.append(failure)
            return _MISSING

        labels = list(reads)
        coros = [one(label, reads[label]) for label in labels]
        values = await asyncio.gather(*coros)
        return {
            label: value
            for label, value in zip(labels, values)
            if value is not _MISSING
        }

    # ── Collection ────────────────────────────────────────────

    async def _collect(self, project_id: Optional[str]) -> LedgerSnapshot:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        sem = asyncio.Semaphore(self.max_concurrency)
        snapshot = LedgerSnapshot(taken_at=self.clock())
        r = self.reader

        # Phase 1: globals, project ids, order count
        reads: Dict[str, Read] = {
            "paused":               r.is_paused,
            "settlement fee":       r.settlement_fee_bps,
            "cancellation fee":     r.cancellation_fee_bps,
            "minimum order value":  r.min_order_value,
            "points sentinel":      r.points_sentinel,
            "order count":          r.order_count,
        }
        if project_id is None:
            reads["project list"] = r.list_project_ids
        got = await self._gather(reads, deadline, snapshot.missing, sem)

        snapshot.params = GlobalParams(
            paused               = got.get("paused"),
            settlement_fee_bps   = got.get("settlement fee"),
            cancellation_fee_bps = got.get("cancellation fee"),
            min_order_value      = got.get("minimum order value"),
            points_sentinel      = got.get("points sentinel"),
        )
        snapshot.order_count = got.get("order count")
        project_ids = [project_id] if project_id is not None else got.get("project list", [])

        # Phase 2: projects, settlement state, orders
        reads = {}
        for pid in project_ids:
            reads[f"project {pid}"] = partial(r.get_project, pid)
            reads[f"tge flag {pid}"] = partial(r.tge_activated, pid)
            reads[f"deadline {pid}"] = partial(r.settlement_deadline, pid)
            reads[f"settlement asset {pid}"] = partial(r.settlement_asset, pid)
            reads[f"conversion ratio {pid}"] = partial(r.conversion_ratio, pid)
        for order_id in range(1, (snapshot.order_count or 0) + 1):
            reads[f"order {order_id}"] = partial(r.get_order, order_id)
        got = await self._gather(reads, deadline, snapshot.missing, sem)

        for pid in project_ids:
            self._absorb_project(snapshot, pid, got)

        wanted = {pid.lower() for pid in project_ids}
        for order_id in range(1, (snapshot.order_count or 0) + 1):
            label = f"order {order_id}"
            if label not in got:
                continue
            try:
                order = self.order_schema.decode(got[label])
            except SchemaError as e:
                failure = _failure(label, str(e))
                logger.warning("%s", failure)
                snapshot.missing.append(failure)
                continue
            if project_id is not None and order.project_id.lower() not in wanted:
                continue
            snapshot.orders[order_id] = order

        # Phase 3: proofs of funded orders
        funded = [o.id for o in snapshot.orders.values() if o.status is OrderStatus.FUNDED]
        snapshot.proofs = await self._read_proofs(funded, deadline, snapshot.missing, sem)
        snapshot.orders.update({
            oid: replace(snapshot.orders[oid], proof=rec.proof)
            for oid, rec in snapshot.proofs.items()
        })

        if snapshot.missing:
            logger.info(
                "refresh finished with %d missing item(s)", len(snapshot.missing)
            )
        return snapshot

    def _absorb_project(self, snapshot: LedgerSnapshot, pid: str, got: Dict[str, Any]) -> None:
        label = f"project {pid}"
        if label in got:
            try:
                project = self.project_schema.decode(got[label])
            except SchemaError as e:
                failure = _failure(label, str(e))
                logger.warning("%s", failure)
                snapshot.missing.append(failure)
            else:
                snapshot.projects[pid.lower()] = project

        parts = [f"tge flag {pid}", f"deadline {pid}", f"settlement asset {pid}", f"conversion ratio {pid}"]
        if all(p in got for p in parts):
            snapshot.states[pid.lower()] = ProjectSettlementState(
                project_id          = pid,
                tge_activated       = bool(got[parts[0]]),
                settlement_deadline = int(got[parts[1]]),
                settlement_asset    = got[parts[2]],
                conversion_ratio    = int(got[parts[3]]),
            )

    async def _read_proofs(
        self,
        order_ids: Iterable[int],
        deadline:  float,
        missing:   List[ReadFailure],
        sem:       asyncio.Semaphore,
    ) -> Dict[int, ProofRecord]:
        r = self.reader
        order_ids = list(order_ids)
        reads: Dict[str, Read] = {}
        for oid in order_ids:
            reads[f"proof {oid}"] = partial(r.proof_of, oid)
            reads[f"proof time {oid}"] = partial(r.proof_submitted_at, oid)
            reads[f"proof acceptance {oid}"] = partial(r.proof_acceptance, oid)
        got = await self._gather(reads, deadline, missing, sem)

        records: Dict[int, ProofRecord] = {}
        for oid in order_ids:
            parts = (f"proof {oid}", f"proof time {oid}", f"proof acceptance {oid}")
            if not all(p in got for p in parts):
                continue
            accepted, accepted_at = got[parts[2]]
            records[oid] = ProofRecord(
                order_id     = oid,
                proof        = got[parts[0]] or None,
                submitted_at = int(got[parts[1]]),
                accepted     = bool(accepted),
                accepted_at  = int(accepted_at),
            )
        return records

    async def _collect_acceptance(self, order_ids: Sequence[int]) -> Dict[int, ProofRecord]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        sem = asyncio.Semaphore(self.max_concurrency)
        missing: List[ReadFailure] = []
        return await self._read_proofs(order_ids, deadline, missing, sem)
