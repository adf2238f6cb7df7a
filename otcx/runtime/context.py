"""
otcx/runtime/context.py

Projection and runtime wiring.

build_project_view() is a pure function from one LedgerSnapshot to
everything derived from it: classified orders, the market snapshot and
the pending proofs. Nothing derived is stored separately, so nothing can
drift from the snapshot it came from.

RuntimeContext wires configuration, ledger, mirror, resolver, validator
and per-project sessions together for the CLI.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from otcx.config import OtcxConfig
from otcx.core.exceptions import ConfigError, ReadFailure
from otcx.core.models import Project, ProjectSettlementState, ValidationVerdict
from otcx.core.time import Clock, now_unix, resolve_now
from otcx.ledger.interface import LedgerReader, LedgerWriter, TransactionLookup
from otcx.ledger.memory import InMemoryLedger
from otcx.ledger.mirror import LedgerMirror, LedgerSnapshot
from otcx.ledger.schema import PROJECT_SCHEMA_V2
from otcx.market.aggregator import GlobalStats, MarketSnapshot, aggregate, aggregate_global
from otcx.market.classifier import Classification, classify_all
from otcx.runtime.refresh import CancellationToken
from otcx.settlement.coordinator import PendingProof, SettlementCoordinator, pending_proofs
from otcx.settlement.resolver import ExplorerResolver, LedgerResolver, TransactionResolver
from otcx.settlement.session import ProjectSession, SessionRepository
from otcx.settlement.validator import ProofValidator, ValidationRequest, expected_for

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Projection
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProjectView:
    project_id: str
    project:    Optional[Project]
    state:      Optional[ProjectSettlementState]
    classified: List[Classification]
    market:     MarketSnapshot
    pending:    List[PendingProof]
    missing:    List[str] = field(default_factory=list)
    taken_at:   int = 0

    @property
    def label(self) -> str:
        return self.project.name if self.project else self.project_id


def build_project_view(
    snapshot:   LedgerSnapshot,
    project_id: str,
    verdicts:   Optional[Mapping[int, ValidationVerdict]] = None,
    now:        Optional[int] = None,
    caller:     Optional[str] = None,
) -> ProjectView:
    now = resolve_now(now)
    project = snapshot.project(project_id)
    state = snapshot.state_for(project_id)
    orders = snapshot.orders_for(project_id)

    classified = classify_all(
        orders, snapshot.projects, snapshot.states,
        proofs=snapshot.proofs, caller=caller, now=now,
    )

    return ProjectView(
        project_id = project_id,
        project    = project,
        state      = state,
        classified = classified,
        market     = aggregate(orders),
        pending    = pending_proofs(orders, snapshot.proofs, state, verdicts),
        missing    = snapshot.missing_items(),
        taken_at   = snapshot.taken_at,
    )


@dataclass(frozen=True)
class MarketOverview:
    views:        Dict[str, ProjectView]
    global_stats: Optional[GlobalStats]
    missing:      List[str]


def build_market_overview(snapshot: LedgerSnapshot, now: Optional[int] = None) -> MarketOverview:
    now = resolve_now(now)
    views = {
        project.project_id: build_project_view(snapshot, project.project_id, now=now)
        for project in snapshot.projects.values()
    }
    return MarketOverview(
        views        = views,
        global_stats = aggregate_global(v.market for v in views.values()),
        missing      = snapshot.missing_items(),
    )


# ─────────────────────────────────────────────────────────────
# Runtime wiring
# ─────────────────────────────────────────────────────────────

class RuntimeContext:
    """Everything one otcx process needs, built from configuration."""

    def __init__(
        self,
        config:    OtcxConfig,
        reader:    LedgerReader,
        writer:    LedgerWriter,
        mirror:    LedgerMirror,
        validator: ProofValidator,
        sessions:  SessionRepository,
        clock:     Clock = now_unix,
    ):
        self.config = config
        self.reader = reader
        self.writer = writer
        self.mirror = mirror
        self.validator = validator
        self.sessions = sessions
        self.clock = clock
        self._coordinators: Dict[str, SettlementCoordinator] = {}
        self._last: Dict[str, LedgerSnapshot] = {}

    @classmethod
    def from_config(
        cls,
        config:     OtcxConfig,
        state_path: Optional[Path] = None,
        ledger:     Optional[InMemoryLedger] = None,
        clock:      Clock = now_unix,
    ) -> "RuntimeContext":
        """Create a runtime context from configuration and a ledger state file."""
        if ledger is None:
            if state_path is None:
                raise ConfigError("a ledger state file is required")
            ledger = InMemoryLedger.from_yaml(state_path, clock=clock)

        resolver = cls._build_resolver(config, ledger)
        mirror = LedgerMirror(
            ledger,
            timeout         = config.refresh.timeout,
            max_concurrency = config.refresh.max_concurrency,
            clock           = clock,
        )
        return cls(
            config    = config,
            reader    = ledger,
            writer    = ledger,
            mirror    = mirror,
            validator = ProofValidator(resolver, tolerance_bps=config.validation.tolerance_bps),
            sessions  = SessionRepository(default_explorer=config.explorers.default),
            clock     = clock,
        )

    @staticmethod
    def _build_resolver(config: OtcxConfig, ledger) -> TransactionResolver:
        if config.resolver.mode == "explorer":
            return ExplorerResolver(
                api_key = config.resolver.api_key,
                timeout = config.resolver.timeout,
            )
        if not isinstance(ledger, TransactionLookup):
            raise ConfigError("resolver.mode 'ledger' needs a ledger that records transfers")
        return LedgerResolver(ledger)

    # ── Sessions ──────────────────────────────────────────────

    def session_for(self, project: Project) -> ProjectSession:
        opened = project.project_id not in self.sessions
        session = self.sessions.get(project.project_id)
        if opened:
            url = self.config.explorers.explorer_for(project.slug)
            if url:
                session.set_explorer(url)
        return session

    def coordinator_for(self, project: Project) -> SettlementCoordinator:
        key = project.project_id.lower()
        if key not in self._coordinators:
            self._coordinators[key] = SettlementCoordinator(
                self.session_for(project), self.writer, clock=self.clock
            )
        return self._coordinators[key]

    # ── Reads ─────────────────────────────────────────────────

    async def resolve_project(self, ref: str) -> Project:
        """Project by id (0x + 64 hex) or by slug."""
        try:
            if ref.startswith("0x") and len(ref) == 66:
                raw = await self.reader.get_project(ref)
            else:
                raw = await self.reader.get_project_by_slug(ref)
        except ReadFailure as e:
            raise ReadFailure(f"could not load project {ref}", e.details) from e
        return PROJECT_SCHEMA_V2.decode(raw)

    async def snapshot(
        self,
        project_id: Optional[str] = None,
        token:      Optional[CancellationToken] = None,
    ) -> LedgerSnapshot:
        """Refresh through the mirror and reconcile against the previous read."""
        key = (project_id or "*").lower()
        current = await self.mirror.refresh(project_id, token)
        current = self.mirror.reconcile(self._last.get(key), current)
        self._last[key] = current
        return current

    async def validate(
        self,
        snapshot: LedgerSnapshot,
        project:  Project,
    ) -> Dict[int, ValidationVerdict]:
        """Validate every unaccepted proof of one project."""
        state = snapshot.state_for(project.project_id)
        if state is None or not state.tge_activated:
            return {}

        session = self.session_for(project)
        delivery_asset = self.config.explorers.delivery_asset_for(project.slug)
        requests = [
            ValidationRequest(
                order_id        = p.order_id,
                proof           = p.record.proof,
                expected_source = session.explorer_url,
                expected        = expected_for(p.order, state, delivery_asset),
            )
            for p in pending_proofs(snapshot.orders_for(project.project_id), snapshot.proofs, state)
            if not p.record.accepted
        ]
        return await self.validator.validate_many(
            requests,
            timeout         = self.config.refresh.timeout,
            max_concurrency = self.config.refresh.max_concurrency,
        )

    async def review(
        self,
        ref:   str,
        token: Optional[CancellationToken] = None,
    ) -> ProjectView:
        """
        Refresh one project, validate its proofs and load the result into
        the project's coordinator.
        """
        project = await self.resolve_project(ref)
        snapshot = await self.snapshot(project.project_id, token)
        verdicts = await self.validate(snapshot, project)
        view = build_project_view(snapshot, project.project_id, verdicts, now=self.clock())
        self.coordinator_for(project).load(view.pending)
        return view

    async def poll_acceptance(
        self,
        project: Project,
        token:   Optional[CancellationToken] = None,
    ) -> List[int]:
        """
        Re-read acceptance for the coordinator's unaccepted proofs only.

        Returns:
            order ids newly read as accepted
        """
        coordinator = self.coordinator_for(project)
        order_ids = [p.order_id for p in coordinator.pending if not p.record.accepted]
        if not order_ids:
            return []
        records = await self.mirror.refresh_acceptance(order_ids, token)
        accepted = coordinator.apply_acceptance(records)
        if accepted:
            logger.info("project %s: proofs accepted: %s", project.project_id, accepted)
        return accepted

    def __repr__(self) -> str:
        return (
            f"RuntimeContext("
            f"resolver={self.config.resolver.mode!r}, "
            f"sessions={len(self.sessions)})"
        )
