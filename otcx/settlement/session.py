"""
otcx/settlement/session.py

Per-project admin working sessions.

A ProjectSession holds the only mutable coordination state in otcx: the
evidence source (explorer URL) the administrator chose for the project,
and the set of order ids currently selected for review. Sessions are
handed out by a SessionRepository, one per project id, and never share
state with each other.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional, Set

logger = logging.getLogger(__name__)


class ProjectSession:
    """Explorer URL and selection for one project."""

    def __init__(self, project_id: str, explorer_url: Optional[str] = None):
        self.project_id = project_id
        self.explorer_url = explorer_url
        self._selection: Set[int] = set()

    @property
    def selection(self) -> FrozenSet[int]:
        return frozenset(self._selection)

    def set_explorer(self, url: Optional[str]) -> None:
        self.explorer_url = url.strip() if url else None

    def add(self, order_ids: Iterable[int]) -> None:
        self._selection.update(order_ids)

    def remove(self, order_ids: Iterable[int]) -> None:
        self._selection.difference_update(order_ids)

    def replace(self, order_ids: Iterable[int]) -> None:
        self._selection = set(order_ids)

    def clear(self) -> None:
        self._selection.clear()

    def __repr__(self) -> str:
        return (
            f"ProjectSession(project_id={self.project_id!r}, "
            f"explorer_url={self.explorer_url!r}, selected={sorted(self._selection)})"
        )


class SessionRepository:
    """
    Hands out ProjectSessions keyed by project id (case-insensitive).

    Args:
        default_explorer: explorer URL for projects without their own
        explorers:        explorer URL per project id
    """

    def __init__(
        self,
        default_explorer: Optional[str] = None,
        explorers:        Optional[Dict[str, str]] = None,
    ):
        self.default_explorer = default_explorer
        self.explorers = {k.lower(): v for k, v in (explorers or {}).items()}
        self._sessions: Dict[str, ProjectSession] = {}

    def get(self, project_id: str) -> ProjectSession:
        key = project_id.lower()
        session = self._sessions.get(key)
        if session is None:
            explorer = self.explorers.get(key, self.default_explorer)
            session = ProjectSession(project_id, explorer)
            self._sessions[key] = session
            logger.debug("opened session for project %s", project_id)
        return session

    def close(self, project_id: str) -> None:
        if self._sessions.pop(project_id.lower(), None) is not None:
            logger.debug("closed session for project %s", project_id)

    def __contains__(self, project_id: str) -> bool:
        return project_id.lower() in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
