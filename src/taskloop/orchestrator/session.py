"""Run session persistence: one JSON file per workspace or per feature."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from taskloop.orchestrator.errors import SessionNotFoundError
from taskloop.orchestrator.models import RunSession, SessionPhase
from taskloop.orchestrator.workspace import WorkspaceLayout

logger = logging.getLogger(__name__)


class SessionStore:
    """Whole-file read/write of the session record for one layout."""

    def __init__(self, layout: WorkspaceLayout) -> None:
        self.layout = layout

    @property
    def path(self) -> Path:
        return self.layout.session_path

    def read(self) -> RunSession | None:
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable session file %s", self.path)
            return None
        try:
            return RunSession.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed session file %s", self.path)
            return None

    def write(self, session: RunSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(session.to_payload(), indent=2) + "\n", "utf-8")

    def create(self, phase: SessionPhase) -> RunSession:
        session = RunSession(
            phase=phase,
            started_at=datetime.now(tz=UTC),
            feature=self.layout.feature,
        )
        self.write(session)
        return session

    def begin(self, phase: SessionPhase, *, fresh: bool) -> RunSession:
        """Start a phase: ``fresh`` replaces any session, otherwise the existing one is reused."""

        existing = None if fresh else self.read()
        if existing is None:
            return self.create(phase)
        existing.phase = phase
        self.write(existing)
        return existing

    def record_iteration(self, iteration: int, *, agent_session_id: str | None = None) -> RunSession:
        session = self.read()
        if session is None:
            raise SessionNotFoundError(f"Session not found: {self.path}")
        session.last_iteration = iteration
        if agent_session_id:
            session.agent_session_id = agent_session_id
        self.write(session)
        return session
