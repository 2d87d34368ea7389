"""Session registry: where every session lives right now.

Three tiers, consulted in this order:

- active: supervisors with (or awaiting) a client connection
- background: supervisors whose client left while the agent kept running
- history: persisted records with no supervisor at all

A session id is resident in at most one of the in-memory pools. Moves
pop from the source pool before inserting into the destination.
"""
from __future__ import annotations

import logging
from typing import Any

from relay.adapters.multiplexer import Transport
from relay.shared.models.session import SessionRecord
from relay.shared.services.persistence import HistoryStore
from relay.shared.services.project import ProjectStore

from .config import RelayConfig
from .errors import SessionNotFoundError
from .launcher import AgentLauncher
from .models import Pool
from .supervisor import SessionSupervisor

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class SessionRegistry:
    """Owns every live supervisor and the history store behind them."""

    def __init__(
        self,
        config: RelayConfig,
        history: HistoryStore,
        projects: ProjectStore,
        launcher: AgentLauncher | None = None,
    ) -> None:
        self._config = config
        self._history = history
        self._projects = projects
        self._launcher = launcher or AgentLauncher(config)
        self._pools: dict[Pool, dict[int, SessionSupervisor]] = {
            Pool.ACTIVE: {},
            Pool.BACKGROUND: {},
        }
        self._last_id = history.max_id()

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def projects(self) -> ProjectStore:
        return self._projects

    @property
    def launcher(self) -> AgentLauncher:
        return self._launcher

    @property
    def active(self) -> dict[int, SessionSupervisor]:
        return dict(self._pools[Pool.ACTIVE])

    @property
    def background(self) -> dict[int, SessionSupervisor]:
        return dict(self._pools[Pool.BACKGROUND])

    def get(self, session_id: int) -> SessionSupervisor | None:
        for pool in self._pools.values():
            if session_id in pool:
                return pool[session_id]
        return None

    def pool_of(self, session_id: int) -> Pool | None:
        for name, pool in self._pools.items():
            if session_id in pool:
                return name
        if session_id in self._history:
            return Pool.HISTORY
        return None

    # ── Pool moves ──

    def _take(self, pool: Pool, session_id: int) -> SessionSupervisor | None:
        return self._pools[pool].pop(session_id, None)

    def _insert(self, pool: Pool, supervisor: SessionSupervisor) -> None:
        current = self.pool_of(supervisor.session_id)
        if current in (Pool.ACTIVE, Pool.BACKGROUND):
            raise RuntimeError(
                f"Session {supervisor.session_id} is already resident in the {current.value} pool"
            )
        self._pools[pool][supervisor.session_id] = supervisor

    def _allocate_id(self) -> int:
        self._last_id = max(self._last_id, self._history.max_id()) + 1
        return self._last_id

    def _build(self, record: SessionRecord) -> SessionSupervisor:
        project_path = None
        if record.project_id is not None:
            project = self._projects.get(record.project_id)
            if project is not None:
                project_path = project.path
                logger.info(
                    "Session %s: bound to project %s (%s)",
                    record.session_id, project.name, project.path,
                )
            else:
                logger.warning(
                    "Session %s: project %s no longer exists, using server cwd",
                    record.session_id, record.project_id,
                )
        return SessionSupervisor(
            record,
            history=self._history,
            launcher=self._launcher,
            config=self._config,
            project_path=project_path,
        )

    # ── Stream and message routing ──

    def open_stream(
        self,
        session_id: int | None,
        project_id: int | None,
        transport: Transport,
    ) -> SessionSupervisor:
        """Bind an SSE client to a session, creating or reviving it as needed."""
        supervisor = None
        if session_id is not None:
            supervisor = self._take(Pool.BACKGROUND, session_id)
            if supervisor is not None:
                self._insert(Pool.ACTIVE, supervisor)
                logger.info("Session %s: reconnected to background session", session_id)
            elif session_id in self._pools[Pool.ACTIVE]:
                supervisor = self._pools[Pool.ACTIVE][session_id]
                logger.info("Session %s: attaching client to active session", session_id)
            elif session_id in self._history:
                record = self._history.get(session_id)
                supervisor = self._build(record)
                self._insert(Pool.ACTIVE, supervisor)
                logger.info(
                    "Session %s: resuming from history (messages=%d)",
                    session_id, record.message_count,
                )

        if supervisor is None:
            record = self.create_session(project_id)
            supervisor = self._build(record)
            self._insert(Pool.ACTIVE, supervisor)
            logger.info("Session %s: created for new stream", record.session_id)

        supervisor.attach(transport)
        if not supervisor.has_live_process:
            supervisor.schedule_start(self._config.start_delay_seconds)
        return supervisor

    def release(self, session_id: int, transport: Transport) -> None:
        """Client-close hook for ``transport``; stale transports are ignored."""
        supervisor = self._pools[Pool.ACTIVE].get(session_id)
        if supervisor is None or supervisor.transport is not transport:
            logger.debug("Session %s: ignoring release from a superseded client", session_id)
            return

        self._take(Pool.ACTIVE, session_id)
        if self._config.keep_running_in_background and supervisor.has_live_process:
            supervisor.detach(transport)
            self._insert(Pool.BACKGROUND, supervisor)
            logger.info("Session %s: client gone, agent continues in background", session_id)
        else:
            supervisor.stop()
            logger.info("Session %s: client gone, session stopped", session_id)

    async def route_message(self, session_id: int, payload: dict[str, Any]) -> SessionSupervisor:
        """Deliver a user payload to a session, reviving it if needed.

        Raises SessionNotFoundError when the id is unknown everywhere.
        """
        supervisor = self._pools[Pool.ACTIVE].get(session_id)
        if supervisor is None:
            supervisor = self._take(Pool.BACKGROUND, session_id)
            if supervisor is not None:
                self._insert(Pool.ACTIVE, supervisor)
                supervisor.resume()
                logger.info("Session %s: message for background session, moved to active", session_id)
            elif session_id in self._history:
                supervisor = self._build(self._history.get(session_id))
                self._insert(Pool.ACTIVE, supervisor)
                logger.info("Session %s: message for history-only session, starting agent", session_id)
                await supervisor.start()
            else:
                raise SessionNotFoundError(session_id)

        supervisor.submit(payload)
        return supervisor

    def stop(self, session_id: int, *, discard_history: bool = False) -> bool:
        """Stop and evict a resident session. Unknown ids are not an error."""
        supervisor = self._take(Pool.ACTIVE, session_id) or self._take(Pool.BACKGROUND, session_id)
        if supervisor is None:
            logger.info("Session %s: not running, nothing to stop", session_id)
            return False
        supervisor.stop(discard_history=discard_history)
        logger.info("Session %s: stopped", session_id)
        return True

    # ── History ──

    def create_session(self, project_id: int | None = None) -> SessionRecord:
        record = SessionRecord(session_id=self._allocate_id(), project_id=project_id)
        self._history.put(record)
        self._history.save()
        logger.info("Session %s: created (project=%s)", record.session_id, project_id)
        return record

    def delete_session(self, session_id: int) -> None:
        if session_id not in self._history:
            raise SessionNotFoundError(session_id)
        self.stop(session_id, discard_history=True)
        self._history.delete(session_id)
        self._history.save()
        logger.info("Session %s: deleted", session_id)

    def list_sessions(self, project_id: int | None = None) -> list[dict[str, Any]]:
        """Summaries for one project, or for sessions without a project."""
        records = [r for r in self._history if r.project_id == project_id]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.summary() for r in records]

    def get_history(
        self,
        session_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> dict[str, Any]:
        record = self._history.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        total = record.message_count
        page = record.messages[offset:offset + limit]
        return {
            "id": session_id,
            "projectId": record.project_id,
            "messages": [m.to_dict() for m in page],
            "total": total,
            "offset": offset,
            "limit": limit,
            "hasMore": offset + limit < total,
            "createdAt": record.created_at.isoformat(),
            "updatedAt": record.updated_at.isoformat(),
        }

    async def shutdown(self) -> None:
        """Stop every resident supervisor and wait for their agents to exit."""
        supervisors = []
        for pool in (Pool.ACTIVE, Pool.BACKGROUND):
            for session_id in list(self._pools[pool]):
                supervisor = self._take(pool, session_id)
                supervisor.stop()
                supervisors.append(supervisor)
        for supervisor in supervisors:
            await supervisor.wait_closed()
        if supervisors:
            logger.info("Registry shutdown: stopped %d sessions", len(supervisors))
