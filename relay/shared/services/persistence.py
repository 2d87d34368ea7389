"""Session history persistence: one flat JSON snapshot of every session.

Storage layout:
    {data_dir}/sessions.json

    {
      "1": {"messages": [...], "projectId": null,
            "createdAt": "...", "updatedAt": "..."},
      "2": {...}
    }

The whole file is rewritten on every mutating operation; there is no
incremental log. Keys are stringified integer session ids.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

from relay.shared.models.session import SessionRecord
from relay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

SESSIONS_FILENAME = "sessions.json"


class HistoryStore:
    """In-memory map of session records mirrored to ``sessions.json``.

    Records are shared by reference with live supervisors, so a
    supervisor appending a message and calling :meth:`save` is enough to
    persist it.
    """

    def __init__(self, data_dir: Path) -> None:
        self._path = Path(data_dir) / SESSIONS_FILENAME
        self._records: dict[int, SessionRecord] = {}

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> int:
        """Load the snapshot from disk, replacing in-memory records.

        Returns the number of sessions loaded. A missing file is an empty
        history; a corrupt one is logged and treated the same way.
        """
        self._records.clear()
        try:
            raw = read_json(self._path, default={})
        except (OSError, ValueError) as exc:
            logger.error("Error loading session history from %s: %s", self._path, exc)
            return 0
        if not isinstance(raw, dict):
            logger.error("Session history at %s is not an object; ignoring", self._path)
            return 0
        for key, data in raw.items():
            try:
                session_id = int(key)
            except (TypeError, ValueError):
                logger.warning("Skipping history entry with non-integer id %r", key)
                continue
            if not isinstance(data, dict):
                continue
            try:
                self._records[session_id] = SessionRecord.from_dict(session_id, data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed history entry %s: %s", session_id, exc)
        logger.info("Loaded %d sessions from history (%s)", len(self._records), self._path)
        return len(self._records)

    def save(self) -> bool:
        """Rewrite the full snapshot. Failures are logged, never raised."""
        snapshot = {
            str(session_id): record.to_dict()
            for session_id, record in sorted(self._records.items())
        }
        try:
            atomic_write_json(self._path, snapshot)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Error saving session history to %s: %s", self._path, exc)
            return False
        return True

    def put(self, record: SessionRecord) -> None:
        self._records[record.session_id] = record

    def get(self, session_id: int) -> SessionRecord | None:
        return self._records.get(session_id)

    def delete(self, session_id: int) -> bool:
        return self._records.pop(session_id, None) is not None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def max_id(self) -> int:
        """Highest persisted session id, or 0 for an empty history."""
        return max(self._records, default=0)
