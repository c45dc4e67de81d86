"""Registry of live bot sessions keyed by meeting id.

Owned by the worker and injected where needed; there is no module-level
state. All operations are synchronous and hold the lock only for the map
access itself, so check-then-insert is atomic with respect to every other
registry caller.

Sessions that leave the registry are archived as final status snapshots in
a bounded history so their outcome stays queryable after cleanup.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

import structlog

from src.meetbot.core.monitoring import bot_sessions_active

if TYPE_CHECKING:
    from src.meetbot.bots.schemas import SessionStatus
    from src.meetbot.bots.session import BotSession

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Lock-guarded map of meeting id to live session.

    Args:
        history_size: Number of retired session snapshots to retain.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, BotSession] = {}
        self._retired: OrderedDict[str, SessionStatus] = OrderedDict()
        self._history_size = history_size

    def insert_if_absent(self, session: BotSession) -> BotSession | None:
        """Insert a session unless one already exists for its meeting.

        Returns:
            The existing session when one is present, otherwise None
            (meaning ``session`` was inserted).
        """
        with self._lock:
            existing = self._sessions.get(session.meeting_id)
            if existing is not None:
                return existing
            self._sessions[session.meeting_id] = session
            bot_sessions_active.set(len(self._sessions))
        logger.debug("registry.inserted", meeting_id=session.meeting_id)
        return None

    def get(self, meeting_id: str) -> BotSession | None:
        with self._lock:
            return self._sessions.get(meeting_id)

    def remove(self, session: BotSession) -> bool:
        """Remove ``session`` if it is still the one registered for its meeting."""
        with self._lock:
            if self._sessions.get(session.meeting_id) is not session:
                return False
            del self._sessions[session.meeting_id]
            bot_sessions_active.set(len(self._sessions))
        logger.debug("registry.removed", meeting_id=session.meeting_id)
        return True

    def sessions(self) -> list[BotSession]:
        """Snapshot of live sessions."""
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, meeting_id: object) -> bool:
        with self._lock:
            return meeting_id in self._sessions

    # ── Retired History ──────────────────────────────────────────────────

    def archive(self, status: SessionStatus) -> None:
        """Keep the final status of a retired session."""
        with self._lock:
            self._retired.pop(status.meeting_id, None)
            self._retired[status.meeting_id] = status
            while len(self._retired) > self._history_size:
                self._retired.popitem(last=False)

    def get_retired(self, meeting_id: str) -> SessionStatus | None:
        with self._lock:
            return self._retired.get(meeting_id)
