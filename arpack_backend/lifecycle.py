from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import Settings
from .security import normalize_session_id
from .workspace import delete_session

logger = logging.getLogger(__name__)


class DeletionScheduler:
    """Deferred, cancellable sandbox deletion.

    One timer per session. Scheduling a session that already has a pending
    timer replaces it, so repeated downloads push deletion back. Must be used
    from inside a running event loop.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, session_id: str, delay: Optional[float] = None) -> None:
        sid = normalize_session_id(session_id)
        if delay is None:
            delay = self.settings.delete_delay_seconds
        self.cancel(sid)
        loop = asyncio.get_running_loop()
        self._handles[sid] = loop.call_later(max(0.0, delay), self._expire, sid)
        logger.info("Sandbox %s scheduled for deletion in %.0fs", sid, delay)

    def cancel(self, session_id: str) -> bool:
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_scheduled(self, session_id: str) -> bool:
        return session_id in self._handles

    def pending(self) -> list[str]:
        return list(self._handles)

    def _expire(self, session_id: str) -> None:
        # rmtree on a large sandbox must not stall the event loop.
        self._handles.pop(session_id, None)
        asyncio.get_running_loop().run_in_executor(None, self._delete, session_id)

    def _delete(self, session_id: str) -> None:
        if delete_session(self.settings, session_id):
            logger.info("Sandbox %s deleted", session_id)

    def shutdown(self) -> int:
        """Cancel all timers and run their deletions now. Returns the count."""
        pending = list(self._handles)
        for sid in pending:
            self._handles.pop(sid).cancel()
            self._delete(sid)
        return len(pending)
