"""Session runner: one asyncio task per provisioning session.

The runner is the single-writer gate. A session id can be launched at
most once while its task is alive, so two orchestrator runs never
advance the same record. Sessions are independent tasks; N concurrent
sessions cost N coroutines, not N threads.

There is no per-session cancellation: a caller that stops polling does
not stop provisioning. ``shutdown()`` waits a grace period for in-flight
sessions and only then cancels what is left; the stale-session sweep
reconciles those records on the next start.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from launchpad.app.db.session_store import SessionStore

from .orchestrator import Orchestrator
from .session import ProjectRequest, SessionRecord

logger = logging.getLogger(__name__)


class SessionAlreadyRunning(RuntimeError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'session {session_id!r} is already running')


class SessionRunner:
    """Owns the background tasks driving sessions.

    Only live tasks are tracked; a finished task is dropped as soon as it
    completes and its record is read back from ``store``.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        store: SessionStore | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._tasks: dict[str, asyncio.Task[SessionRecord | None]] = {}

    def launch(self, session_id: str, request: ProjectRequest) -> asyncio.Task[SessionRecord | None]:
        """Start driving ``session_id`` in the background.

        Raises ``SessionAlreadyRunning`` if a task for this id is alive.
        """
        if self.is_running(session_id):
            raise SessionAlreadyRunning(session_id)
        task = asyncio.create_task(
            self._orchestrator.run(session_id, request),
            name=f'session:{session_id}',
        )
        self._tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._on_done(sid, t))
        return task

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def active_ids(self) -> list[str]:
        return sorted(sid for sid, task in self._tasks.items() if not task.done())

    async def wait(self, session_id: str) -> SessionRecord | None:
        """Wait for a session to finish and return its final record.

        Sessions that are no longer running are read from the store; ids
        the store does not know (or any id, without a store) give None.
        """
        task = self._tasks.get(session_id)
        if task is None:
            if self._store is None:
                return None
            return await self._store.get(session_id)
        return await asyncio.shield(task)

    async def shutdown(self, grace_seconds: float = 30.0) -> list[str]:
        """Wait up to ``grace_seconds`` for in-flight sessions, then cancel.

        Returns the ids of sessions that were cancelled.
        """
        pending = [t for t in self._tasks.values() if not t.done()]
        if not pending:
            return []
        logger.info(
            'Waiting for %d in-flight session(s)',
            len(pending),
            extra={'grace_seconds': grace_seconds},
        )
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        cancelled = self._cancel(still_running)
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        return cancelled

    def _cancel(self, tasks: Iterable[asyncio.Task]) -> list[str]:
        cancelled: list[str] = []
        for sid, task in list(self._tasks.items()):
            if task in tasks:
                task.cancel()
                cancelled.append(sid)
        if cancelled:
            logger.warning(
                'Cancelled %d session(s) at shutdown',
                len(cancelled),
                extra={'session_ids': cancelled},
            )
        return sorted(cancelled)

    def _on_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                'Session task crashed: %r', exc, extra={'session_id': session_id},
            )
