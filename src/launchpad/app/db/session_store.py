"""Session store: keyed persistence for session records.

Records are immutable snapshots, so ``get()`` always returns either the
record before or after an in-flight ``update()``, never a partial one.
Updates for the same session id are serialized by a per-id lock;
updates for different ids never contend.

Every update runs ``check_update()`` before the new snapshot is
published, so a mutator that rewrites the log, lowers progress, or
touches a terminal record is rejected with ``InvalidSessionUpdate``.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol

from launchpad.app.provisioning.session import SessionRecord, check_update

Mutator = Callable[[SessionRecord], SessionRecord]


class SessionNotFound(LookupError):
    """Raised when no record exists for a session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'session not found: {session_id}')


class SessionAlreadyExists(ValueError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f'session already exists: {session_id}')


class SessionStore(Protocol):
    """Get/create/update of session records."""

    async def create(self, record: SessionRecord) -> str:
        """Persist a new record and return its id."""
        ...

    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def update(self, session_id: str, mutator: Mutator) -> SessionRecord:
        """Apply ``mutator`` atomically for this id; return the new record."""
        ...

    async def list_sessions(self, *, active_only: bool = False) -> list[SessionRecord]: ...


class InMemorySessionStore:
    """Process-local store used in local mode and tests.

    Never deletes records; retention belongs to whatever store replaces
    this one in a deployed environment.
    """

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def create(self, record: SessionRecord) -> str:
        if record.id in self._records:
            raise SessionAlreadyExists(record.id)
        self._records[record.id] = record
        self._locks[record.id] = asyncio.Lock()
        return record.id

    async def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    async def update(self, session_id: str, mutator: Mutator) -> SessionRecord:
        lock = self._locks.get(session_id)
        if lock is None:
            raise SessionNotFound(session_id)
        async with lock:
            before = self._records[session_id]
            after = mutator(before)
            if after is before:
                return before
            check_update(before, after)
            self._records[session_id] = after
            return after

    async def list_sessions(self, *, active_only: bool = False) -> list[SessionRecord]:
        records = sorted(
            self._records.values(),
            key=lambda r: (r.created_at is None, r.created_at, r.id),
        )
        if active_only:
            return [r for r in records if not r.is_terminal]
        return records
