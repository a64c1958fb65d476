"""Stale-session detector and repair action.

Sessions are not resumable after a process restart: a record whose
orchestrator task died stays in its last non-terminal status forever.
This sweep finds non-terminal sessions that no live runner task owns and
whose ``updated_at`` is older than the stale threshold, and marks them
``failed`` with ``SESSION_STALE`` so polling clients see a terminal
answer.

Usage::

    detector = StaleSessionDetector(store, is_owned=runner.is_running)
    report = await detector.sweep(now=datetime.now(UTC))
    # report.stale contains sessions transitioned to failed
    # report.healthy contains sessions still within the threshold

Owned sessions are never touched, however old: a database stage may
legitimately run for many minutes without a log line.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from launchpad.app.db.session_store import SessionStore
from launchpad.app.observability.metrics import STALE_SESSIONS_REPAIRED_TOTAL
from launchpad.app.provisioning.session import LogEntry, SessionRecord
from launchpad.app.provisioning.state_machine import fail_session

logger = logging.getLogger(__name__)

SESSION_STALE_CODE = 'SESSION_STALE'
DEFAULT_STALE_AFTER_SECONDS = 3600


@dataclass(frozen=True, slots=True)
class StaleSessionEntry:
    """A single stale session with its before/after record."""

    before: SessionRecord
    after: SessionRecord
    idle_seconds: float


@dataclass(frozen=True, slots=True)
class SweepReport:
    """Result of one sweep over the session store.

    Attributes:
        stale: Sessions that exceeded the threshold and were failed.
        healthy: Unowned active sessions still within the threshold.
        skipped: Terminal sessions and sessions owned by a live task.
        sweep_ts: Timestamp of the sweep.
    """

    stale: tuple[StaleSessionEntry, ...]
    healthy: tuple[SessionRecord, ...]
    skipped: tuple[SessionRecord, ...]
    sweep_ts: datetime

    @property
    def stale_count(self) -> int:
        return len(self.stale)

    @property
    def total_scanned(self) -> int:
        return len(self.stale) + len(self.healthy) + len(self.skipped)

    @property
    def stale_by_status(self) -> dict[str, int]:
        """Count of stale sessions grouped by their last status."""
        counts: dict[str, int] = {}
        for entry in self.stale:
            status = entry.before.status
            counts[status] = counts.get(status, 0) + 1
        return counts


class StaleSessionDetector:
    """Detects orphaned sessions and fails them.

    Args:
        store: Session store to scan and repair.
        stale_after_seconds: Idle time after which an unowned active
            session is considered orphaned.
        is_owned: Returns True when a live task is driving the session.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        is_owned: Callable[[str], bool] = lambda session_id: False,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError('stale_after_seconds must be > 0')
        self._store = store
        self._stale_after = stale_after_seconds
        self._is_owned = is_owned

    def _idle_seconds(self, record: SessionRecord, now: datetime) -> float | None:
        last = record.updated_at or record.created_at
        if last is None:
            return None
        return (now - last).total_seconds()

    def classify(
        self,
        records: Sequence[SessionRecord],
        *,
        now: datetime,
    ) -> tuple[list[SessionRecord], list[SessionRecord], list[SessionRecord]]:
        """Split records into (stale, healthy, skipped) without mutating."""
        stale: list[SessionRecord] = []
        healthy: list[SessionRecord] = []
        skipped: list[SessionRecord] = []
        for record in records:
            if record.is_terminal or self._is_owned(record.id):
                skipped.append(record)
                continue
            idle = self._idle_seconds(record, now)
            if idle is None:
                skipped.append(record)
            elif idle >= self._stale_after:
                stale.append(record)
            else:
                healthy.append(record)
        return stale, healthy, skipped

    async def sweep(self, *, now: datetime) -> SweepReport:
        """Scan the store and fail every orphaned session.

        Args:
            now: Current timestamp (must be timezone-aware).
        """
        records = await self._store.list_sessions()
        candidates, healthy, skipped = self.classify(records, now=now)

        stale: list[StaleSessionEntry] = []
        for record in candidates:
            after = await self._store.update(record.id, self._repair(now))
            if after.status != 'failed' or after.error_code != SESSION_STALE_CODE:
                # Touched by a live writer between listing and repair.
                healthy.append(after)
                continue
            idle = self._idle_seconds(record, now) or 0.0
            stale.append(StaleSessionEntry(before=record, after=after, idle_seconds=idle))
            STALE_SESSIONS_REPAIRED_TOTAL.inc()
            logger.warning(
                'Failed stale session',
                extra={
                    'session_id': record.id,
                    'last_status': record.status,
                    'idle_seconds': round(idle, 1),
                },
            )

        return SweepReport(
            stale=tuple(stale),
            healthy=tuple(healthy),
            skipped=tuple(skipped),
            sweep_ts=now,
        )

    async def detect_only(self, *, now: datetime) -> list[SessionRecord]:
        """Return stale sessions without applying transitions."""
        records = await self._store.list_sessions()
        stale, _, _ = self.classify(records, now=now)
        return stale

    def _repair(self, now: datetime) -> Callable[[SessionRecord], SessionRecord]:
        def mutate(record: SessionRecord) -> SessionRecord:
            # Re-check under the store lock; the record may have moved on.
            if record.is_terminal or self._is_owned(record.id):
                return record
            idle = self._idle_seconds(record, now)
            if idle is None or idle < self._stale_after:
                return record
            detail = (
                f'no progress for {int(idle)}s in status {record.status}; '
                'the process driving this session is gone'
            )
            record = record.append_log(
                LogEntry(now, 'error', f'Session abandoned: {detail}', stage=record.stage),
            )
            return fail_session(
                record, now=now, error_code=SESSION_STALE_CODE, error_detail=detail,
            )

        return mutate
