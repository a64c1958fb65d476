"""In-memory session store tests."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from launchpad.app.db.session_store import (
    InMemorySessionStore,
    SessionAlreadyExists,
    SessionNotFound,
)
from launchpad.app.provisioning.session import (
    InvalidSessionUpdate,
    LogEntry,
    ProjectRequest,
    TemplateSpec,
    new_session_record,
    plan_capabilities,
)
from launchpad.app.provisioning.state_machine import advance_status, fail_session

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _make_record(name='shop', *, now=NOW):
    request = ProjectRequest(project_name=name, template=TemplateSpec(ref='acme/next'))
    return new_session_record(request, plan_capabilities(request), now=now)


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_roundtrip(self):
        store = InMemorySessionStore()
        record = _make_record()
        assert await store.create(record) == record.id
        assert await store.get(record.id) is record

    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self):
        assert await InMemorySessionStore().get('ses_missing') is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        with pytest.raises(SessionAlreadyExists):
            await store.create(record)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_publishes_new_snapshot(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        later = NOW + timedelta(seconds=1)
        updated = await store.update(record.id, lambda r: advance_status(r, 'running', now=later))
        assert updated.status == 'running'
        assert (await store.get(record.id)).status == 'running'
        assert record.status == 'pending'

    @pytest.mark.asyncio
    async def test_unchanged_mutator_returns_same_record(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        assert await store.update(record.id, lambda r: r) is record

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self):
        with pytest.raises(SessionNotFound):
            await InMemorySessionStore().update('ses_missing', lambda r: r)

    @pytest.mark.asyncio
    async def test_concurrent_progress_updates_keep_maximum(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        await asyncio.gather(
            store.update(record.id, lambda r: r.with_progress(60, now=NOW)),
            store.update(record.id, lambda r: r.with_progress(30, now=NOW)),
        )
        assert (await store.get(record.id)).progress_percent == 60

    @pytest.mark.asyncio
    async def test_progress_regression_rejected(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        await store.update(record.id, lambda r: r.with_progress(60, now=NOW))
        with pytest.raises(InvalidSessionUpdate):
            await store.update(record.id, lambda r: replace(r, progress_percent=10))
        assert (await store.get(record.id)).progress_percent == 60

    @pytest.mark.asyncio
    async def test_log_rewrite_rejected(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        await store.update(record.id, lambda r: r.append_log(LogEntry(NOW, 'info', 'first')))
        with pytest.raises(InvalidSessionUpdate):
            await store.update(record.id, lambda r: replace(r, log=()))

    @pytest.mark.asyncio
    async def test_terminal_record_accepts_only_log_lines(self):
        store = InMemorySessionStore()
        record = _make_record()
        await store.create(record)
        await store.update(
            record.id,
            lambda r: fail_session(r, now=NOW, error_code='X', error_detail='boom'),
        )
        await store.update(record.id, lambda r: r.append_log(LogEntry(NOW, 'warning', 'late')))
        with pytest.raises(InvalidSessionUpdate):
            await store.update(record.id, lambda r: replace(r, status='completed'))
        final = await store.get(record.id)
        assert final.status == 'failed'
        assert final.log[-1].message == 'late'


class TestListSessions:
    @pytest.mark.asyncio
    async def test_sorted_by_creation_and_filtered(self):
        store = InMemorySessionStore()
        newer = _make_record('b', now=NOW + timedelta(minutes=5))
        older = _make_record('a', now=NOW)
        await store.create(newer)
        await store.create(older)
        await store.update(
            older.id,
            lambda r: fail_session(r, now=NOW, error_code='X', error_detail='boom'),
        )

        assert [r.id for r in await store.list_sessions()] == [older.id, newer.id]
        assert [r.id for r in await store.list_sessions(active_only=True)] == [newer.id]
