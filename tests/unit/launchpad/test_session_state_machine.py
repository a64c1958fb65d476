"""Session status state-machine tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from launchpad.app.provisioning.session import SessionRecord
from launchpad.app.provisioning.state_machine import (
    STATUS_SEQUENCE,
    InvalidStateTransition,
    advance_status,
    can_transition,
    complete_session,
    fail_session,
    is_terminal,
)


def _t(seconds: int) -> datetime:
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC) + timedelta(seconds=seconds)


def _make_record(**overrides) -> SessionRecord:
    fields = dict(
        id='ses_test',
        project_name='Shop',
        template_ref='acme/next',
        required_capabilities=frozenset({'repository'}),
        created_at=_t(0),
        updated_at=_t(0),
    )
    fields.update(overrides)
    return SessionRecord(**fields)


class TestCanTransition:
    def test_pending_only_enters_running(self):
        assert can_transition('pending', 'running') is True
        assert can_transition('pending', 'validating') is False
        assert can_transition('pending', 'completed') is False

    def test_forward_moves_allowed(self):
        assert can_transition('running', 'validating') is True
        assert can_transition('provisioning_repo', 'provisioning_deploy') is True

    def test_backward_moves_rejected(self):
        assert can_transition('provisioning_deploy', 'provisioning_db') is False
        assert can_transition('validating', 'running') is False

    def test_completed_only_from_finalizing(self):
        assert can_transition('generating_code', 'completed') is False
        assert can_transition('finalizing', 'completed') is True

    @pytest.mark.parametrize('status', STATUS_SEQUENCE[:-1])
    def test_failed_reachable_from_any_active_status(self, status):
        assert can_transition(status, 'failed') is True

    @pytest.mark.parametrize('terminal', ['completed', 'failed'])
    def test_terminal_statuses_are_final(self, terminal):
        assert is_terminal(terminal)
        for status in (*STATUS_SEQUENCE, 'failed'):
            assert can_transition(terminal, status) is False

    def test_unknown_target_rejected(self):
        assert can_transition('running', 'paused') is False


class TestAdvanceStatus:
    def test_full_flow(self):
        record = _make_record()
        for i, status in enumerate(STATUS_SEQUENCE[1:-1], start=1):
            record = advance_status(record, status, now=_t(i))
            assert record.status == status
            assert record.updated_at == _t(i)
        record = complete_session(record, now=_t(20))
        assert record.status == 'completed'
        assert record.progress_percent == 100

    def test_skipping_forward_is_allowed(self):
        record = _make_record(status='provisioning_repo')
        record = advance_status(record, 'generating_code', now=_t(1))
        assert record.status == 'generating_code'

    def test_same_status_is_noop(self):
        record = _make_record(status='provisioning_db', stage='database')
        assert advance_status(record, 'provisioning_db', now=_t(5)) is record

    def test_same_status_updates_stage(self):
        record = _make_record(status='provisioning_db', stage='database')
        moved = advance_status(record, 'provisioning_db', now=_t(5), stage='deployment')
        assert moved.stage == 'deployment'
        assert moved.status == 'provisioning_db'

    def test_sets_stage_when_given(self):
        record = _make_record(status='validating')
        record = advance_status(record, 'provisioning_repo', now=_t(1), stage='repository')
        assert record.stage == 'repository'

    def test_backward_raises(self):
        record = _make_record(status='provisioning_deploy')
        with pytest.raises(InvalidStateTransition):
            advance_status(record, 'provisioning_repo', now=_t(1))

    def test_terminal_target_raises(self):
        record = _make_record(status='finalizing')
        with pytest.raises(InvalidStateTransition):
            advance_status(record, 'completed', now=_t(1))

    def test_rejects_naive_now(self):
        with pytest.raises(ValueError, match='timezone-aware'):
            advance_status(_make_record(), 'running', now=datetime(2026, 3, 2))


class TestTerminalTransitions:
    def test_fail_freezes_progress(self):
        record = _make_record(status='provisioning_db', progress_percent=37)
        failed = fail_session(
            record, now=_t(3), error_code='REMOTE_TRANSIENT', error_detail='boom',
        )
        assert failed.status == 'failed'
        assert failed.progress_percent == 37
        assert failed.error_code == 'REMOTE_TRANSIENT'
        assert failed.error_detail == 'boom'

    def test_fail_records_failing_stage(self):
        record = _make_record(status='provisioning_db', stage='database')
        failed = fail_session(
            record, now=_t(3), error_code='X', error_detail='x', stage='deployment',
        )
        assert failed.stage == 'deployment'

    def test_fail_without_stage_keeps_current(self):
        record = _make_record(status='provisioning_db', stage='database')
        failed = fail_session(record, now=_t(3), error_code='X', error_detail='x')
        assert failed.stage == 'database'

    def test_fail_twice_raises(self):
        record = fail_session(
            _make_record(status='running'), now=_t(1), error_code='X', error_detail='x',
        )
        with pytest.raises(InvalidStateTransition):
            fail_session(record, now=_t(2), error_code='Y', error_detail='y')

    def test_complete_requires_finalizing(self):
        with pytest.raises(InvalidStateTransition):
            complete_session(_make_record(status='generating_code'), now=_t(1))
