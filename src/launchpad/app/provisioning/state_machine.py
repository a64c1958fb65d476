"""Session status state machine.

Canonical flow for one provisioning session:
  pending -> running -> validating -> provisioning_repo
  -> provisioning_db -> provisioning_deploy -> generating_code
  -> finalizing -> completed

Error transition:
  any non-terminal status -> failed

``running`` is entered exactly once. Sub-stage statuses only move
forward; a stage that is skipped may be passed through or jumped over,
but a status never moves back. Terminal records are frozen: status,
progress, and results no longer change (log may still grow).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import SessionRecord

STATUS_SEQUENCE = (
    'pending',
    'running',
    'validating',
    'provisioning_repo',
    'provisioning_db',
    'provisioning_deploy',
    'generating_code',
    'finalizing',
    'completed',
)

TERMINAL_STATUSES = frozenset({'completed', 'failed'})

_STATUS_RANK = MappingProxyType(
    {status: rank for rank, status in enumerate(STATUS_SEQUENCE)}
)

# Status reported while a given stage is executing.
STAGE_STATUS = MappingProxyType(
    {
        'repository': 'provisioning_repo',
        'database': 'provisioning_db',
        'deployment': 'provisioning_deploy',
        'codegen': 'generating_code',
        'finalize': 'finalizing',
    }
)


class InvalidStateTransition(ValueError):
    """Raised for invalid session status transitions."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f'invalid status transition: {from_status!r} -> {to_status!r}'
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_status: str, to_status: str) -> bool:
    """Return True when ``from_status -> to_status`` is allowed."""
    if from_status in TERMINAL_STATUSES:
        return False
    if to_status == 'failed':
        return True
    if to_status not in _STATUS_RANK:
        return False
    if from_status == 'pending':
        return to_status == 'running'
    if to_status == 'completed':
        return from_status == 'finalizing'
    return _STATUS_RANK[to_status] > _STATUS_RANK[from_status]


def advance_status(
    record: SessionRecord,
    to_status: str,
    *,
    now: datetime,
    stage: str | None = None,
) -> SessionRecord:
    """Move a non-terminal record forward to ``to_status``.

    Advancing to the status the record already holds is a no-op apart
    from the optional ``stage`` update.
    """
    _require_aware_datetime(now)
    if to_status == record.status and not is_terminal(record.status):
        if stage is None or stage == record.stage:
            return record
        return replace(record, stage=stage, updated_at=now)
    if to_status in TERMINAL_STATUSES:
        raise InvalidStateTransition(record.status, to_status)
    if not can_transition(record.status, to_status):
        raise InvalidStateTransition(record.status, to_status)
    return replace(
        record,
        status=to_status,
        stage=stage if stage is not None else record.stage,
        updated_at=now,
    )


def complete_session(record: SessionRecord, *, now: datetime) -> SessionRecord:
    """Terminal success: progress jumps to exactly 100."""
    _require_aware_datetime(now)
    if not can_transition(record.status, 'completed'):
        raise InvalidStateTransition(record.status, 'completed')
    return replace(
        record,
        status='completed',
        progress_percent=100,
        updated_at=now,
    )


def fail_session(
    record: SessionRecord,
    *,
    now: datetime,
    error_code: str,
    error_detail: str,
    stage: str | None = None,
) -> SessionRecord:
    """Terminal failure: progress is frozen at its last value.

    ``stage`` names the stage that failed; None keeps the current one.
    """
    _require_aware_datetime(now)
    if not can_transition(record.status, 'failed'):
        raise InvalidStateTransition(record.status, 'failed')
    return replace(
        record,
        status='failed',
        stage=stage if stage is not None else record.stage,
        error_code=error_code,
        error_detail=error_detail,
        updated_at=now,
    )


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
