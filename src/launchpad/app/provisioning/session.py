"""Session Record: durable state for one provisioning run.

A record is an immutable snapshot. Every persisted change produces a new
record, which is what lets the session store hand out consistent reads
while an update for the same session is in flight.

Invariants guarded by ``check_update()``:
  - ``log`` is append-only: the old log is always a prefix of the new one.
  - ``progress_percent`` never decreases while the session is active.
  - once terminal, status/progress/results/capabilities are frozen.
  - ``completed`` implies progress 100 and a result for every required
    capability.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Literal, Mapping

from .state_machine import TERMINAL_STATUSES

STAGE_ORDER = ('repository', 'database', 'deployment', 'codegen', 'finalize')
CAPABILITY_STAGES = ('repository', 'database', 'deployment', 'codegen')

LOG_LEVELS = frozenset({'info', 'warning', 'error', 'success'})

Requirement = Literal['required', 'optional', 'none']
_REQUIREMENTS = frozenset({'required', 'optional', 'none'})


class InvalidSessionUpdate(ValueError):
    """Raised when a store update would break a session invariant."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f'invalid update for session {session_id!r}: {reason}')


# ── Inputs ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class TemplateSpec:
    """What a project template needs from provisioning.

    Attributes:
        ref: Template repository reference handed to the repository
            provisioner (e.g. ``org/template-nextjs``).
        database: Whether the template needs a managed database.
        deployment: Whether the template needs a deployment target.
        codegen: Requirement level for code generation, applied only when
            the caller supplied free-form requirements.
        env_vars: Environment variable names the deployed app expects.
        files: Template file paths handed to the code generator.
    """

    ref: str
    database: Requirement = 'optional'
    deployment: Requirement = 'required'
    codegen: Requirement = 'required'
    env_vars: tuple[str, ...] = ()
    files: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.ref or not self.ref.strip():
            raise ValueError('template ref is required')
        for name in ('database', 'deployment', 'codegen'):
            value = getattr(self, name)
            if value not in _REQUIREMENTS:
                raise ValueError(f'template {name} requirement {value!r} is invalid')


@dataclass(frozen=True, slots=True)
class ProjectRequest:
    """Caller input for a new provisioning session."""

    project_name: str
    template: TemplateSpec
    requirements: str | None = None
    repository_url: str | None = None
    database_org_hint: str | None = None
    auto_setup: bool = True

    @property
    def wants_codegen(self) -> bool:
        return bool(self.requirements and self.requirements.strip())


@dataclass(frozen=True, slots=True)
class CapabilityPlan:
    """Which capability stages are required, optional, or not run."""

    required: frozenset[str]
    optional: frozenset[str]
    not_run: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({}),
    )

    def requirement(self, stage: str) -> Requirement:
        if stage in self.required:
            return 'required'
        if stage in self.optional:
            return 'optional'
        return 'none'


def plan_capabilities(request: ProjectRequest) -> CapabilityPlan:
    """Compute required/optional capability stages for a request.

    The repository is always required (adopting ``repository_url`` when
    given). Database and deployment follow the template unless
    ``auto_setup`` is off. Code generation runs only when the caller
    supplied requirements.
    """
    levels: dict[str, Requirement] = {'repository': 'required'}
    not_run: dict[str, str] = {}

    for stage in ('database', 'deployment'):
        level: Requirement = getattr(request.template, stage)
        if not request.auto_setup and level != 'none':
            not_run[stage] = 'automatic setup disabled'
            level = 'none'
        elif level == 'none':
            not_run[stage] = f'template {request.template.ref} does not use it'
        levels[stage] = level

    if request.wants_codegen:
        levels['codegen'] = request.template.codegen
        if request.template.codegen == 'none':
            not_run['codegen'] = f'template {request.template.ref} does not support it'
    else:
        levels['codegen'] = 'none'
        not_run['codegen'] = 'no project requirements supplied'

    return CapabilityPlan(
        required=frozenset(s for s, lvl in levels.items() if lvl == 'required'),
        optional=frozenset(s for s, lvl in levels.items() if lvl == 'optional'),
        not_run=MappingProxyType(not_run),
    )


# ── Record ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One immutable session log line."""

    timestamp: datetime
    level: str
    message: str
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'level': self.level,
            'message': self.message,
            'stage': self.stage,
        }


@dataclass(frozen=True, slots=True)
class SessionRecord:
    """State snapshot for one provisioning session."""

    id: str
    project_name: str
    template_ref: str
    required_capabilities: frozenset[str]
    optional_capabilities: frozenset[str] = frozenset()
    status: str = 'pending'
    stage: str | None = None
    progress_percent: int = 0
    log: tuple[LogEntry, ...] = ()
    results: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    error_code: str | None = None
    error_detail: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def append_log(self, entry: LogEntry) -> SessionRecord:
        if entry.level not in LOG_LEVELS:
            raise ValueError(f'unknown log level {entry.level!r}')
        return replace(self, log=(*self.log, entry), updated_at=entry.timestamp)

    def with_progress(self, percent: int, *, now: datetime) -> SessionRecord:
        """Raise progress to ``percent``; never lowers it.

        Terminal records are returned unchanged.
        """
        if self.is_terminal:
            return self
        bounded = max(0, min(100, int(percent)))
        if bounded <= self.progress_percent:
            return self
        return replace(self, progress_percent=bounded, updated_at=now)

    def with_result(
        self, stage: str, payload: Mapping[str, Any], *, now: datetime,
    ) -> SessionRecord:
        if self.is_terminal:
            raise InvalidSessionUpdate(self.id, 'results are frozen once terminal')
        results = dict(self.results)
        results[stage] = MappingProxyType(dict(payload))
        return replace(self, results=MappingProxyType(results), updated_at=now)


def new_session_record(
    request: ProjectRequest,
    plan: CapabilityPlan,
    *,
    now: datetime,
) -> SessionRecord:
    """Build the initial ``pending`` record for a request."""
    return SessionRecord(
        id=f'ses_{uuid.uuid4().hex}',
        project_name=request.project_name,
        template_ref=request.template.ref,
        required_capabilities=plan.required,
        optional_capabilities=plan.optional,
        created_at=now,
        updated_at=now,
    )


def check_update(before: SessionRecord, after: SessionRecord) -> None:
    """Raise ``InvalidSessionUpdate`` if ``after`` breaks an invariant."""
    sid = before.id
    if after.id != before.id:
        raise InvalidSessionUpdate(sid, 'id is immutable')
    if after.log[: len(before.log)] != before.log:
        raise InvalidSessionUpdate(sid, 'log is append-only')
    if (
        after.required_capabilities != before.required_capabilities
        or after.optional_capabilities != before.optional_capabilities
    ):
        raise InvalidSessionUpdate(sid, 'capabilities are fixed at creation')

    if before.is_terminal:
        if (
            after.status != before.status
            or after.progress_percent != before.progress_percent
            or dict(after.results) != dict(before.results)
        ):
            raise InvalidSessionUpdate(sid, f'session is {before.status}')
        return

    if after.progress_percent < before.progress_percent:
        raise InvalidSessionUpdate(
            sid,
            f'progress regressed {before.progress_percent} -> {after.progress_percent}',
        )
    if after.status == 'completed':
        if after.progress_percent != 100:
            raise InvalidSessionUpdate(sid, 'completed session must be at 100%')
        missing = sorted(after.required_capabilities - set(after.results))
        if missing:
            raise InvalidSessionUpdate(
                sid, f'required stages missing results: {", ".join(missing)}',
            )


# ── Poll projection ──────────────────────────────────────────────────


def status_payload(
    record: SessionRecord,
    *,
    log_offset: int = 0,
    poll_after_seconds: float | None = None,
) -> dict[str, Any]:
    """Read-only projection returned to polling clients.

    ``log_offset`` returns only the suffix of the log starting at that
    index, so clients can fetch incrementally. ``next_log_offset`` is the
    offset to send on the next poll.
    """
    offset = max(0, log_offset)
    payload: dict[str, Any] = {
        'id': record.id,
        'project_name': record.project_name,
        'template_ref': record.template_ref,
        'status': record.status,
        'stage': record.stage,
        'progress_percent': record.progress_percent,
        'terminal': record.is_terminal,
        'log': [entry.as_dict() for entry in record.log[offset:]],
        'log_offset': offset,
        'next_log_offset': len(record.log),
        'results': {stage: dict(data) for stage, data in record.results.items()},
        'required_capabilities': sorted(record.required_capabilities),
        'optional_capabilities': sorted(record.optional_capabilities),
        'error_code': record.error_code,
        'error_detail': record.error_detail,
        'created_at': record.created_at.isoformat() if record.created_at else None,
        'updated_at': record.updated_at.isoformat() if record.updated_at else None,
    }
    if poll_after_seconds is not None and not record.is_terminal:
        payload['poll_after_seconds'] = poll_after_seconds
    return payload
