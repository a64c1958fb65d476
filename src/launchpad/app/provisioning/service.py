"""Session service: the trigger and poll entry points.

``start_session()`` is the external trigger: it validates the request,
fixes the capability plan, persists a ``pending`` record, and hands the
session to the runner, returning before any stage executes.
``get_status()`` is the read-only accessor polled by remote clients.
"""

from __future__ import annotations

import logging
from typing import Any

from launchpad.app.db.session_store import SessionNotFound, SessionStore

from .orchestrator import Clock, utc_now
from .runner import SessionRunner
from .session import (
    ProjectRequest,
    SessionRecord,
    new_session_record,
    plan_capabilities,
    status_payload,
)

logger = logging.getLogger(__name__)

MAX_PROJECT_NAME_LENGTH = 100


class InvalidProjectRequest(ValueError):
    """Raised when a project request cannot start a session."""


def validate_request(request: ProjectRequest) -> None:
    name = request.project_name.strip() if request.project_name else ''
    if not name:
        raise InvalidProjectRequest('project_name is required')
    if len(name) > MAX_PROJECT_NAME_LENGTH:
        raise InvalidProjectRequest(
            f'project_name must be at most {MAX_PROJECT_NAME_LENGTH} characters'
        )
    if request.repository_url is not None and not request.repository_url.startswith(
        ('https://', 'http://', 'git@'),
    ):
        raise InvalidProjectRequest('repository_url must be an http(s) or ssh URL')


class SessionService:
    def __init__(
        self,
        *,
        store: SessionStore,
        runner: SessionRunner,
        clock: Clock = utc_now,
        poll_hint_seconds: float | None = 1.5,
    ) -> None:
        self._store = store
        self._runner = runner
        self._clock = clock
        self._poll_hint_seconds = poll_hint_seconds

    async def start_session(self, request: ProjectRequest) -> SessionRecord:
        """Create a ``pending`` session and start it in the background."""
        validate_request(request)
        plan = plan_capabilities(request)
        record = new_session_record(request, plan, now=self._clock())
        await self._store.create(record)
        logger.info(
            'Session created',
            extra={
                'session_id': record.id,
                'template_ref': record.template_ref,
                'required': sorted(plan.required),
                'optional': sorted(plan.optional),
            },
        )
        self._runner.launch(record.id, request)
        return record

    async def get_status(self, session_id: str, *, log_offset: int = 0) -> dict[str, Any]:
        """Return the poll projection for ``session_id``.

        Raises ``SessionNotFound`` for unknown ids.
        """
        record = await self._store.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return status_payload(
            record,
            log_offset=log_offset,
            poll_after_seconds=self._poll_hint_seconds,
        )

    async def list_active(self) -> list[dict[str, Any]]:
        records = await self._store.list_sessions(active_only=True)
        return [
            {
                'id': r.id,
                'project_name': r.project_name,
                'status': r.status,
                'stage': r.stage,
                'progress_percent': r.progress_percent,
                'running': self._runner.is_running(r.id),
            }
            for r in records
        ]
