"""Session status poll API.

Exposes provisioning progress to remote clients:
  GET /api/v1/sessions/{session_id}  → status, percent, log, results
  GET /api/v1/sessions               → active sessions

Both endpoints are read-only; sessions are started by the trigger that
owns ``SessionService.start_session``. Clients poll the status endpoint
every ``poll_after_seconds`` until ``terminal`` is true, passing
``log_offset=next_log_offset`` to fetch only new log lines.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from launchpad.app.db.session_store import SessionNotFound
from launchpad.app.provisioning.service import SessionService


# ── Response schemas ──────────────────────────────────────────────────


class LogEntryModel(BaseModel):
    timestamp: str
    level: str
    message: str
    stage: str | None = None


class SessionStatusResponse(BaseModel):
    id: str
    project_name: str
    template_ref: str
    status: str
    stage: str | None = None
    progress_percent: int
    terminal: bool
    log: list[LogEntryModel]
    log_offset: int
    next_log_offset: int
    results: dict[str, dict[str, Any]]
    required_capabilities: list[str]
    optional_capabilities: list[str]
    error_code: str | None = None
    error_detail: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    poll_after_seconds: float | None = None


class ActiveSessionModel(BaseModel):
    id: str
    project_name: str
    status: str
    stage: str | None = None
    progress_percent: int
    running: bool


class ActiveSessionsResponse(BaseModel):
    sessions: list[ActiveSessionModel]


# ── Route factory ─────────────────────────────────────────────────────


def create_sessions_router(service: SessionService) -> APIRouter:
    """Create the session poll router.

    Args:
        service: Session service answering status reads.

    Returns:
        FastAPI router with session status endpoints.
    """
    router = APIRouter(tags=['sessions'])

    @router.get(
        '/api/v1/sessions/{session_id}',
        response_model=SessionStatusResponse,
        response_model_exclude_none=False,
    )
    async def get_session_status(
        session_id: str,
        log_offset: int = Query(default=0, ge=0),
    ):
        """Get the current status projection for a session.

        Unknown ids return 404 with a JSON error body; every known id
        returns a well-formed payload, including failed sessions.
        """
        try:
            return await service.get_status(session_id, log_offset=log_offset)
        except SessionNotFound:
            return JSONResponse(
                status_code=404,
                content={
                    'error': 'session_not_found',
                    'detail': f'No provisioning session {session_id!r}.',
                },
            )

    @router.get('/api/v1/sessions', response_model=ActiveSessionsResponse)
    async def list_active_sessions():
        """List sessions that have not reached a terminal status."""
        return {'sessions': await service.list_active()}

    return router
