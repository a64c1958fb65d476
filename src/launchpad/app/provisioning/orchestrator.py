"""Provisioning orchestrator: drives one session through its stages.

Stage graph for one session:

  validate -> repository -> (database || deployment-create)
           -> deployment-ready -> codegen -> finalize

Database and deployment creation run concurrently and are joined before
the deployment's environment is configured, because the configuration
step writes the database connection values.

For each stage outcome the orchestrator decides:
  - succeeded: store the result (if the stage records one), advance.
  - skipped:   log the reason, consume the stage's progress band, advance.
  - failed:    retry after backoff while the error is retryable and the
               stage's attempt budget lasts; then fail the session if the
               stage is required, or log a warning and skip it if optional.

``run()`` never raises for provisioning failures: whatever happens, the
session ends ``completed`` or ``failed`` with a well-formed record.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from launchpad.app.db.session_store import SessionNotFound, SessionStore
from launchpad.app.observability.logging import session_id_ctx
from launchpad.app.observability.metrics import (
    SESSIONS_FINISHED_TOTAL,
    SESSIONS_IN_FLIGHT,
    SESSIONS_STARTED_TOTAL,
)
from launchpad.app.protocols import Notifier

from . import progress
from .errors import (
    INTERNAL_ERROR_CODE,
    ConfigurationError,
    PartialSuccessWarning,
    ProvisioningError,
)
from .session import (
    CAPABILITY_STAGES,
    CapabilityPlan,
    LogEntry,
    ProjectRequest,
    SessionRecord,
    plan_capabilities,
)
from .stage_executor import (
    DEFAULT_STAGE_POLICIES,
    Skipped,
    StageContext,
    StageExecutor,
    StagePolicy,
    Succeeded,
)
from .stages import Collaborators, build_executors
from .state_machine import STAGE_STATUS, advance_status, complete_session, fail_session

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]

NOTIFY_TIMEOUT_SECONDS = 10.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _SessionAborted(Exception):
    """A required stage failed; the session record is already ``failed``."""

    def __init__(self, stage: str | None) -> None:
        self.stage = stage
        super().__init__(f'session aborted at {stage or "validation"}')


class Orchestrator:
    """Runs provisioning sessions against injected collaborators.

    One orchestrator is shared by all sessions of a process. Per-run
    state (executors, stage context) is built fresh for every ``run()``
    call, so concurrent sessions share nothing but the store.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        collaborators: Collaborators,
        policies: Mapping[str, StagePolicy] = DEFAULT_STAGE_POLICIES,
        notifier: Notifier | None = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._collaborators = collaborators
        self._policies = policies
        self._notifier = notifier
        self._clock = clock
        self._sleep = sleep

    async def run(self, session_id: str, request: ProjectRequest) -> SessionRecord | None:
        """Drive ``session_id`` to a terminal status and return the final record."""
        token = session_id_ctx.set(session_id)
        SESSIONS_STARTED_TOTAL.inc()
        SESSIONS_IN_FLIGHT.inc()
        try:
            try:
                await self._execute(session_id, request)
            except _SessionAborted as aborted:
                logger.info(
                    'Session aborted',
                    extra={'session_id': session_id, 'stage': aborted.stage},
                )
            except SessionNotFound:
                logger.error('Session vanished from store', extra={'session_id': session_id})
                return None
            except Exception as exc:
                logger.exception('Orchestrator failed unexpectedly', extra={'session_id': session_id})
                await self._fail_internal(session_id, exc)

            record = await self._store.get(session_id)
            if record is not None and record.is_terminal:
                SESSIONS_FINISHED_TOTAL.labels(
                    status=record.status, error_code=record.error_code or '',
                ).inc()
                event = 'session.completed' if record.status == 'completed' else 'session.failed'
                await self._notify(session_id, _event(event, record))
            return record
        finally:
            SESSIONS_IN_FLIGHT.dec()
            session_id_ctx.reset(token)

    # ── Stage graph ──────────────────────────────────────────────────

    async def _execute(self, session_id: str, request: ProjectRequest) -> None:
        record = await self._store.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)

        # Requirements were fixed at creation; the request only supplies the
        # reasons stages are not run.
        plan = CapabilityPlan(
            required=record.required_capabilities,
            optional=record.optional_capabilities,
            not_run=plan_capabilities(request).not_run,
        )
        not_run = plan.not_run
        executors = build_executors(self._collaborators, self._policies)
        context = StageContext(
            session_id=session_id,
            request=request,
            report=functools.partial(self._report, session_id),
        )

        await self._notify(session_id, _event('session.started', record))
        await self._advance(session_id, 'running')
        await self._log(
            session_id,
            'info',
            f'Provisioning {request.project_name} from template {request.template.ref}',
        )

        # Validate
        await self._advance(session_id, 'validating')
        await self._report(session_id, 'validate', 'checking')
        await self._validate(session_id, record, request)
        await self._report(session_id, 'validate', 'ready')

        # Repository
        await self._advance(session_id, STAGE_STATUS['repository'], stage='repository')
        await self._run_stage(session_id, executors.repository, context, 'required')

        # Database || deployment creation
        db_level = plan.requirement('database')
        deploy_level = plan.requirement('deployment')
        first_stage = 'database' if db_level != 'none' else 'deployment'
        await self._advance(session_id, STAGE_STATUS[first_stage], stage=first_stage)

        branches = []
        if db_level == 'none':
            await self._report_not_run(session_id, 'database', not_run)
        else:
            branches.append(self._run_stage(session_id, executors.database, context, db_level))
        if deploy_level == 'none':
            await self._report_not_run(session_id, 'deployment', not_run)
        else:
            branches.append(
                self._run_stage(session_id, executors.deployment_create, context, deploy_level),
            )
        outcomes = await asyncio.gather(*branches, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        # Deployment configuration and first deploy
        if deploy_level != 'none':
            await self._advance(session_id, STAGE_STATUS['deployment'], stage='deployment')
            if executors.deployment_create.handle.site_id is not None:
                await self._run_stage(
                    session_id,
                    executors.deployment_ready,
                    context,
                    deploy_level,
                    announce=False,
                )

        # Code generation
        codegen_level = plan.requirement('codegen')
        await self._advance(session_id, STAGE_STATUS['codegen'], stage='codegen')
        if codegen_level == 'none':
            await self._report_not_run(session_id, 'codegen', not_run)
        else:
            await self._run_stage(session_id, executors.codegen, context, codegen_level)

        await self._finalize(session_id, context)

    async def _validate(
        self, session_id: str, record: SessionRecord, request: ProjectRequest,
    ) -> None:
        needed = set(record.required_capabilities)
        if request.repository_url:
            needed.discard('repository')
        if 'codegen' in needed:
            # Generated files are committed through the repository provisioner.
            needed.add('repository')
        for stage in CAPABILITY_STAGES:
            if stage in needed and getattr(self._collaborators, stage) is None:
                error = ConfigurationError(
                    f'{stage} is required but no {stage} provider is configured',
                    code=f'{stage.upper()}_UNAVAILABLE',
                )
                await self._fail(session_id, error, stage=None)
                raise _SessionAborted(None)

    async def _run_stage(
        self,
        session_id: str,
        executor: StageExecutor,
        context: StageContext,
        requirement: str,
        *,
        announce: bool = True,
    ) -> Mapping[str, Any] | None:
        """Run one stage to success, skip, or exhaustion.

        Returns the stage result, or None when the stage was skipped.
        Raises ``_SessionAborted`` after failing the session when a
        required stage cannot succeed.
        """
        stage = executor.stage
        policy = executor.policy
        if announce:
            await self._report(session_id, stage, 'starting')

        attempt = 0
        while True:
            attempt += 1
            outcome = await executor.execute(context, attempt=attempt)

            if isinstance(outcome, Succeeded):
                if executor.records_result:
                    await self._record_result(session_id, stage, outcome.result)
                    context.results[stage] = outcome.result
                await self._report(session_id, stage, executor.completion_sub_status)
                return outcome.result

            if isinstance(outcome, Skipped):
                await self._report(session_id, stage, progress.SKIPPED, outcome.reason)
                return None

            error = outcome.error
            if outcome.retryable and attempt < policy.max_attempts:
                delay = policy.backoff_delay(attempt)
                logger.warning(
                    'Stage attempt failed, retrying: %s',
                    error.message,
                    extra={
                        'session_id': session_id,
                        'stage': stage,
                        'attempt': attempt,
                        'error_code': error.code,
                        'delay_seconds': round(delay, 2),
                    },
                )
                await self._log(
                    session_id,
                    'warning',
                    f'{progress.format_line(stage, "attempt failed", error.message)}; '
                    f'retry {attempt + 1}/{policy.max_attempts} in {delay:.1f}s',
                    stage=stage,
                )
                await self._sleep(delay)
                continue

            if requirement == 'required':
                await self._fail(session_id, error, stage=stage)
                raise _SessionAborted(stage)

            warning = PartialSuccessWarning(stage, error)
            logger.warning(
                warning.message,
                extra={'session_id': session_id, 'stage': stage, 'error_code': warning.code},
            )
            await self._report(
                session_id, stage, progress.SKIPPED, error.message, level='warning',
            )
            record = await self._store.get(session_id)
            if record is not None:
                event = _event('stage.degraded', record)
                event.update(stage=stage, error_code=warning.code, error_detail=error.message)
                await self._notify(session_id, event)
            return None

    async def _finalize(self, session_id: str, context: StageContext) -> None:
        await self._advance(session_id, STAGE_STATUS['finalize'], stage='finalize')
        await self._report(session_id, 'finalize', 'summarizing')
        for stage, result in context.results.items():
            urls = ', '.join(
                f'{key}={value}' for key, value in sorted(result.items())
                if key.endswith('_url') and value
            )
            if urls:
                await self._log(
                    session_id, 'info', progress.format_line(stage, 'ready', urls), stage=stage,
                )
        await self._report(session_id, 'finalize', 'ready')

        now = self._clock()
        entry = LogEntry(now, 'success', 'Project is ready', stage='finalize')
        await self._store.update(
            session_id, lambda r: complete_session(r.append_log(entry), now=now),
        )

    # ── Record mutations ─────────────────────────────────────────────

    async def _advance(self, session_id: str, status: str, *, stage: str | None = None) -> None:
        now = self._clock()

        def mutate(record: SessionRecord) -> SessionRecord:
            if record.is_terminal:
                return record
            return advance_status(record, status, now=now, stage=stage)

        await self._store.update(session_id, mutate)

    async def _report(
        self,
        session_id: str,
        stage: str,
        sub_status: str,
        detail: str | None = None,
        level: str | None = None,
    ) -> None:
        update = progress.report(stage, sub_status, detail, level=level)
        now = self._clock()
        entry = LogEntry(
            now,
            update.level,
            update.message,
            stage=None if stage == 'validate' else stage,
        )

        def mutate(record: SessionRecord) -> SessionRecord:
            record = record.append_log(entry)
            if record.is_terminal:
                return record
            return record.with_progress(update.percent, now=now)

        await self._store.update(session_id, mutate)

    async def _report_not_run(
        self, session_id: str, stage: str, reasons: Mapping[str, str],
    ) -> None:
        await self._report(
            session_id, stage, progress.SKIPPED, reasons.get(stage, 'not required'),
        )

    async def _log(
        self, session_id: str, level: str, message: str, *, stage: str | None = None,
    ) -> None:
        entry = LogEntry(self._clock(), level, message, stage=stage)
        await self._store.update(session_id, lambda r: r.append_log(entry))

    async def _record_result(
        self, session_id: str, stage: str, result: Mapping[str, Any],
    ) -> None:
        now = self._clock()

        def mutate(record: SessionRecord) -> SessionRecord:
            if record.is_terminal:
                return record
            return record.with_result(stage, result, now=now)

        await self._store.update(session_id, mutate)

    async def _fail(
        self, session_id: str, error: ProvisioningError, *, stage: str | None,
    ) -> None:
        now = self._clock()
        label = progress.format_line(stage or 'validate', 'failed', error.message)
        entry = LogEntry(now, 'error', f'{label} [{error.code}]', stage=stage)

        def mutate(record: SessionRecord) -> SessionRecord:
            if record.is_terminal:
                return record.append_log(entry)
            return fail_session(
                record.append_log(entry),
                now=now,
                error_code=error.code,
                error_detail=error.message,
                stage=stage,
            )

        await self._store.update(session_id, mutate)
        logger.error(
            'Session failed: %s',
            error.message,
            extra={'session_id': session_id, 'stage': stage, 'error_code': error.code},
        )

    async def _fail_internal(self, session_id: str, exc: Exception) -> None:
        error = ProvisioningError(
            f'internal error: {type(exc).__name__}: {exc}', code=INTERNAL_ERROR_CODE,
        )
        try:
            record = await self._store.get(session_id)
            await self._fail(session_id, error, stage=record.stage if record else None)
        except Exception:
            logger.exception(
                'Could not mark session failed', extra={'session_id': session_id},
            )

    # ── Notifications ────────────────────────────────────────────────

    async def _notify(self, session_id: str, event: dict[str, Any]) -> None:
        """Deliver ``event`` best-effort; failures only add a warning line."""
        if self._notifier is None:
            return
        try:
            await asyncio.wait_for(
                self._notifier.notify(event), timeout=NOTIFY_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.warning(
                'Notification %s failed: %r',
                event.get('event'),
                exc,
                extra={'session_id': session_id},
            )
            await self._log(
                session_id,
                'warning',
                f'Notification {event.get("event")} could not be delivered: '
                f'{exc or type(exc).__name__}',
            )


def _event(name: str, record: SessionRecord) -> dict[str, Any]:
    """Notifier payload; carries URLs only, never connection values."""
    return {
        'event': name,
        'session_id': record.id,
        'project_name': record.project_name,
        'template_ref': record.template_ref,
        'status': record.status,
        'progress_percent': record.progress_percent,
        'error_code': record.error_code,
        'error_detail': record.error_detail,
        'urls': {
            f'{stage}.{key}': value
            for stage, result in record.results.items()
            for key, value in result.items()
            if key.endswith('_url') and value
        },
        'timestamp': (record.updated_at or utc_now()).isoformat(),
    }
