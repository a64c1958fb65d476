"""Launchpad FastAPI application factory.

The create_app() factory is the single entry point for building the launchpad
ASGI application. It wires middleware (request-ID, metrics, CORS), the session
poll routes, and injects the session store and capability collaborators via
dependency injection.

Usage:
    # Local development (in-memory collaborators)
    from launchpad.app import create_app, LaunchpadSettings
    app = create_app(LaunchpadSettings())

    # Non-local (real collaborators injected)
    settings = LaunchpadSettings.from_env()
    app = create_app(settings, repository_provisioner=github, ...)

    # Testing (full DI control)
    app = create_app(settings, session_store=store, database_provisioner=fake, ...)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from launchpad import __version__

from .db.session_store import InMemorySessionStore, SessionStore
from .observability import configure_logging, metrics_text
from .observability.middleware import MetricsMiddleware, RequestIdMiddleware
from .operations.stale_session_detector import StaleSessionDetector
from .protocols import (
    CodeGenerator,
    DatabaseProvisioner,
    DeploymentProvisioner,
    Notifier,
    RepositoryProvisioner,
)
from .provisioning.orchestrator import Orchestrator, utc_now
from .provisioning.runner import SessionRunner
from .provisioning.service import SessionService
from .provisioning.stages import Collaborators
from .routes.sessions import create_sessions_router
from .settings import LaunchpadSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for the process-wide provisioning objects.

    Stored on ``app.state.deps``. Constructed once per app and torn down
    by the lifespan; nothing here is a module-level singleton.
    """

    store: SessionStore
    collaborators: Collaborators
    notifier: Notifier | None
    orchestrator: Orchestrator
    runner: SessionRunner
    service: SessionService
    stale_detector: StaleSessionDetector


def _build_inmemory_collaborators() -> Collaborators:
    """Construct all-InMemory collaborators for local development."""
    from .inmemory import (
        InMemoryCodeGenerator,
        InMemoryDatabaseProvisioner,
        InMemoryDeploymentProvisioner,
        InMemoryRepositoryProvisioner,
    )

    return Collaborators(
        repository=InMemoryRepositoryProvisioner(),
        database=InMemoryDatabaseProvisioner(),
        deployment=InMemoryDeploymentProvisioner(),
        codegen=InMemoryCodeGenerator(),
    )


def build_dependencies(
    settings: LaunchpadSettings,
    *,
    session_store: SessionStore | None = None,
    collaborators: Collaborators,
    notifier: Notifier | None = None,
) -> AppDependencies:
    """Wire store, orchestrator, runner, service, and stale detector."""
    store = session_store or InMemorySessionStore()
    if notifier is None and settings.notify_webhook_url:
        from .providers.webhook_notifier import WebhookNotifier

        notifier = WebhookNotifier(url=settings.notify_webhook_url)

    orchestrator = Orchestrator(
        store=store,
        collaborators=collaborators,
        policies=settings.stage_policies,
        notifier=notifier,
    )
    runner = SessionRunner(orchestrator, store=store)
    return AppDependencies(
        store=store,
        collaborators=collaborators,
        notifier=notifier,
        orchestrator=orchestrator,
        runner=runner,
        service=SessionService(
            store=store,
            runner=runner,
            poll_hint_seconds=settings.status_poll_hint_seconds,
        ),
        stale_detector=StaleSessionDetector(
            store,
            stale_after_seconds=settings.stale_session_seconds,
            is_owned=runner.is_running,
        ),
    )


async def _sweep_periodically(detector: StaleSessionDetector, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            report = await detector.sweep(now=utc_now())
        except Exception:
            logger.exception("Stale-session sweep failed")
            continue
        if report.stale_count:
            logger.warning(
                "Stale-session sweep failed %d session(s)",
                report.stale_count,
                extra={"stale_by_status": report.stale_by_status},
            )


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: LaunchpadSettings | None = None,
    *,
    session_store: SessionStore | None = None,
    repository_provisioner: RepositoryProvisioner | None = None,
    database_provisioner: DatabaseProvisioner | None = None,
    deployment_provisioner: DeploymentProvisioner | None = None,
    code_generator: CodeGenerator | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Create a configured launchpad FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        session_store: Session store override. Defaults to in-memory.
        repository_provisioner..code_generator: Capability overrides.
            When None, local mode uses InMemory implementations. Non-local
            mode requires a repository provisioner; other capabilities may
            be absent, and sessions requiring them fail at validation.
        notifier: Event notifier. Defaults to a webhook notifier when
            ``notify_webhook_url`` is set.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
        ValueError: If a non-local environment has no repository provisioner.
    """
    if settings is None:
        settings = LaunchpadSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Launchpad settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if settings.is_local:
        # Local mode: fill any missing collaborators with InMemory
        defaults = _build_inmemory_collaborators()
        collaborators = Collaborators(
            repository=repository_provisioner or defaults.repository,
            database=database_provisioner or defaults.database,
            deployment=deployment_provisioner or defaults.deployment,
            codegen=code_generator or defaults.codegen,
        )
    else:
        if repository_provisioner is None:
            raise ValueError(
                f"Non-local environment ({settings.environment}) requires a "
                "repository_provisioner to be explicitly provided"
            )
        collaborators = Collaborators(
            repository=repository_provisioner,
            database=database_provisioner,
            deployment=deployment_provisioner,
            codegen=code_generator,
        )

    deps = build_dependencies(
        settings,
        session_store=session_store,
        collaborators=collaborators,
        notifier=notifier,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(level=settings.log_level, json_output=settings.log_json)
        logger.info("Launchpad startup (environment=%s)", settings.environment)

        report = await deps.stale_detector.sweep(now=utc_now())
        if report.stale_count:
            logger.warning(
                "Failed %d stale session(s) left by a previous process",
                report.stale_count,
            )

        sweeper: asyncio.Task | None = None
        if settings.stale_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(
                _sweep_periodically(
                    deps.stale_detector, settings.stale_sweep_interval_seconds,
                ),
                name="stale-session-sweep",
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper
            cancelled = await deps.runner.shutdown(settings.shutdown_grace_seconds)
            # Notifiers holding HTTP connections expose aclose().
            aclose = getattr(deps.notifier, "aclose", None)
            if aclose is not None:
                await aclose()
            logger.info(
                "Launchpad shutdown",
                extra={"cancelled_sessions": cancelled},
            )

    app = FastAPI(
        title="Launchpad",
        description="Project provisioning orchestrator with session status polling",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────
    # Order of execution: RequestID -> Metrics -> CORS -> route handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "active_sessions": len(deps.runner.active_ids()),
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics exposition endpoint."""
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_sessions_router(deps.service))

    return app


# For uvicorn, use --factory flag:
#   uvicorn launchpad.app.main:create_app --factory
# This avoids executing create_app() at import time.
