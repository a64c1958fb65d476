"""Concrete stage executors, one per provisioning concern.

Each executor wraps a single capability call. Collaborators may be
missing (``None``); a missing collaborator is a ``ConfigurationError``
so a required stage fails fast and an optional one is skipped.

The deployment concern is split in two executors so the site can be
created while the database is still provisioning:

  DeploymentCreateStage  create the site with phase-1 env vars
  DeploymentReadyStage   write phase-2 env vars, await the first deploy

Both share a ``DeploymentHandle`` so a retried ready-check never creates
a second site.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from launchpad.app.protocols import (
    CodeGenerator,
    DatabaseProvisioner,
    DeploymentProvisioner,
    RepositoryProvisioner,
)

from .env_vars import configuration_env, creation_env
from .errors import ConfigurationError, RemoteRejectedError
from .stage_executor import (
    DEFAULT_STAGE_POLICIES,
    StageContext,
    StageExecutor,
    StagePolicy,
    StageSkipped,
)

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r'[^a-z0-9]+')

# Rejection codes that a disambiguating name suffix can fix.
NAME_CONFLICT_CODES = frozenset({'NAME_CONFLICT', 'HTTP_409', 'HTTP_422'})

DEPLOY_FAILED_CODE = 'DEPLOY_FAILED'


def project_slug(value: str) -> str:
    """Lowercase, hyphen-separated name safe for repo and site names."""
    slug = _SLUG_RE.sub('-', value.lower()).strip('-')
    return slug or 'project'


def _timestamp_suffix() -> str:
    return str(int(time.time()))


class _NamedResourceStage(StageExecutor):
    """Executor creating a named remote resource.

    A name collision is corrected once by appending a suffix.
    """

    def __init__(
        self,
        policy: StagePolicy,
        *,
        suffix: Callable[[], str] = _timestamp_suffix,
    ) -> None:
        super().__init__(policy)
        self._suffix = suffix
        self.name: str | None = None

    def _resource_name(self, context: StageContext) -> str:
        if self.name is None:
            self.name = project_slug(context.request.project_name)
        return self.name

    def correct(self, error: RemoteRejectedError) -> str | None:
        if error.code not in NAME_CONFLICT_CODES or self.name is None:
            return None
        self.name = f'{self.name}-{self._suffix()}'
        return f'name taken, retrying as {self.name}'


# ── Repository ───────────────────────────────────────────────────────


class RepositoryStage(_NamedResourceStage):
    stage = 'repository'

    def __init__(
        self,
        policy: StagePolicy,
        provisioner: RepositoryProvisioner | None,
        **kwargs: Any,
    ) -> None:
        super().__init__(policy, **kwargs)
        self._provisioner = provisioner

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        request = context.request
        name = self._resource_name(context)
        if request.repository_url:
            await self._report(context, 'creating', 'using existing repository')
            return {'repo_url': request.repository_url, 'name': name, 'adopted': True}
        if self._provisioner is None:
            raise ConfigurationError(
                'no repository provisioner is configured',
                code='REPOSITORY_UNAVAILABLE',
            )
        await self._report(context, 'creating', f'{name} from {request.template.ref}')
        created = await self._provisioner.provision(request.template.ref, self.name)
        repo_url = created.get('repo_url')
        if not repo_url:
            raise RemoteRejectedError(
                'repository provisioner returned no repo_url',
                code='REPOSITORY_INVALID_RESULT',
            )
        return {'repo_url': repo_url, 'name': self.name}


# ── Database ─────────────────────────────────────────────────────────


class DatabaseStage(StageExecutor):
    """Provision a managed database.

    The provisioner may block for minutes while the remote side comes up;
    the executor reports a ``provisioning`` heartbeat every poll interval
    so the session log shows the stage is alive.
    """

    stage = 'database'

    def __init__(
        self,
        policy: StagePolicy,
        provisioner: DatabaseProvisioner | None,
    ) -> None:
        super().__init__(policy)
        self._provisioner = provisioner

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        if self._provisioner is None:
            raise ConfigurationError(
                'no database provisioner is configured',
                code='DATABASE_UNAVAILABLE',
            )
        request = context.request
        name = project_slug(request.project_name)
        await self._report(context, 'creating', name)

        started = time.monotonic()
        task = asyncio.ensure_future(
            self._provisioner.provision(name, request.database_org_hint),
        )
        try:
            while True:
                done, _ = await asyncio.wait(
                    {task}, timeout=self.policy.poll_interval_seconds,
                )
                if done:
                    break
                elapsed = int(time.monotonic() - started)
                await self._report(context, 'provisioning', f'{elapsed}s elapsed')
        finally:
            if not task.done():
                task.cancel()

        created = task.result()
        if not created.get('connection_string') or not created.get('database_name'):
            raise RemoteRejectedError(
                'database provisioner returned an incomplete result',
                code='DATABASE_INVALID_RESULT',
            )
        logger.info(
            'Database provisioned',
            extra={'session_id': context.session_id, 'database_name': created['database_name']},
        )
        return {
            'connection_string': created['connection_string'],
            'database_name': created['database_name'],
        }


# ── Deployment ───────────────────────────────────────────────────────


@dataclass
class DeploymentHandle:
    """Site created by ``DeploymentCreateStage``; reused across attempts."""

    name: str | None = None
    site_id: str | None = None
    site_url: str | None = None


class DeploymentCreateStage(_NamedResourceStage):
    """Create the deployment site; runs concurrently with the database.

    Success is not recorded in ``results``: the deployment result is only
    written once the first deploy is ready.
    """

    stage = 'deployment'
    records_result = False
    completion_sub_status = 'created'

    def __init__(
        self,
        policy: StagePolicy,
        provisioner: DeploymentProvisioner | None,
        handle: DeploymentHandle,
        **kwargs: Any,
    ) -> None:
        super().__init__(policy, **kwargs)
        self._provisioner = provisioner
        self.handle = handle

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        if self.handle.site_id is not None:
            return {'site_id': self.handle.site_id, 'site_url': self.handle.site_url}
        if self._provisioner is None:
            raise ConfigurationError(
                'no deployment provisioner is configured',
                code='DEPLOYMENT_UNAVAILABLE',
            )
        repository = context.results.get('repository')
        if not repository:
            raise StageSkipped('no repository to deploy')

        name = self._resource_name(context)
        env = creation_env(context.request)
        logger.info(
            'Creating deployment site',
            extra={'session_id': context.session_id, 'site_name': name, 'env_vars': sorted(env)},
        )
        await self._report(context, 'creating', name)
        created = await self._provisioner.create(
            repository['repo_url'], env, name=self.name,
        )
        site_id = created.get('site_id')
        if not site_id:
            raise RemoteRejectedError(
                'deployment provisioner returned no site_id',
                code='DEPLOYMENT_INVALID_RESULT',
            )
        self.handle.name = self.name
        self.handle.site_id = site_id
        self.handle.site_url = created.get('site_url')
        return {'site_id': site_id, 'site_url': self.handle.site_url}


class DeploymentReadyStage(StageExecutor):
    """Write connection values into the site and wait for its first deploy.

    Must run after the database stage has finished (or been skipped).
    The remote readiness check is paced at the stage's poll interval; the
    stage timeout bounds the whole wait.
    """

    stage = 'deployment'

    def __init__(
        self,
        policy: StagePolicy,
        provisioner: DeploymentProvisioner | None,
        handle: DeploymentHandle,
    ) -> None:
        super().__init__(policy)
        self._provisioner = provisioner
        self.handle = handle

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        site_id = self.handle.site_id
        if site_id is None:
            raise StageSkipped('no deployment site was created')
        if self._provisioner is None:
            raise ConfigurationError(
                'no deployment provisioner is configured',
                code='DEPLOYMENT_UNAVAILABLE',
            )

        env = configuration_env(
            context.request,
            database=context.results.get('database'),
            site_url=self.handle.site_url,
        )
        if env:
            await self._report(context, 'configuring', ', '.join(sorted(env)))
            await self._provisioner.configure_env(site_id, env)
        else:
            await self._report(context, 'configuring', 'no variables to update')

        await self._report(context, 'deploying')
        interval = self.policy.poll_interval_seconds
        while True:
            started = time.monotonic()
            status = await self._provisioner.await_deploy_ready(site_id, interval)
            if status.get('ready'):
                break
            if status.get('error'):
                raise RemoteRejectedError(
                    f'deploy failed: {status["error"]}', code=DEPLOY_FAILED_CODE,
                )
            await self._report(context, 'deploying', 'waiting for first deploy')
            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

        return {
            'site_id': site_id,
            'site_url': self.handle.site_url,
            'deploy_url': status.get('deploy_url') or self.handle.site_url,
        }


# ── Code generation ──────────────────────────────────────────────────


class CodegenStage(StageExecutor):
    """Generate project files and commit them to the new repository.

    Generated files are kept across attempts, so a failed commit is
    retried without generating again.
    """

    stage = 'codegen'

    def __init__(
        self,
        policy: StagePolicy,
        generator: CodeGenerator | None,
        repository: RepositoryProvisioner | None = None,
    ) -> None:
        super().__init__(policy)
        self._generator = generator
        self._repository = repository
        self._generated: tuple[dict[str, str], ...] | None = None

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        request = context.request
        if not request.wants_codegen:
            raise StageSkipped('no project requirements supplied')
        if self._generator is None:
            raise ConfigurationError(
                'no code generator is configured',
                code='CODEGEN_UNAVAILABLE',
            )
        repository = context.results.get('repository')
        if not repository:
            raise StageSkipped('no repository to commit to')
        if self._repository is None:
            raise ConfigurationError(
                'no repository provisioner is configured to commit generated files',
                code='REPOSITORY_UNAVAILABLE',
            )

        if self._generated is None:
            await self._report(context, 'generating')
            generated = await self._generator.generate(
                request.requirements, list(request.template.files),
            )
            self._generated = _generated_files(generated)
        files = self._generated
        paths = tuple(f['path'] for f in files)
        if not files:
            return {'files': (), 'file_count': 0, 'commit_sha': None}

        await self._report(context, 'committing', f'{len(files)} files')
        committed = await self._repository.commit_files(
            repository['repo_url'],
            files,
            message=f'Generate initial code for {request.project_name}',
        )
        logger.info(
            'Committed generated files',
            extra={
                'session_id': context.session_id,
                'file_count': len(files),
                'commit_sha': committed.get('commit_sha'),
            },
        )
        return {
            'files': paths,
            'file_count': len(files),
            'commit_sha': committed.get('commit_sha'),
        }


def _generated_files(generated: Mapping[str, Any]) -> tuple[dict[str, str], ...]:
    files = []
    for item in generated.get('files', ()):
        if not isinstance(item, Mapping) or not item.get('path') or 'content' not in item:
            raise RemoteRejectedError(
                'code generator returned a file without path or content',
                code='CODEGEN_INVALID_RESULT',
            )
        files.append({'path': str(item['path']), 'content': str(item['content'])})
    return tuple(files)


# ── Wiring ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Collaborators:
    """Capability implementations available to the orchestrator."""

    repository: RepositoryProvisioner | None = None
    database: DatabaseProvisioner | None = None
    deployment: DeploymentProvisioner | None = None
    codegen: CodeGenerator | None = None


@dataclass(frozen=True, slots=True)
class SessionExecutors:
    """Fresh executors for one session run.

    Executors hold per-run state (corrected names, the deployment
    handle), so they are never shared across sessions.
    """

    repository: RepositoryStage
    database: DatabaseStage
    deployment_create: DeploymentCreateStage
    deployment_ready: DeploymentReadyStage
    codegen: CodegenStage


def build_executors(
    collaborators: Collaborators,
    policies: Mapping[str, StagePolicy] = DEFAULT_STAGE_POLICIES,
) -> SessionExecutors:
    def policy(stage: str) -> StagePolicy:
        return policies.get(stage) or DEFAULT_STAGE_POLICIES[stage]

    handle = DeploymentHandle()
    return SessionExecutors(
        repository=RepositoryStage(policy('repository'), collaborators.repository),
        database=DatabaseStage(policy('database'), collaborators.database),
        deployment_create=DeploymentCreateStage(
            policy('deployment'), collaborators.deployment, handle,
        ),
        deployment_ready=DeploymentReadyStage(
            policy('deployment'), collaborators.deployment, handle,
        ),
        codegen=CodegenStage(
            policy('codegen'), collaborators.codegen, collaborators.repository,
        ),
    )
