"""Capability protocol interfaces for dependency injection.

These protocols define the contracts that concrete collaborators
(repository host, database host, deployment host, AI provider, notifier)
must satisfy. The orchestrator only sees these shapes; wire formats and
collaborator-specific errors stay behind them. InMemory implementations
for local development live in ``inmemory.py``.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable


@runtime_checkable
class RepositoryProvisioner(Protocol):
    """Create or fork a source repository from a template, and commit to it.

    ``provision`` returns a mapping with at least ``repo_url``.
    """

    async def provision(self, template_ref: str, name: str) -> Mapping[str, Any]: ...

    async def commit_files(
        self,
        repo_url: str,
        files: Sequence[Mapping[str, str]],
        *,
        message: str,
    ) -> Mapping[str, Any]:
        """Commit ``files`` (``path`` and ``content``) as one commit.

        Returns a mapping with ``commit_sha``.
        """
        ...


@runtime_checkable
class DatabaseProvisioner(Protocol):
    """Create a managed database; may poll remote readiness internally.

    Returns a mapping with ``connection_string`` and ``database_name``.
    """

    async def provision(self, name: str, org_hint: str | None) -> Mapping[str, Any]: ...


@runtime_checkable
class DeploymentProvisioner(Protocol):
    """Deployment target lifecycle: create, configure, await first deploy."""

    async def create(
        self,
        repo_url: str,
        env_vars: Mapping[str, str],
        *,
        name: str,
    ) -> Mapping[str, Any]:
        """Create a site; returns ``site_id`` and ``site_url``."""
        ...

    async def configure_env(self, site_id: str, env_vars: Mapping[str, str]) -> None: ...

    async def await_deploy_ready(self, site_id: str, timeout: float) -> Mapping[str, Any]:
        """Wait up to ``timeout`` seconds; returns ``ready`` and optional ``error``."""
        ...


@runtime_checkable
class CodeGenerator(Protocol):
    """Generate project files from free-form requirements.

    Returns a mapping with ``files``: a sequence of mappings carrying
    ``path`` and ``content``.
    """

    async def generate(
        self, requirements: str, template_files: Sequence[str],
    ) -> Mapping[str, Any]: ...


@runtime_checkable
class Notifier(Protocol):
    """Best-effort session event delivery."""

    async def notify(self, event: Mapping[str, Any]) -> None: ...
