"""Deployment environment variables for a provisioned project.

Composed in two phases so the deployment site can be created before the
database is ready:

  creation_env()       app name, generated auth secrets, placeholder URLs
  configuration_env()  database connection values and the real site URL

Values produced here are secrets; callers log variable names only.
"""

from __future__ import annotations

import secrets
from typing import Any, Mapping

from .session import ProjectRequest

PLACEHOLDER_SITE_URL = 'https://placeholder.invalid'

DATABASE_URL_VARS = frozenset({'DATABASE_URL', 'MONGODB_URI', 'POSTGRES_URL'})
DATABASE_NAME_VARS = frozenset({'MONGODB_DATABASE_NAME', 'DATABASE_NAME', 'POSTGRES_DATABASE'})
SECRET_VARS = frozenset({'AUTH_SECRET', 'BETTER_AUTH_SECRET', 'NEXTAUTH_SECRET', 'NUXT_SECRET_KEY'})
APP_NAME_VARS = frozenset({'VITE_APP_NAME', 'NEXT_PUBLIC_APP_NAME', 'NUXT_PUBLIC_APP_NAME'})
APP_URL_VARS = frozenset(
    {
        'VITE_APP_URL',
        'VITE_API_URL',
        'NEXT_PUBLIC_APP_URL',
        'NUXT_PUBLIC_API_URL',
        'BETTER_AUTH_URL',
        'NEXTAUTH_URL',
    }
)


def creation_env(request: ProjectRequest) -> dict[str, str]:
    """Variables known before any remote resource exists."""
    env: dict[str, str] = {}
    for name in request.template.env_vars:
        if name in SECRET_VARS:
            env[name] = secrets.token_hex(32)
        elif name in APP_NAME_VARS:
            env[name] = request.project_name
        elif name in APP_URL_VARS:
            env[name] = PLACEHOLDER_SITE_URL
    return env


def configuration_env(
    request: ProjectRequest,
    *,
    database: Mapping[str, Any] | None,
    site_url: str | None,
) -> dict[str, str]:
    """Variables that depend on the database result and the site URL.

    Database variables are omitted when the database stage produced no
    result (skipped or not required).
    """
    env: dict[str, str] = {}
    for name in request.template.env_vars:
        if name in DATABASE_URL_VARS and database:
            env[name] = str(database['connection_string'])
        elif name in DATABASE_NAME_VARS and database:
            env[name] = str(database['database_name'])
        elif name in APP_URL_VARS and site_url:
            env[name] = site_url
    return env
