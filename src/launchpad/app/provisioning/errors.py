"""Provisioning error taxonomy.

Stage executors translate every collaborator failure into one of these
types before handing it to the orchestrator, so the orchestrator only
ever branches on ``retryable`` and never on collaborator-specific shapes.

  TransientRemoteError   network blips, rate limits       retryable
  RemoteRejectedError    remote validation (name clash)   retryable only
                                                          after correction
  StageTimeoutError      attempt exceeded wall clock      retryable
  ConfigurationError     missing credential/capability    fatal
  PartialSuccessWarning  optional stage failed            never fatal
"""

from __future__ import annotations

import asyncio

import httpx

INTERNAL_ERROR_CODE = 'INTERNAL_ERROR'
STAGE_TIMEOUT_CODE = 'STAGE_TIMEOUT'


class ProvisioningError(Exception):
    """Base class for normalized provisioning failures."""

    retryable: bool = False
    default_code: str = 'PROVISIONING_ERROR'

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if retryable is not None:
            self.retryable = retryable


class TransientRemoteError(ProvisioningError):
    """Network error, rate limit, or 5xx from a remote collaborator."""

    retryable = True
    default_code = 'REMOTE_TRANSIENT'


class RemoteRejectedError(ProvisioningError):
    """The remote side rejected the request (e.g. name collision).

    Not retryable as-is. A stage executor may apply a corrective
    transform once and try again within the same attempt.
    """

    retryable = False
    default_code = 'REMOTE_REJECTED'


class StageTimeoutError(ProvisioningError):
    """A stage attempt exceeded its wall-clock bound."""

    retryable = True
    default_code = STAGE_TIMEOUT_CODE


class ConfigurationError(ProvisioningError):
    """A required credential or collaborator is missing."""

    retryable = False
    default_code = 'CONFIGURATION_ERROR'


class PartialSuccessWarning(ProvisioningError):
    """An optional stage failed; the session continues without it."""

    retryable = False
    default_code = 'PARTIAL_SUCCESS'

    def __init__(self, stage: str, cause: ProvisioningError) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(
            f'optional stage {stage!r} skipped: {cause.message}',
            code=cause.code,
        )


_CONFIGURATION_STATUSES = frozenset({401, 403})


def normalize_error(exc: BaseException) -> ProvisioningError:
    """Map an arbitrary exception into the provisioning taxonomy."""
    if isinstance(exc, ProvisioningError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return StageTimeoutError('attempt timed out')
    if isinstance(exc, httpx.TimeoutException):
        return TransientRemoteError(f'remote request timed out: {exc}')
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = f'remote returned HTTP {status}: {_response_excerpt(exc.response)}'
        if status in _CONFIGURATION_STATUSES:
            return ConfigurationError(detail, code=f'HTTP_{status}')
        if status == 429 or status >= 500:
            return TransientRemoteError(detail, code=f'HTTP_{status}')
        return RemoteRejectedError(detail, code=f'HTTP_{status}')
    if isinstance(exc, httpx.TransportError):
        return TransientRemoteError(f'remote unreachable: {exc}')
    # Unknown collaborator failures are treated as transient; the stage's
    # attempt budget bounds them.
    return TransientRemoteError(str(exc) or type(exc).__name__)


def _response_excerpt(response: httpx.Response) -> str:
    try:
        body = response.text
    except httpx.ResponseNotRead:
        return ''
    return body[:200]
