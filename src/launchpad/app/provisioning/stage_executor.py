"""Stage Executor contract: one capability call under a timeout.

An executor runs exactly one attempt per ``execute()`` call and returns a
``StageOutcome``:

  Succeeded(result)   the capability call completed
  Skipped(reason)     there was nothing for this stage to do
  Failed(error)       normalized ``ProvisioningError`` (with ``retryable``)

Executors never decide skip-vs-fail for a failed call; that belongs to the
orchestrator, which also owns the between-attempt retry/backoff loop using
the executor's ``StagePolicy``. Inside an attempt an executor may:

  - poll remote status every ``poll_interval_seconds``,
  - report sub-status through ``StageContext.report``,
  - apply one corrective transform on ``RemoteRejectedError``
    (see ``StageExecutor.correct``).
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from launchpad.app.observability.metrics import (
    STAGE_ATTEMPT_DURATION_SECONDS,
    STAGE_ATTEMPTS_TOTAL,
)

from .errors import (
    ProvisioningError,
    RemoteRejectedError,
    StageTimeoutError,
    normalize_error,
)
from .session import ProjectRequest

logger = logging.getLogger(__name__)


# ── Policy ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class StagePolicy:
    """Timeout, polling, and retry parameters for one stage.

    Attributes:
        timeout_seconds: Wall-clock bound for a single attempt.
        poll_interval_seconds: Interval between remote status checks
            inside an attempt.
        max_attempts: Total attempts, including the first.
        backoff_base_seconds: Delay before the second attempt; doubles
            per attempt.
        backoff_max_seconds: Upper bound for the backoff delay.
        jitter: Randomize each delay within [delay/2, delay].
    """

    timeout_seconds: float
    poll_interval_seconds: float = 10.0
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    jitter: bool = True

    def backoff_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        exponent = max(attempt - 1, 0)
        delay = min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)
        if self.jitter and delay > 0:
            return random.uniform(delay / 2, delay)
        return delay

    def validate(self, stage: str, *, min_poll_interval: float = 0.0) -> list[str]:
        errors: list[str] = []
        if self.timeout_seconds <= 0:
            errors.append(f'{stage}: timeout_seconds must be > 0')
        if self.max_attempts < 1:
            errors.append(f'{stage}: max_attempts must be >= 1')
        if self.poll_interval_seconds < min_poll_interval:
            errors.append(
                f'{stage}: poll_interval_seconds must be >= {min_poll_interval:g}'
            )
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            errors.append(f'{stage}: backoff must be non-negative')
        return errors


DEFAULT_STAGE_POLICIES: Mapping[str, StagePolicy] = MappingProxyType(
    {
        'repository': StagePolicy(timeout_seconds=60, poll_interval_seconds=5, max_attempts=3),
        'database': StagePolicy(
            timeout_seconds=900,
            poll_interval_seconds=10,
            max_attempts=2,
            backoff_base_seconds=5,
        ),
        'deployment': StagePolicy(
            timeout_seconds=600,
            poll_interval_seconds=10,
            max_attempts=3,
            backoff_base_seconds=5,
        ),
        'codegen': StagePolicy(
            timeout_seconds=600,
            poll_interval_seconds=5,
            max_attempts=2,
            backoff_base_seconds=5,
        ),
    }
)


# ── Outcomes ─────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Succeeded:
    result: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    error: ProvisioningError

    @property
    def retryable(self) -> bool:
        return self.error.retryable


StageOutcome = Union[Succeeded, Skipped, Failed]


class StageSkipped(Exception):
    """Raised inside an attempt when the stage has nothing to do."""


# ── Context ──────────────────────────────────────────────────────────

# (stage, sub_status, detail, level) -> persisted progress update
ReportFn = Callable[[str, str, Optional[str], Optional[str]], Awaitable[None]]


@dataclass
class StageContext:
    """Per-session inputs shared by all executors of one run.

    ``results`` holds the result payloads of stages that already
    succeeded, keyed by stage name.
    """

    session_id: str
    request: ProjectRequest
    report: ReportFn
    results: dict[str, Mapping[str, Any]] = field(default_factory=dict)


# ── Executor ─────────────────────────────────────────────────────────


class StageExecutor:
    """Base executor: timeout, error normalization, one-shot correction.

    Subclasses implement ``_attempt()``. ``records_result`` controls
    whether a success is stored in the session's ``results``;
    ``completion_sub_status`` is what the orchestrator reports on success.
    """

    stage: str = ''
    records_result: bool = True
    completion_sub_status: str = 'ready'

    def __init__(self, policy: StagePolicy) -> None:
        self.policy = policy
        self._corrected = False

    async def execute(self, context: StageContext, *, attempt: int) -> StageOutcome:
        """Run one attempt and normalize whatever happens into an outcome."""
        started = time.monotonic()
        outcome: StageOutcome
        try:
            result = await asyncio.wait_for(
                self._attempt_with_correction(context),
                timeout=self.policy.timeout_seconds,
            )
        except StageSkipped as skip:
            outcome = Skipped(reason=str(skip))
        except asyncio.TimeoutError:
            outcome = Failed(
                StageTimeoutError(
                    f'{self.stage} attempt {attempt} exceeded '
                    f'{self.policy.timeout_seconds:g}s'
                )
            )
        except Exception as exc:
            error = normalize_error(exc)
            if error is not exc:
                logger.debug(
                    'Normalized %s failure: %r -> %s',
                    self.stage,
                    exc,
                    type(error).__name__,
                )
            outcome = Failed(error)
        else:
            outcome = Succeeded(result=MappingProxyType(dict(result)))

        STAGE_ATTEMPTS_TOTAL.labels(
            stage=self.stage, outcome=type(outcome).__name__.lower(),
        ).inc()
        STAGE_ATTEMPT_DURATION_SECONDS.labels(stage=self.stage).observe(
            time.monotonic() - started,
        )
        return outcome

    def correct(self, error: RemoteRejectedError) -> str | None:
        """Apply a corrective transform for a rejection.

        Return a description of the correction to retry once, or None
        when the rejection cannot be corrected.
        """
        return None

    async def _attempt(self, context: StageContext) -> Mapping[str, Any]:
        raise NotImplementedError

    async def _attempt_with_correction(
        self, context: StageContext,
    ) -> Mapping[str, Any]:
        try:
            return await self._attempt(context)
        except RemoteRejectedError as exc:
            if self._corrected:
                raise
            description = self.correct(exc)
            if description is None:
                raise
            self._corrected = True
            await self._report(context, 'creating', description, level='warning')
            return await self._attempt(context)

    async def _report(
        self,
        context: StageContext,
        sub_status: str,
        detail: str | None = None,
        *,
        level: str | None = None,
    ) -> None:
        await context.report(self.stage, sub_status, detail, level)
