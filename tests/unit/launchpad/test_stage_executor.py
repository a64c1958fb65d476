"""Stage executor contract tests: outcomes, timeout, correction, policy."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from launchpad.app.provisioning.errors import (
    ConfigurationError,
    RemoteRejectedError,
    StageTimeoutError,
    TransientRemoteError,
)
from launchpad.app.provisioning.session import ProjectRequest, TemplateSpec
from launchpad.app.provisioning.stage_executor import (
    DEFAULT_STAGE_POLICIES,
    Failed,
    Skipped,
    StageContext,
    StageExecutor,
    StagePolicy,
    StageSkipped,
    Succeeded,
)


class _ScriptedStage(StageExecutor):
    """Executor whose attempts follow a script of results/exceptions."""

    stage = 'repository'

    def __init__(self, policy, script, *, correctable=False):
        super().__init__(policy)
        self.script = list(script)
        self.correctable = correctable
        self.attempts = 0

    async def _attempt(self, context):
        self.attempts += 1
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if step == 'hang':
            await asyncio.sleep(10)
        return step

    def correct(self, error):
        if self.correctable:
            return 'renamed to shop-2'
        return None


def _make_context():
    reports = []

    async def report(stage, sub_status, detail, level):
        reports.append((stage, sub_status, detail, level))

    context = StageContext(
        session_id='ses_test',
        request=ProjectRequest(project_name='Shop', template=TemplateSpec(ref='acme/next')),
        report=report,
    )
    return context, reports


def _policy(**overrides) -> StagePolicy:
    fields = dict(timeout_seconds=1.0, poll_interval_seconds=0.01, jitter=False)
    fields.update(overrides)
    return StagePolicy(**fields)


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success(self):
        context, _ = _make_context()
        stage = _ScriptedStage(_policy(), [{'repo_url': 'https://git/x'}])
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome, Succeeded)
        assert outcome.result['repo_url'] == 'https://git/x'

    @pytest.mark.asyncio
    async def test_result_is_read_only(self):
        context, _ = _make_context()
        outcome = await _ScriptedStage(_policy(), [{'a': 1}]).execute(context, attempt=1)
        with pytest.raises(TypeError):
            outcome.result['a'] = 2

    @pytest.mark.asyncio
    async def test_skip(self):
        context, _ = _make_context()
        stage = _ScriptedStage(_policy(), [StageSkipped('nothing to do')])
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome, Skipped)
        assert outcome.reason == 'nothing to do'

    @pytest.mark.asyncio
    async def test_unknown_exception_normalized_to_transient(self):
        context, _ = _make_context()
        outcome = await _ScriptedStage(_policy(), [RuntimeError('boom')]).execute(
            context, attempt=1,
        )
        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, TransientRemoteError)
        assert outcome.retryable is True

    @pytest.mark.asyncio
    async def test_http_401_is_fatal(self):
        request = httpx.Request('POST', 'https://api.test')
        exc = httpx.HTTPStatusError(
            '401', request=request, response=httpx.Response(401, request=request),
        )
        context, _ = _make_context()
        outcome = await _ScriptedStage(_policy(), [exc]).execute(context, attempt=1)
        assert isinstance(outcome.error, ConfigurationError)
        assert outcome.retryable is False

    @pytest.mark.asyncio
    async def test_timeout_is_retryable_failure(self):
        context, _ = _make_context()
        stage = _ScriptedStage(_policy(timeout_seconds=0.02), ['hang'])
        outcome = await stage.execute(context, attempt=2)
        assert isinstance(outcome, Failed)
        assert isinstance(outcome.error, StageTimeoutError)
        assert outcome.retryable is True
        assert 'attempt 2' in outcome.error.message

    @pytest.mark.asyncio
    async def test_executor_never_retries_itself(self):
        context, _ = _make_context()
        stage = _ScriptedStage(_policy(), [TransientRemoteError('x'), {'ok': True}])
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome, Failed)
        assert stage.attempts == 1


class TestCorrection:
    @pytest.mark.asyncio
    async def test_rejection_corrected_once(self):
        context, reports = _make_context()
        stage = _ScriptedStage(
            _policy(),
            [RemoteRejectedError('taken', code='NAME_CONFLICT'), {'repo_url': 'u'}],
            correctable=True,
        )
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome, Succeeded)
        assert stage.attempts == 2
        assert reports == [('repository', 'creating', 'renamed to shop-2', 'warning')]

    @pytest.mark.asyncio
    async def test_second_rejection_is_final(self):
        context, _ = _make_context()
        stage = _ScriptedStage(
            _policy(),
            [RemoteRejectedError('taken'), RemoteRejectedError('taken again'), {'x': 1}],
            correctable=True,
        )
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome, Failed)
        assert outcome.error.message == 'taken again'
        assert outcome.retryable is False

    @pytest.mark.asyncio
    async def test_correction_not_reapplied_on_later_attempt(self):
        context, _ = _make_context()
        stage = _ScriptedStage(
            _policy(),
            [
                RemoteRejectedError('taken'),
                TransientRemoteError('blip'),
                RemoteRejectedError('taken'),
            ],
            correctable=True,
        )
        assert isinstance(await stage.execute(context, attempt=1), Failed)
        outcome = await stage.execute(context, attempt=2)
        assert isinstance(outcome.error, RemoteRejectedError)
        assert stage.attempts == 3

    @pytest.mark.asyncio
    async def test_uncorrectable_rejection(self):
        context, reports = _make_context()
        stage = _ScriptedStage(_policy(), [RemoteRejectedError('bad template')])
        outcome = await stage.execute(context, attempt=1)
        assert isinstance(outcome.error, RemoteRejectedError)
        assert reports == []


class TestStagePolicy:
    def test_exponential_backoff_without_jitter(self):
        policy = _policy(backoff_base_seconds=2.0, backoff_max_seconds=60.0)
        assert [policy.backoff_delay(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_backoff_capped(self):
        policy = _policy(backoff_base_seconds=10.0, backoff_max_seconds=25.0)
        assert policy.backoff_delay(5) == 25.0

    def test_jitter_within_half_to_full_delay(self):
        policy = _policy(backoff_base_seconds=4.0, jitter=True)
        for _ in range(50):
            assert 4.0 <= policy.backoff_delay(2) <= 8.0

    def test_validate(self):
        policy = StagePolicy(timeout_seconds=0, max_attempts=0, poll_interval_seconds=1)
        errors = policy.validate('database', min_poll_interval=5)
        assert len(errors) == 3
        assert all(e.startswith('database:') for e in errors)

    def test_defaults_are_valid_for_remote_use(self):
        for stage, policy in DEFAULT_STAGE_POLICIES.items():
            assert policy.validate(stage, min_poll_interval=5) == []
