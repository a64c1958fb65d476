"""Progress reporter tests: bands, monotonicity, log formatting."""

from __future__ import annotations

import pytest

from launchpad.app.provisioning.progress import (
    SKIPPED,
    STAGE_BANDS,
    STAGE_SUB_STATUSES,
    UnknownProgressPoint,
    format_line,
    report,
    stage_percent,
)

_ORDER = ('validate', 'repository', 'database', 'deployment', 'codegen', 'finalize')


class TestBands:
    def test_bands_are_contiguous_and_cover_0_to_100(self):
        assert tuple(STAGE_BANDS) == _ORDER
        edges = [STAGE_BANDS[stage] for stage in _ORDER]
        assert edges[0][0] == 0
        assert edges[-1][1] == 100
        for (_, high), (low, _) in zip(edges, edges[1:]):
            assert high == low

    def test_every_stage_ends_with_ready(self):
        for stage, subs in STAGE_SUB_STATUSES.items():
            assert subs[-1] == 'ready', stage


class TestStagePercent:
    def test_strictly_increasing_across_whole_run(self):
        sequence = [
            stage_percent(stage, sub)
            for stage in _ORDER
            for sub in STAGE_SUB_STATUSES[stage]
        ]
        assert sequence == sorted(sequence)
        assert len(set(sequence)) == len(sequence)

    def test_ready_lands_on_band_edge(self):
        for stage in _ORDER:
            assert stage_percent(stage, 'ready') == STAGE_BANDS[stage][1]

    def test_finalize_ready_is_exactly_100(self):
        assert stage_percent('finalize', 'ready') == 100

    def test_non_final_sub_status_stays_below_band_top(self):
        for stage in _ORDER:
            for sub in STAGE_SUB_STATUSES[stage][:-1]:
                assert stage_percent(stage, sub) < STAGE_BANDS[stage][1]

    def test_retried_stage_reports_same_band(self):
        first = stage_percent('database', 'creating')
        assert stage_percent('database', 'creating') == first
        assert stage_percent('database', 'creating') > stage_percent('repository', 'ready')

    def test_skipped_consumes_band(self):
        assert stage_percent('database', SKIPPED) == 45

    def test_examples(self):
        assert stage_percent('validate', 'checking') == 2
        assert stage_percent('repository', 'starting') == 11
        assert stage_percent('deployment', 'created') == 60

    @pytest.mark.parametrize('stage,sub', [('database', 'deploying'), ('billing', 'ready')])
    def test_unknown_points_raise(self, stage, sub):
        with pytest.raises(UnknownProgressPoint):
            stage_percent(stage, sub)


class TestReport:
    def test_ready_defaults_to_success(self):
        update = report('repository', 'ready')
        assert update.level == 'success'
        assert update.percent == 25
        assert update.message == 'Repository: ready'

    def test_other_sub_statuses_default_to_info(self):
        assert report('database', 'provisioning', '40s elapsed').level == 'info'

    def test_explicit_level(self):
        update = report('database', SKIPPED, 'quota exceeded', level='warning')
        assert update.level == 'warning'
        assert update.message == 'Database: skipped (quota exceeded)'

    def test_format_line(self):
        assert format_line('codegen', 'generating') == 'Code generation: generating'
        assert format_line('custom', 'some_state', 'x') == 'custom: some state (x)'
