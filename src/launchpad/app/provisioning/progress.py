"""Progress Reporter: (stage, sub-status) -> percent complete + log line.

Each stage owns a fixed percent band; its sub-statuses divide the band
evenly and the last sub-status (``ready``) lands on the band's upper
edge. Bands are contiguous and ordered, so percent is strictly
increasing across stage boundaries, and a retried stage re-reports the
same band rather than a lower one. ``finalize``/``ready`` is exactly 100.

Pure functions only; the orchestrator decides what to persist.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

# ``validate`` is not a capability stage but gets the leading band.
STAGE_BANDS: Mapping[str, tuple[int, int]] = MappingProxyType(
    {
        'validate': (0, 5),
        'repository': (5, 25),
        'database': (25, 45),
        'deployment': (45, 75),
        'codegen': (75, 95),
        'finalize': (95, 100),
    }
)

STAGE_SUB_STATUSES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        'validate': ('checking', 'ready'),
        'repository': ('starting', 'creating', 'ready'),
        'database': ('starting', 'creating', 'provisioning', 'ready'),
        'deployment': (
            'starting',
            'creating',
            'created',
            'configuring',
            'deploying',
            'ready',
        ),
        'codegen': ('starting', 'generating', 'committing', 'ready'),
        'finalize': ('summarizing', 'ready'),
    }
)

# Sub-status used when a stage is skipped: the band is consumed.
SKIPPED = 'skipped'

_STAGE_LABELS: Mapping[str, str] = MappingProxyType(
    {
        'validate': 'Validation',
        'repository': 'Repository',
        'database': 'Database',
        'deployment': 'Deployment',
        'codegen': 'Code generation',
        'finalize': 'Finalize',
    }
)


class UnknownProgressPoint(ValueError):
    """Raised for a stage/sub-status pair the reporter does not know."""

    def __init__(self, stage: str, sub_status: str) -> None:
        self.stage = stage
        self.sub_status = sub_status
        super().__init__(f'unknown progress point: {stage!r}/{sub_status!r}')


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """A percent value plus the log line describing the transition."""

    stage: str
    sub_status: str
    percent: int
    level: str
    message: str


def stage_percent(stage: str, sub_status: str) -> int:
    """Return overall percent complete for ``stage`` at ``sub_status``."""
    band = STAGE_BANDS.get(stage)
    subs = STAGE_SUB_STATUSES.get(stage)
    if band is None or subs is None:
        raise UnknownProgressPoint(stage, sub_status)
    low, high = band
    if sub_status == SKIPPED:
        return high
    try:
        index = subs.index(sub_status)
    except ValueError:
        raise UnknownProgressPoint(stage, sub_status) from None
    # floor keeps every non-final sub-status strictly below ``high``.
    return low + ((high - low) * (index + 1)) // len(subs)


def format_line(
    stage: str,
    sub_status: str,
    detail: str | None = None,
) -> str:
    label = _STAGE_LABELS.get(stage, stage)
    state = sub_status.replace('_', ' ')
    if detail:
        return f'{label}: {state} ({detail})'
    return f'{label}: {state}'


def report(
    stage: str,
    sub_status: str,
    detail: str | None = None,
    *,
    level: str | None = None,
) -> ProgressUpdate:
    """Compute percent and log line for one stage transition.

    Level defaults to ``success`` for ``ready`` and ``info`` otherwise.
    """
    if level is None:
        level = 'success' if sub_status == 'ready' else 'info'
    return ProgressUpdate(
        stage=stage,
        sub_status=sub_status,
        percent=stage_percent(stage, sub_status),
        level=level,
        message=format_line(stage, sub_status, detail),
    )
