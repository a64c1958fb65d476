"""Pytest configuration for launchpad tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from launchpad.app.provisioning.stage_executor import StagePolicy


@pytest.fixture
def fast_policies():
    """Stage policies with millisecond polling and no backoff delay."""
    policy = StagePolicy(
        timeout_seconds=2.0,
        poll_interval_seconds=0.01,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        jitter=False,
    )
    return {
        'repository': policy,
        'database': policy,
        'deployment': policy,
        'codegen': policy,
    }
