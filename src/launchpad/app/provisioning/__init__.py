"""Provisioning session model, state machine, and stage contracts.

The orchestrator, runner, and service modules are imported by their full
path; they depend on ``launchpad.app.db`` which itself depends on this
package's session model.
"""

from .errors import (
    ConfigurationError,
    PartialSuccessWarning,
    ProvisioningError,
    RemoteRejectedError,
    StageTimeoutError,
    TransientRemoteError,
    normalize_error,
)
from .progress import STAGE_BANDS, ProgressUpdate, stage_percent
from .session import (
    STAGE_ORDER,
    InvalidSessionUpdate,
    LogEntry,
    ProjectRequest,
    SessionRecord,
    TemplateSpec,
    plan_capabilities,
    status_payload,
)
from .stage_executor import (
    DEFAULT_STAGE_POLICIES,
    Failed,
    Skipped,
    StagePolicy,
    Succeeded,
)
from .state_machine import (
    STATUS_SEQUENCE,
    TERMINAL_STATUSES,
    InvalidStateTransition,
    advance_status,
    complete_session,
    fail_session,
)

__all__ = [
    'ConfigurationError',
    'DEFAULT_STAGE_POLICIES',
    'Failed',
    'InvalidSessionUpdate',
    'InvalidStateTransition',
    'LogEntry',
    'PartialSuccessWarning',
    'ProgressUpdate',
    'ProjectRequest',
    'ProvisioningError',
    'RemoteRejectedError',
    'STAGE_BANDS',
    'STAGE_ORDER',
    'STATUS_SEQUENCE',
    'SessionRecord',
    'Skipped',
    'StagePolicy',
    'StageTimeoutError',
    'Succeeded',
    'TERMINAL_STATUSES',
    'TemplateSpec',
    'TransientRemoteError',
    'advance_status',
    'complete_session',
    'fail_session',
    'normalize_error',
    'plan_capabilities',
    'stage_percent',
    'status_payload',
]
