"""Operational maintenance passes for provisioning sessions."""

from .stale_session_detector import (
    SESSION_STALE_CODE,
    StaleSessionDetector,
    StaleSessionEntry,
    SweepReport,
)

__all__ = [
    'SESSION_STALE_CODE',
    'StaleSessionDetector',
    'StaleSessionEntry',
    'SweepReport',
]
