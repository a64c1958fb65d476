"""Session persistence for the provisioning orchestrator."""

from .session_store import (
    InMemorySessionStore,
    SessionAlreadyExists,
    SessionNotFound,
    SessionStore,
)

__all__ = [
    "InMemorySessionStore",
    "SessionAlreadyExists",
    "SessionNotFound",
    "SessionStore",
]
