"""Launchpad configuration settings.

LaunchpadSettings is the single configuration object accepted by create_app().
It is intentionally a plain dataclass (not env-coupled) so tests can inject config
without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from .provisioning.stage_executor import DEFAULT_STAGE_POLICIES, StagePolicy

ENVIRONMENTS = frozenset({"local", "dev", "staging", "production"})

DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
)

# Remote provisioning APIs rate-limit status checks below this interval.
MIN_REMOTE_POLL_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class LaunchpadSettings:
    """Configuration for the launchpad FastAPI application.

    All fields have sensible defaults for local development.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Stages ─────────────────────────────────────────────────────
    stage_policies: Mapping[str, StagePolicy] = field(
        default_factory=lambda: DEFAULT_STAGE_POLICIES,
    )
    """Per-stage timeout, poll interval, and retry budget."""

    # ── Notifications ──────────────────────────────────────────────
    notify_webhook_url: str = ""
    """Webhook receiving session events. Empty disables notifications."""

    # ── Sessions ───────────────────────────────────────────────────
    stale_session_seconds: int = 3600
    """Idle time after which an unowned active session is failed."""

    stale_sweep_interval_seconds: int = 300
    """Interval between stale-session sweeps. 0 disables the periodic sweep."""

    shutdown_grace_seconds: float = 30.0
    """How long shutdown waits for in-flight sessions before cancelling."""

    status_poll_hint_seconds: float = 1.5
    """Suggested client poll interval, echoed in status payloads."""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    """Allowed CORS origins."""

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.environment not in ENVIRONMENTS:
            errors.append(
                f"environment must be one of {sorted(ENVIRONMENTS)}, "
                f"got {self.environment!r}"
            )
        min_poll = 0.0 if self.is_local else MIN_REMOTE_POLL_INTERVAL_SECONDS
        for stage, policy in sorted(self.stage_policies.items()):
            if stage not in DEFAULT_STAGE_POLICIES:
                errors.append(f"unknown stage in stage_policies: {stage!r}")
                continue
            errors.extend(policy.validate(stage, min_poll_interval=min_poll))
        if self.stale_session_seconds <= 0:
            errors.append("stale_session_seconds must be > 0")
        if self.stale_sweep_interval_seconds < 0:
            errors.append("stale_sweep_interval_seconds must be >= 0")
        if self.shutdown_grace_seconds < 0:
            errors.append("shutdown_grace_seconds must be >= 0")
        if self.status_poll_hint_seconds <= 0:
            errors.append("status_poll_hint_seconds must be > 0")
        if self.notify_webhook_url and not self.notify_webhook_url.startswith(
            ("http://", "https://"),
        ):
            errors.append("notify_webhook_url must be an http(s) URL")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> LaunchpadSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct LaunchpadSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) if cors_raw else DEFAULT_CORS_ORIGINS

        policies = dict(DEFAULT_STAGE_POLICIES)
        for var, attr, cast in (
            ("STAGE_TIMEOUTS", "timeout_seconds", float),
            ("STAGE_MAX_ATTEMPTS", "max_attempts", int),
            ("STAGE_POLL_INTERVALS", "poll_interval_seconds", float),
        ):
            for stage, value in _parse_pairs(env.get(var, "")).items():
                if stage not in policies:
                    raise ValueError(f"{var}: unknown stage {stage!r}")
                try:
                    policies[stage] = replace(policies[stage], **{attr: cast(value)})
                except ValueError:
                    raise ValueError(f"{var}: invalid value {value!r} for {stage}") from None

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            stage_policies=MappingProxyType(policies),
            notify_webhook_url=env.get("NOTIFY_WEBHOOK_URL", ""),
            stale_session_seconds=int(env.get("STALE_SESSION_SECONDS", "3600")),
            stale_sweep_interval_seconds=int(env.get("STALE_SWEEP_INTERVAL_SECONDS", "300")),
            shutdown_grace_seconds=float(env.get("SHUTDOWN_GRACE_SECONDS", "30")),
            status_poll_hint_seconds=float(env.get("STATUS_POLL_HINT_SECONDS", "1.5")),
            cors_origins=cors,
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_json=env.get("LOG_FORMAT", "json") == "json",
        )


def _parse_pairs(raw: str) -> dict[str, str]:
    """Parse ``stage=value,stage=value``."""
    pairs: dict[str, str] = {}
    if raw:
        for pair in raw.split(","):
            if "=" in pair:
                key, value = pair.split("=", 1)
                pairs[key.strip()] = value.strip()
    return pairs
