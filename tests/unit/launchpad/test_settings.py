"""Settings parsing and validation tests."""

from __future__ import annotations

import pytest

from launchpad.app import LaunchpadSettings, create_app
from launchpad.app.provisioning.stage_executor import DEFAULT_STAGE_POLICIES, StagePolicy
from launchpad.app.settings import DEFAULT_CORS_ORIGINS


class TestDefaults:
    def test_local_defaults_are_valid(self):
        settings = LaunchpadSettings()
        assert settings.is_local
        assert settings.validate() == []
        assert settings.cors_origins == DEFAULT_CORS_ORIGINS

    def test_default_policies_valid_outside_local(self):
        assert LaunchpadSettings(environment='production').validate() == []


class TestValidate:
    def test_unknown_environment(self):
        errors = LaunchpadSettings(environment='qa').validate()
        assert any('environment must be one of' in e for e in errors)

    def test_fast_polling_only_allowed_locally(self):
        policies = dict(DEFAULT_STAGE_POLICIES)
        policies['deployment'] = StagePolicy(timeout_seconds=60, poll_interval_seconds=1)
        assert LaunchpadSettings(stage_policies=policies).validate() == []
        errors = LaunchpadSettings(environment='staging', stage_policies=policies).validate()
        assert errors == ['deployment: poll_interval_seconds must be >= 5']

    def test_unknown_stage(self):
        errors = LaunchpadSettings(
            stage_policies={'dns': StagePolicy(timeout_seconds=5)},
        ).validate()
        assert errors == ["unknown stage in stage_policies: 'dns'"]

    @pytest.mark.parametrize(
        'overrides',
        [
            {'stale_session_seconds': 0},
            {'stale_sweep_interval_seconds': -1},
            {'shutdown_grace_seconds': -1},
            {'status_poll_hint_seconds': 0},
            {'notify_webhook_url': 'ftp://hooks.test'},
        ],
    )
    def test_invalid_values(self, overrides):
        assert len(LaunchpadSettings(**overrides).validate()) == 1


class TestFromEnv:
    def test_empty_env_gives_defaults(self):
        settings = LaunchpadSettings.from_env({})
        assert settings.environment == 'local'
        assert dict(settings.stage_policies) == dict(DEFAULT_STAGE_POLICIES)
        assert settings.log_json is True

    def test_parses_values(self):
        settings = LaunchpadSettings.from_env(
            {
                'ENVIRONMENT': 'staging',
                'CORS_ORIGINS': 'https://a.test, https://b.test',
                'STAGE_TIMEOUTS': 'database=1200,codegen=300',
                'STAGE_MAX_ATTEMPTS': 'repository=5',
                'STAGE_POLL_INTERVALS': 'deployment=15',
                'NOTIFY_WEBHOOK_URL': 'https://hooks.test/launchpad',
                'STALE_SESSION_SECONDS': '7200',
                'STALE_SWEEP_INTERVAL_SECONDS': '0',
                'LOG_FORMAT': 'console',
            }
        )
        assert settings.environment == 'staging'
        assert settings.cors_origins == ('https://a.test', 'https://b.test')
        assert settings.stage_policies['database'].timeout_seconds == 1200
        assert settings.stage_policies['database'].max_attempts == 2
        assert settings.stage_policies['codegen'].timeout_seconds == 300
        assert settings.stage_policies['repository'].max_attempts == 5
        assert settings.stage_policies['deployment'].poll_interval_seconds == 15
        assert settings.notify_webhook_url == 'https://hooks.test/launchpad'
        assert settings.stale_session_seconds == 7200
        assert settings.stale_sweep_interval_seconds == 0
        assert settings.log_json is False
        assert settings.validate() == []

    def test_unknown_stage_rejected(self):
        with pytest.raises(ValueError, match='unknown stage'):
            LaunchpadSettings.from_env({'STAGE_TIMEOUTS': 'dns=10'})

    def test_bad_value_rejected(self):
        with pytest.raises(ValueError, match='invalid value'):
            LaunchpadSettings.from_env({'STAGE_MAX_ATTEMPTS': 'database=many'})


class TestCreateApp:
    def test_invalid_settings_raise(self):
        with pytest.raises(ValueError, match='validation failed'):
            create_app(LaunchpadSettings(environment='qa'))

    def test_non_local_requires_repository_provisioner(self):
        with pytest.raises(ValueError, match='repository_provisioner'):
            create_app(LaunchpadSettings(environment='production'))

    def test_local_fills_inmemory_collaborators(self):
        app = create_app(LaunchpadSettings())
        collaborators = app.state.deps.collaborators
        assert collaborators.repository is not None
        assert collaborators.database is not None
        assert collaborators.deployment is not None
        assert collaborators.codegen is not None

    def test_webhook_notifier_from_settings(self):
        app = create_app(LaunchpadSettings(notify_webhook_url='https://hooks.test/x'))
        assert type(app.state.deps.notifier).__name__ == 'WebhookNotifier'
