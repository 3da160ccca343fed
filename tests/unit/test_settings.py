"""Tests for PreflightSettings defaults, env loading and validation."""

from __future__ import annotations

import pytest

from profile_preflight.settings import (
    DEFAULT_MIN_SHELL_COMPATIBILITY_LEVEL,
    PreflightSettings,
)


class TestDefaults:
    def test_local_defaults_are_valid(self):
        settings = PreflightSettings()
        assert settings.is_local
        assert settings.validate() == []
        assert settings.min_shell_compatibility_level == 21
        assert settings.encryption_not_required is False
        assert settings.state_dir is None

    def test_settings_are_frozen(self):
        with pytest.raises(AttributeError):
            PreflightSettings().environment = 'production'  # type: ignore[misc]


class TestValidate:
    def test_non_local_requires_state_dir(self):
        errors = PreflightSettings(environment='production').validate()
        assert len(errors) == 1
        assert 'state_dir' in errors[0]

    def test_non_local_with_state_dir_is_valid(self):
        settings = PreflightSettings(
            environment='staging', state_dir='/var/lib/preflight',
        )
        assert settings.validate() == []

    def test_bad_level_and_log_level(self):
        errors = PreflightSettings(
            min_shell_compatibility_level=0, log_level='LOUD',
        ).validate()
        assert len(errors) == 2


class TestFromEnv:
    def test_empty_env_gives_defaults(self):
        settings = PreflightSettings.from_env({})
        assert settings == PreflightSettings()

    def test_reads_all_variables(self):
        settings = PreflightSettings.from_env({
            'ENVIRONMENT': 'production',
            'LOG_LEVEL': 'DEBUG',
            'LOG_FORMAT': 'console',
            'PREFLIGHT_STATE_DIR': '/data/preflight',
            'PREFLIGHT_MIN_SHELL_LEVEL': '23',
            'PREFLIGHT_NO_REQUIRE_ENCRYPT': 'true',
        })

        assert settings.environment == 'production'
        assert settings.log_level == 'DEBUG'
        assert settings.log_json is False
        assert settings.state_dir == '/data/preflight'
        assert settings.min_shell_compatibility_level == 23
        assert settings.encryption_not_required is True

    @pytest.mark.parametrize('raw', ['1', 'yes', 'ON', ' True '])
    def test_encryption_override_truthy_values(self, raw):
        settings = PreflightSettings.from_env(
            {'PREFLIGHT_NO_REQUIRE_ENCRYPT': raw},
        )
        assert settings.encryption_not_required is True

    @pytest.mark.parametrize('raw', ['', '0', 'false', 'no'])
    def test_encryption_override_falsy_values(self, raw):
        settings = PreflightSettings.from_env(
            {'PREFLIGHT_NO_REQUIRE_ENCRYPT': raw},
        )
        assert settings.encryption_not_required is False

    def test_non_integer_shell_level(self):
        with pytest.raises(ValueError, match='PREFLIGHT_MIN_SHELL_LEVEL'):
            PreflightSettings.from_env({'PREFLIGHT_MIN_SHELL_LEVEL': 'lollipop'})

    def test_default_level_constant(self):
        assert (
            PreflightSettings.from_env({}).min_shell_compatibility_level
            == DEFAULT_MIN_SHELL_COMPATIBILITY_LEVEL
        )
