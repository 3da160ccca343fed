"""Pre-flight orchestrator configuration settings.

PreflightSettings is the single configuration object accepted by
``PreflightOrchestrator`` and ``create_app()``. It is a plain dataclass (not
env-coupled) so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

# Minimum compatibility level a default shell must declare to support
# managed profiles.
DEFAULT_MIN_SHELL_COMPATIBILITY_LEVEL = 21

_TRUE_VALUES = frozenset({'1', 'true', 'yes', 'on'})


@dataclass(frozen=True, slots=True)
class PreflightSettings:
    """Configuration for the pre-flight workflow and its HTTP surface."""

    # ── Environment ────────────────────────────────────────────────
    environment: str = 'local'
    """One of: local, dev, staging, production."""

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = 'INFO'
    log_json: bool = True

    # ── Persistence ────────────────────────────────────────────────
    state_dir: str | None = None
    """Directory for JSON workflow snapshots. None keeps them in memory."""

    # ── Workflow policy ────────────────────────────────────────────
    min_shell_compatibility_level: int = DEFAULT_MIN_SHELL_COMPATIBILITY_LEVEL

    encryption_not_required: bool = False
    """Administrative override: skip the encryption step entirely."""

    @property
    def is_local(self) -> bool:
        return self.environment == 'local'

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.min_shell_compatibility_level < 1:
            errors.append('min_shell_compatibility_level must be >= 1')
        if self.log_level.upper() not in {
            'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL',
        }:
            errors.append(f'unknown log_level: {self.log_level!r}')
        if not self.is_local and not self.state_dir:
            errors.append(
                f'{self.environment}: state_dir is required so suspended '
                'workflows survive a restart'
            )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> PreflightSettings:
        """Build settings from environment variables.

        Tests should construct PreflightSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        level_raw = env.get('PREFLIGHT_MIN_SHELL_LEVEL', '')
        try:
            min_level = (
                int(level_raw)
                if level_raw
                else DEFAULT_MIN_SHELL_COMPATIBILITY_LEVEL
            )
        except ValueError:
            raise ValueError(
                f'PREFLIGHT_MIN_SHELL_LEVEL must be an integer, got {level_raw!r}'
            ) from None

        return cls(
            environment=env.get('ENVIRONMENT', 'local'),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            log_json=env.get('LOG_FORMAT', 'json') == 'json',
            state_dir=env.get('PREFLIGHT_STATE_DIR') or None,
            min_shell_compatibility_level=min_level,
            encryption_not_required=(
                env.get('PREFLIGHT_NO_REQUIRE_ENCRYPT', '').strip().lower()
                in _TRUE_VALUES
            ),
        )
