"""Detection and removal of a pre-existing managed profile.

The resolver itself is stateless. The two-step confirmation that guards
``remove()`` lives in the workflow state (``confirmation_step``), so the
orchestrator can only reach the removal call after both prompts were
answered affirmatively, in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from ..protocols import HostQueries

logger = structlog.get_logger(__name__)

PROFILE_KIND_MANAGED = 'managed'

# ── Confirmation sub-machine ─────────────────────────────────────────

CONFIRM_REPLACE = 'confirm_replace'
CONFIRM_DELETE = 'confirm_delete'

CONFIRMATION_PROMPTS = {
    CONFIRM_REPLACE: (
        'A managed profile already exists on this device. '
        'Continuing will replace it.'
    ),
    CONFIRM_DELETE: (
        'Are you sure you want to delete the existing managed profile? '
        'All of its apps and data will be removed.'
    ),
}

# None -> first notice, first notice -> second notice, second -> done.
_NEXT_CONFIRMATION: dict[str | None, str | None] = {
    None: CONFIRM_REPLACE,
    CONFIRM_REPLACE: CONFIRM_DELETE,
    CONFIRM_DELETE: None,
}


def next_confirmation_step(step: str | None) -> str | None:
    """Return the confirmation step that follows ``step``.

    ``None`` as the result means both confirmations have been given.
    """
    if step not in _NEXT_CONFIRMATION:
        raise ValueError(f'unknown confirmation step: {step!r}')
    return _NEXT_CONFIRMATION[step]


# ── Domain types ─────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HostProfile:
    """A profile associated with a host account."""

    id: int
    kind: str


@dataclass(frozen=True, slots=True)
class ExistingProfile:
    """A previously provisioned managed profile found on the host."""

    profile_id: int


class ProfileRemovalError(RuntimeError):
    """Raised when the host refuses or fails to remove a profile."""

    def __init__(self, profile_id: int, reason: str) -> None:
        self.profile_id = profile_id
        self.reason = reason
        super().__init__(
            f'failed to remove managed profile {profile_id}: {reason}'
        )


# ── Resolver ─────────────────────────────────────────────────────────


class ConflictResolver:
    """Finds and removes a conflicting managed profile via host queries."""

    def __init__(self, host: HostQueries) -> None:
        self._host = host

    def find_existing(self, primary_user_id: int) -> ExistingProfile | None:
        """Return the first managed profile of ``primary_user_id``, if any."""
        for profile in self._host.profiles_of(primary_user_id):
            if profile.kind == PROFILE_KIND_MANAGED:
                return ExistingProfile(profile_id=profile.id)
        return None

    def remove(self, profile: ExistingProfile) -> None:
        """Remove ``profile`` from the host. Irreversible.

        Raises:
            ProfileRemovalError: If the host reports failure.
        """
        try:
            removed = self._host.remove_profile(profile.profile_id)
        except Exception as exc:
            raise ProfileRemovalError(profile.profile_id, str(exc)) from exc
        if not removed:
            raise ProfileRemovalError(
                profile.profile_id, 'host reported failure',
            )
        logger.info(
            'preflight.profile_removed', profile_id=profile.profile_id,
        )
