"""Pre-flight workflow state machine and snapshot contract.

Implements the canonical pre-flight flow:
  init -> validating -> [awaiting_conflict_resolution] -> awaiting_consent
  -> [awaiting_encryption] -> [awaiting_compatible_shell] -> delegating
  -> delegated

With terminal exits:
  validating / awaiting_conflict_resolution -> rejected
  any user-facing step -> cancelled

Each snapshot is immutable; every transition returns a new
``WorkflowState``. The terminal-result slot is written exactly once and a
state with a result accepts no further transitions. Snapshots serialize to
plain JSON-safe dicts so a suspended workflow survives a process restart.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from .conflict import CONFIRM_DELETE, CONFIRM_REPLACE, ExistingProfile
from .request import ProvisioningRequest

SNAPSHOT_VERSION = 1

# ── Phases ───────────────────────────────────────────────────────────

INIT = 'init'
VALIDATING = 'validating'
AWAITING_CONFLICT_RESOLUTION = 'awaiting_conflict_resolution'
AWAITING_CONSENT = 'awaiting_consent'
AWAITING_ENCRYPTION = 'awaiting_encryption'
AWAITING_COMPATIBLE_SHELL = 'awaiting_compatible_shell'
DELEGATING = 'delegating'
REJECTED = 'rejected'
CANCELLED = 'cancelled'
DELEGATED = 'delegated'

TERMINAL_PHASES = frozenset({REJECTED, CANCELLED, DELEGATED})
SUSPENDING_PHASES = frozenset(
    {
        AWAITING_CONFLICT_RESOLUTION,
        AWAITING_CONSENT,
        AWAITING_ENCRYPTION,
        AWAITING_COMPATIBLE_SHELL,
        DELEGATING,
    }
)
ACTIVE_PHASES = frozenset({INIT, VALIDATING}) | SUSPENDING_PHASES

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        INIT: frozenset({VALIDATING}),
        VALIDATING: frozenset(
            {REJECTED, AWAITING_CONFLICT_RESOLUTION, AWAITING_CONSENT}
        ),
        AWAITING_CONFLICT_RESOLUTION: frozenset(
            {AWAITING_CONSENT, CANCELLED, REJECTED}
        ),
        AWAITING_CONSENT: frozenset(
            {
                AWAITING_ENCRYPTION,
                AWAITING_COMPATIBLE_SHELL,
                DELEGATING,
                CANCELLED,
            }
        ),
        AWAITING_ENCRYPTION: frozenset(
            {AWAITING_COMPATIBLE_SHELL, DELEGATING, CANCELLED}
        ),
        AWAITING_COMPATIBLE_SHELL: frozenset({DELEGATING, CANCELLED}),
        DELEGATING: frozenset({DELEGATED}),
        REJECTED: frozenset(),
        CANCELLED: frozenset(),
        DELEGATED: frozenset(),
    }
)

# ── Nested-flow kinds ────────────────────────────────────────────────

KIND_CONFIRM_REPLACE = CONFIRM_REPLACE
KIND_CONFIRM_DELETE = CONFIRM_DELETE
KIND_CONSENT = 'consent'
KIND_ENCRYPTION = 'encryption'
KIND_SHELL_CHANGE = 'shell_change'
KIND_PROVISIONING = 'provisioning'

PHASE_PENDING_KINDS: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        AWAITING_CONFLICT_RESOLUTION: frozenset(
            {KIND_CONFIRM_REPLACE, KIND_CONFIRM_DELETE}
        ),
        AWAITING_CONSENT: frozenset({KIND_CONSENT}),
        AWAITING_ENCRYPTION: frozenset({KIND_ENCRYPTION}),
        AWAITING_COMPATIBLE_SHELL: frozenset({KIND_SHELL_CHANGE}),
        DELEGATING: frozenset({KIND_PROVISIONING}),
    }
)

# ── Step outcomes ────────────────────────────────────────────────────

OUTCOME_COMPLETED = 'completed'
OUTCOME_CANCELLED = 'cancelled'
OUTCOME_FAILED = 'failed'

OUTCOME_STATUSES = frozenset(
    {OUTCOME_COMPLETED, OUTCOME_CANCELLED, OUTCOME_FAILED}
)


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Resumption payload delivered by a nested flow."""

    token: str
    status: str
    reason: str | None = None
    result_code: int | None = None

    def __post_init__(self) -> None:
        if self.status not in OUTCOME_STATUSES:
            raise ValueError(f'unknown step outcome status: {self.status!r}')

    @property
    def completed(self) -> bool:
        return self.status == OUTCOME_COMPLETED


@dataclass(frozen=True, slots=True)
class PendingStep:
    """The suspended sub-step a workflow is waiting on."""

    token: str
    kind: str


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """Terminal-result slot contents."""

    phase: str
    status_code: int
    reason_code: str | None = None
    diagnostic_text: str = ''


@dataclass(frozen=True, slots=True)
class WorkflowState:
    """State snapshot for one pre-flight workflow run."""

    workflow_id: str
    primary_user_id: int
    request: ProvisioningRequest
    phase: str = INIT
    pending: PendingStep | None = None
    conflict: ExistingProfile | None = None
    confirmation_step: str | None = None
    removed_profile_id: int | None = None
    shell_change_attempts: int = 0
    result: WorkflowResult | None = None
    history: tuple[str, ...] = (INIT,)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.result is not None

    @property
    def pending_token(self) -> str | None:
        return self.pending.token if self.pending is not None else None


# ── Errors ───────────────────────────────────────────────────────────


class InvalidStateTransition(ValueError):
    """Raised for transitions not allowed by the pre-flight flow."""

    def __init__(self, from_phase: str, to_phase: str) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(
            f'invalid phase transition: {from_phase!r} -> {to_phase!r}'
        )


class TerminalResultAlreadySet(RuntimeError):
    """Raised when a finished workflow is asked to change again."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(
            f'workflow {workflow_id!r} already has a terminal result'
        )


class SnapshotError(ValueError):
    """Raised when a persisted snapshot cannot be reconstructed."""


# ── Transitions ──────────────────────────────────────────────────────


def create_workflow(
    *,
    workflow_id: str,
    primary_user_id: int,
    request: ProvisioningRequest,
    now: datetime,
) -> WorkflowState:
    """Create a fresh ``init`` snapshot."""
    _require_aware_datetime(now)
    return WorkflowState(
        workflow_id=workflow_id,
        primary_user_id=primary_user_id,
        request=request,
        created_at=now,
        updated_at=now,
    )


def transition(
    state: WorkflowState,
    *,
    to_phase: str,
    now: datetime,
    **changes: Any,
) -> WorkflowState:
    """Move to ``to_phase``, clearing any pending sub-step.

    Terminal phases must be entered through ``finish()``.
    """
    if to_phase in TERMINAL_PHASES:
        raise InvalidStateTransition(state.phase, to_phase)
    return _transition(state, to_phase=to_phase, now=now, **changes)


def suspend(
    state: WorkflowState,
    *,
    kind: str,
    token: str,
    now: datetime,
    **changes: Any,
) -> WorkflowState:
    """Record that the current phase is waiting on nested flow ``kind``."""
    _require_aware_datetime(now)
    if state.result is not None:
        raise TerminalResultAlreadySet(state.workflow_id)
    allowed = PHASE_PENDING_KINDS.get(state.phase, frozenset())
    if kind not in allowed:
        raise ValueError(
            f'phase {state.phase!r} cannot wait on a {kind!r} step'
        )
    if not token:
        raise ValueError('token must be non-empty')
    return replace(
        state,
        pending=PendingStep(token=token, kind=kind),
        updated_at=now,
        **changes,
    )


def finish(
    state: WorkflowState,
    *,
    to_phase: str,
    now: datetime,
    status_code: int,
    reason_code: str | None = None,
    diagnostic_text: str = '',
) -> WorkflowState:
    """Enter a terminal phase and write the terminal-result slot."""
    if to_phase not in TERMINAL_PHASES:
        raise InvalidStateTransition(state.phase, to_phase)
    return _transition(
        state,
        to_phase=to_phase,
        now=now,
        result=WorkflowResult(
            phase=to_phase,
            status_code=status_code,
            reason_code=reason_code,
            diagnostic_text=diagnostic_text,
        ),
    )


def matches_pending(state: WorkflowState, outcome: StepOutcome) -> bool:
    """Return True if ``outcome`` answers the sub-step currently pending."""
    if state.result is not None or state.pending is None:
        return False
    return outcome.token == state.pending.token


def _transition(
    state: WorkflowState,
    *,
    to_phase: str,
    now: datetime,
    **changes: Any,
) -> WorkflowState:
    _require_aware_datetime(now)
    if state.result is not None:
        raise TerminalResultAlreadySet(state.workflow_id)
    allowed = ALLOWED_TRANSITIONS.get(state.phase, frozenset())
    if to_phase not in allowed:
        raise InvalidStateTransition(state.phase, to_phase)

    return replace(
        state,
        phase=to_phase,
        pending=None,
        history=state.history + (to_phase,),
        updated_at=now,
        **changes,
    )


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')


# ── Snapshots ────────────────────────────────────────────────────────


def to_snapshot(state: WorkflowState) -> dict[str, Any]:
    """Serialize a workflow state to JSON-safe primitives."""
    return {
        'version': SNAPSHOT_VERSION,
        'workflow_id': state.workflow_id,
        'primary_user_id': state.primary_user_id,
        'phase': state.phase,
        'request': state.request.to_dict(),
        'pending': (
            {'token': state.pending.token, 'kind': state.pending.kind}
            if state.pending is not None
            else None
        ),
        'conflict': (
            {'profile_id': state.conflict.profile_id}
            if state.conflict is not None
            else None
        ),
        'confirmation_step': state.confirmation_step,
        'removed_profile_id': state.removed_profile_id,
        'shell_change_attempts': state.shell_change_attempts,
        'result': (
            {
                'phase': state.result.phase,
                'status_code': state.result.status_code,
                'reason_code': state.result.reason_code,
                'diagnostic_text': state.result.diagnostic_text,
            }
            if state.result is not None
            else None
        ),
        'history': list(state.history),
        'created_at': _iso(state.created_at),
        'updated_at': _iso(state.updated_at),
    }


def from_snapshot(data: Mapping[str, Any]) -> WorkflowState:
    """Rebuild a workflow state from ``to_snapshot()`` output.

    Raises:
        SnapshotError: If the snapshot is from an unknown version or is
            internally inconsistent.
    """
    version = data.get('version')
    if version != SNAPSHOT_VERSION:
        raise SnapshotError(f'unsupported snapshot version: {version!r}')

    try:
        phase = data['phase']
        if phase not in ALLOWED_TRANSITIONS:
            raise SnapshotError(f'unknown phase in snapshot: {phase!r}')

        pending_raw = data.get('pending')
        pending = (
            PendingStep(token=pending_raw['token'], kind=pending_raw['kind'])
            if pending_raw
            else None
        )
        if pending is not None and pending.kind not in PHASE_PENDING_KINDS.get(
            phase, frozenset(),
        ):
            raise SnapshotError(
                f'pending {pending.kind!r} step is invalid in phase {phase!r}'
            )

        conflict_raw = data.get('conflict')
        result_raw = data.get('result')
        state = WorkflowState(
            workflow_id=data['workflow_id'],
            primary_user_id=int(data['primary_user_id']),
            request=ProvisioningRequest.from_dict(data['request']),
            phase=phase,
            pending=pending,
            conflict=(
                ExistingProfile(profile_id=int(conflict_raw['profile_id']))
                if conflict_raw
                else None
            ),
            confirmation_step=data.get('confirmation_step'),
            removed_profile_id=data.get('removed_profile_id'),
            shell_change_attempts=int(data.get('shell_change_attempts', 0)),
            result=(
                WorkflowResult(
                    phase=result_raw['phase'],
                    status_code=int(result_raw['status_code']),
                    reason_code=result_raw.get('reason_code'),
                    diagnostic_text=result_raw.get('diagnostic_text', ''),
                )
                if result_raw
                else None
            ),
            history=tuple(data.get('history') or (INIT,)),
            created_at=_parse_iso(data.get('created_at')),
            updated_at=_parse_iso(data.get('updated_at')),
        )
    except SnapshotError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise SnapshotError(f'malformed snapshot: {exc}') from exc

    if (state.result is None) != (state.phase not in TERMINAL_PHASES):
        raise SnapshotError(
            f'terminal result does not match phase {state.phase!r}'
        )
    return state


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
