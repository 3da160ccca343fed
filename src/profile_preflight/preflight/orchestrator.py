"""Pre-flight orchestrator: drives the workflow state machine.

Sequences, for one provisioning request:
  validate -> resolve conflict (optional) -> obtain consent
  -> ensure encrypted (optional) -> ensure compatible shell (optional)
  -> delegate to the provisioning executor

At each suspending step the orchestrator:
  1. Issues a fresh token and records it as the pending sub-step.
  2. Persists the snapshot, phase change included, in a single write.
  3. Launches the collaborator (prompt, nested flow or executor).
  4. Waits for exactly one matching ``StepOutcome`` through ``resume()``.

Outcomes carrying any other token are logged and dropped. Because the
snapshot is saved before a collaborator is launched, a restarted process
can rebuild the workflow from the store and accept the late outcome, and
the executor can never be launched twice for one workflow.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from ..audit import (
    ACTION_OUTCOME_DISCARDED,
    ACTION_PROFILE_REMOVED,
    ACTION_SUSPENDED,
    ACTION_TRANSITION,
    AuditEmitter,
    AuditEvent,
)
from ..observability.logging import get_logger, workflow_context
from ..settings import PreflightSettings
from .conflict import (
    CONFIRM_DELETE,
    CONFIRMATION_PROMPTS,
    ConflictResolver,
    ProfileRemovalError,
    next_confirmation_step,
)
from .outcome import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_OK,
    WorkflowOutcome,
    report,
)
from .request import ProvisioningRequest, freeze_extras
from .state_machine import (
    ALLOWED_TRANSITIONS,
    AWAITING_COMPATIBLE_SHELL,
    AWAITING_CONFLICT_RESOLUTION,
    AWAITING_CONSENT,
    AWAITING_ENCRYPTION,
    CANCELLED,
    DELEGATED,
    DELEGATING,
    KIND_CONFIRM_DELETE,
    KIND_CONFIRM_REPLACE,
    KIND_CONSENT,
    KIND_ENCRYPTION,
    KIND_PROVISIONING,
    KIND_SHELL_CHANGE,
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    REJECTED,
    VALIDATING,
    StepOutcome,
    WorkflowState,
    create_workflow,
    finish,
    matches_pending,
    suspend,
    transition,
)
from .store import WorkflowNotFound, WorkflowStore
from .validator import (
    PROFILE_REMOVAL_FAILED,
    UNSUPPORTED_CONCURRENT_ATTEMPT,
    WORKFLOW_ABANDONED,
    Invalid,
    validate,
)

if TYPE_CHECKING:
    from ..protocols import (
        EncryptionFlow,
        HostQueries,
        ProvisioningExecutor,
        ShellChangeFlow,
        UserPrompter,
    )

logger = get_logger(__name__)

CONSENT_PROMPT = (
    'The administrator of {package} will be able to monitor and manage '
    'the new work profile, including its apps, data and network activity.'
)

_DEFAULT_DELEGATION_STATUS = {
    OUTCOME_COMPLETED: STATUS_OK,
    OUTCOME_CANCELLED: STATUS_CANCELLED,
    OUTCOME_FAILED: STATUS_FAILED,
}


@dataclass(frozen=True, slots=True)
class WorkflowHandle:
    """Caller-held reference to a started workflow."""

    workflow_id: str


class PreflightOrchestrator:
    """Runs pre-flight workflows against injected host and flows.

    Each workflow has a single logical thread of control: events for the
    same workflow are serialized and a transition always completes (or
    suspends) before the next event is looked at.
    """

    def __init__(
        self,
        *,
        host: HostQueries,
        prompter: UserPrompter,
        encryption_flow: EncryptionFlow,
        shell_flow: ShellChangeFlow,
        executor: ProvisioningExecutor,
        store: WorkflowStore,
        audit: AuditEmitter | None = None,
        settings: PreflightSettings | None = None,
        token_factory: Callable[[], str] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._host = host
        self._prompter = prompter
        self._encryption = encryption_flow
        self._shell = shell_flow
        self._executor = executor
        self._store = store
        self._audit = audit
        self._settings = settings or PreflightSettings()
        self._resolver = ConflictResolver(host)
        self._new_token = token_factory or (lambda: uuid.uuid4().hex)
        self._new_id = id_factory or (lambda: f'pf_{uuid.uuid4().hex[:12]}')
        self._start_lock = asyncio.Lock()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ── Inbound operations ───────────────────────────────────────────

    async def start(self, request: ProvisioningRequest) -> WorkflowHandle:
        """Start a new workflow for ``request``.

        A second attempt while the same primary account already has an
        active workflow is rejected with ``UNSUPPORTED_CONCURRENT_ATTEMPT``.
        """
        primary_user_id = self._host.primary_user_id()
        workflow_id = self._new_id()
        handle = WorkflowHandle(workflow_id)

        with workflow_context(workflow_id):
            # Held before the first save so no other start can mistake the
            # ``validating`` snapshot for an abandoned one.
            async with self._lock_for(workflow_id):
                async with self._start_lock:
                    state = create_workflow(
                        workflow_id=workflow_id,
                        primary_user_id=primary_user_id,
                        request=request,
                        now=_now(),
                    )
                    state = transition(state, to_phase=VALIDATING, now=_now())

                    active = await self._active_workflow(primary_user_id)
                    if active is not None:
                        await self._reject(
                            state,
                            UNSUPPORTED_CONCURRENT_ATTEMPT,
                            f'workflow {active.workflow_id!r} is already '
                            f'active for user {primary_user_id}',
                        )
                        return handle
                    # Saving in ``validating`` marks the account as busy.
                    await self._commit(None, state)

                state, immediate = await self._run_validation(state)
                await self._drive(state, immediate)
        return handle

    async def resume(
        self, handle: WorkflowHandle, outcome: StepOutcome,
    ) -> WorkflowState:
        """Deliver a nested-flow outcome to a suspended workflow.

        The state is always reloaded from the store first. Outcomes that do
        not answer the pending sub-step are discarded without effect.

        Raises:
            WorkflowNotFound: If the handle refers to no stored workflow.
        """
        with workflow_context(handle.workflow_id):
            async with self._lock_for(handle.workflow_id):
                state = await self._load(handle.workflow_id)
                return await self._drive(state, outcome)

    async def get_state(self, handle: WorkflowHandle) -> WorkflowState:
        return await self._load(handle.workflow_id)

    async def report(self, handle: WorkflowHandle) -> WorkflowOutcome:
        """Return the caller-visible outcome of a finished workflow."""
        return report(await self._load(handle.workflow_id))

    # ── Event loop ───────────────────────────────────────────────────

    async def _drive(
        self, state: WorkflowState, outcome: StepOutcome | None,
    ) -> WorkflowState:
        while outcome is not None:
            if not matches_pending(state, outcome):
                await self._discard(state, outcome)
                break
            state, outcome = await self._apply(state, outcome)
        return state

    async def _apply(
        self, state: WorkflowState, outcome: StepOutcome,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        kind = state.pending.kind
        logger.info(
            'preflight.outcome_received',
            workflow_id=state.workflow_id,
            kind=kind,
            status=outcome.status,
        )

        if kind in (KIND_CONFIRM_REPLACE, KIND_CONFIRM_DELETE):
            if not outcome.completed:
                return await self._cancel(
                    state, outcome, 'User kept the existing managed profile.',
                ), None
            return await self._on_confirmation(state)

        if kind == KIND_CONSENT:
            if not outcome.completed:
                return await self._cancel(
                    state, outcome, 'User declined provisioning consent.',
                ), None
            return await self._after_consent(state)

        if kind == KIND_ENCRYPTION:
            if not outcome.completed:
                return await self._cancel(
                    state, outcome, 'User canceled device encryption.',
                ), None
            return await self._check_shell(state)

        if kind == KIND_SHELL_CHANGE:
            if not outcome.completed:
                return await self._cancel(
                    state,
                    outcome,
                    'Current default shell does not support managed profiles.',
                ), None
            # Exactly one re-check per completed shell change.
            return await self._check_shell(state, recheck=True)

        if kind == KIND_PROVISIONING:
            return await self._on_delegation_result(state, outcome), None

        raise ValueError(f'unhandled pending step kind: {kind!r}')

    # ── Steps ────────────────────────────────────────────────────────

    async def _run_validation(
        self, state: WorkflowState,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        result = validate(state.request, self._host)
        if isinstance(result, Invalid):
            return await self._reject(
                state, result.reason_code, result.diagnostic_text,
            ), None

        request = state.request
        request = replace(
            request,
            package_name=result.package_name,
            admin_extras=(
                freeze_extras(request.admin_extras)
                if request.admin_extras is not None
                else None
            ),
        )

        existing = self._resolver.find_existing(state.primary_user_id)
        if existing is not None:
            return await self._suspend(
                state,
                KIND_CONFIRM_REPLACE,
                to_phase=AWAITING_CONFLICT_RESOLUTION,
                request=request,
                conflict=existing,
                confirmation_step=next_confirmation_step(None),
            )

        return await self._suspend(
            state, KIND_CONSENT, to_phase=AWAITING_CONSENT, request=request,
        )

    async def _on_confirmation(
        self, state: WorkflowState,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        step = next_confirmation_step(state.confirmation_step)
        if step == CONFIRM_DELETE:
            return await self._suspend(
                state, KIND_CONFIRM_DELETE, confirmation_step=step,
            )

        # Both confirmations given: only now may the profile be removed.
        if state.confirmation_step != CONFIRM_DELETE or state.conflict is None:
            raise ValueError(
                f'profile removal reached from {state.confirmation_step!r}'
            )
        profile = state.conflict
        try:
            self._resolver.remove(profile)
        except ProfileRemovalError as exc:
            return await self._reject(
                state, PROFILE_REMOVAL_FAILED, str(exc),
            ), None

        await self._emit(
            state.workflow_id,
            ACTION_PROFILE_REMOVED,
            {'profile_id': profile.profile_id},
        )
        return await self._suspend(
            state,
            KIND_CONSENT,
            to_phase=AWAITING_CONSENT,
            conflict=None,
            confirmation_step=None,
            removed_profile_id=profile.profile_id,
        )

    async def _after_consent(
        self, state: WorkflowState,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        if self._encryption_required():
            return await self._suspend(
                state, KIND_ENCRYPTION, to_phase=AWAITING_ENCRYPTION,
            )
        return await self._check_shell(state)

    async def _check_shell(
        self, state: WorkflowState, *, recheck: bool = False,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        """Delegate if the shell is compatible, else offer a shell change.

        On a re-check after a completed change, an immediate ``completed``
        answer from the relaunched flow is not consumed: the next attempt
        only happens through ``resume()``.
        """
        if self._shell_supports_managed_profiles():
            return await self._delegate(state)

        attempts = state.shell_change_attempts + 1
        logger.info(
            'preflight.shell_incompatible',
            workflow_id=state.workflow_id,
            attempt=attempts,
        )
        return await self._suspend(
            state,
            KIND_SHELL_CHANGE,
            to_phase=(
                None
                if state.phase == AWAITING_COMPATIBLE_SHELL
                else AWAITING_COMPATIBLE_SHELL
            ),
            accept_immediate=not recheck,
            shell_change_attempts=attempts,
        )

    async def _delegate(
        self, state: WorkflowState,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        return await self._suspend(
            state, KIND_PROVISIONING, to_phase=DELEGATING,
        )

    async def _on_delegation_result(
        self, state: WorkflowState, outcome: StepOutcome,
    ) -> WorkflowState:
        status_code = outcome.result_code
        if status_code is None:
            status_code = _DEFAULT_DELEGATION_STATUS[outcome.status]
        prev = state
        state = finish(
            state,
            to_phase=DELEGATED,
            now=_now(),
            status_code=status_code,
            diagnostic_text=outcome.reason or '',
        )
        await self._commit(prev, state)
        logger.info(
            'preflight.delegated',
            workflow_id=state.workflow_id,
            status_code=status_code,
        )
        return state

    # ── Suspension and launch ────────────────────────────────────────

    async def _suspend(
        self,
        state: WorkflowState,
        kind: str,
        *,
        to_phase: str | None = None,
        accept_immediate: bool = True,
        **changes,
    ) -> tuple[WorkflowState, StepOutcome | None]:
        """Enter ``to_phase`` (if given) waiting on ``kind``, then launch.

        The phase change and the pending token are persisted in a single
        write, so a stored workflow in a suspending phase always has a
        token to resume with.
        """
        token = self._new_token()
        prev = state
        if to_phase is not None:
            state = transition(state, to_phase=to_phase, now=_now(), **changes)
            changes = {}
        state = suspend(state, kind=kind, token=token, now=_now(), **changes)
        await self._commit(prev, state)

        immediate = await self._launch(state, kind, token)
        if immediate is not None and immediate.completed and not accept_immediate:
            logger.info(
                'preflight.immediate_outcome_deferred',
                workflow_id=state.workflow_id,
                kind=kind,
            )
            immediate = None
        return state, immediate

    async def _launch(
        self, state: WorkflowState, kind: str, token: str,
    ) -> StepOutcome | None:
        try:
            if kind in (KIND_CONFIRM_REPLACE, KIND_CONFIRM_DELETE):
                return await self._prompter.show_prompt(
                    kind, CONFIRMATION_PROMPTS[kind], token,
                )
            if kind == KIND_CONSENT:
                return await self._prompter.show_prompt(
                    kind,
                    CONSENT_PROMPT.format(package=state.request.package_name),
                    token,
                )
            if kind == KIND_ENCRYPTION:
                return await self._encryption.request_encryption(
                    state.request, token,
                )
            if kind == KIND_SHELL_CHANGE:
                return await self._shell.request_shell_change(token)
            if kind == KIND_PROVISIONING:
                return await self._executor.delegate(state.request, token)
        except Exception as exc:
            logger.exception(
                'preflight.launch_failed',
                workflow_id=state.workflow_id,
                kind=kind,
            )
            return StepOutcome(
                token=token, status=OUTCOME_FAILED, reason=str(exc),
            )
        raise ValueError(f'unknown step kind: {kind!r}')

    # ── Terminal helpers ─────────────────────────────────────────────

    async def _reject(
        self, state: WorkflowState, reason_code: str, diagnostic_text: str,
    ) -> WorkflowState:
        prev = state
        state = finish(
            state,
            to_phase=REJECTED,
            now=_now(),
            status_code=STATUS_FAILED,
            reason_code=reason_code,
            diagnostic_text=diagnostic_text,
        )
        await self._commit(prev, state)
        logger.warning(
            'preflight.rejected',
            workflow_id=state.workflow_id,
            reason_code=reason_code,
            diagnostic=diagnostic_text,
        )
        return state

    async def _active_workflow(
        self, primary_user_id: int,
    ) -> WorkflowState | None:
        """Return the live workflow of an account, closing abandoned ones.

        A stored non-terminal workflow with no pending step that no task in
        this process is driving was interrupted before it could suspend.
        Nothing can ever resume it, so it is finished instead of blocking
        the account.
        """
        while True:
            active = await self._store.get_active_for_user(primary_user_id)
            if (
                active is None
                or active.pending is not None
                or self._is_running(active.workflow_id)
            ):
                return active
            await self._abandon(active.workflow_id)

    async def _abandon(self, workflow_id: str) -> None:
        with workflow_context(workflow_id):
            async with self._lock_for(workflow_id):
                state = await self._load(workflow_id)
                if state.is_terminal or state.pending is not None:
                    return
                text = (
                    f'Workflow was interrupted in phase {state.phase!r} '
                    'before it could suspend.'
                )
                allowed = ALLOWED_TRANSITIONS[state.phase]
                if REJECTED in allowed:
                    await self._reject(state, WORKFLOW_ABANDONED, text)
                    return
                to_phase = CANCELLED if CANCELLED in allowed else DELEGATED
                prev = state
                state = finish(
                    state,
                    to_phase=to_phase,
                    now=_now(),
                    status_code=(
                        STATUS_CANCELLED
                        if to_phase == CANCELLED
                        else STATUS_FAILED
                    ),
                    diagnostic_text=text,
                )
                await self._commit(prev, state)
                logger.warning(
                    'preflight.abandoned',
                    workflow_id=workflow_id,
                    phase=prev.phase,
                    to_phase=to_phase,
                )

    async def _cancel(
        self, state: WorkflowState, outcome: StepOutcome, default_text: str,
    ) -> WorkflowState:
        prev = state
        state = finish(
            state,
            to_phase=CANCELLED,
            now=_now(),
            status_code=STATUS_CANCELLED,
            diagnostic_text=outcome.reason or default_text,
        )
        await self._commit(prev, state)
        logger.info(
            'preflight.cancelled',
            workflow_id=state.workflow_id,
            step=prev.pending.kind if prev.pending else None,
            status=outcome.status,
            reason=outcome.reason,
        )
        return state

    async def _discard(
        self, state: WorkflowState, outcome: StepOutcome,
    ) -> None:
        logger.warning(
            'preflight.outcome_discarded',
            workflow_id=state.workflow_id,
            phase=state.phase,
            expected_token=state.pending_token,
            received_token=outcome.token,
        )
        await self._emit(
            state.workflow_id,
            ACTION_OUTCOME_DISCARDED,
            {
                'phase': state.phase,
                'received_token': outcome.token,
                'status': outcome.status,
            },
        )

    # ── Persistence ──────────────────────────────────────────────────

    async def _commit(
        self, prev: WorkflowState | None, state: WorkflowState,
    ) -> None:
        await self._store.save(state)
        from_phase = prev.phase if prev is not None else state.history[-2]
        if from_phase != state.phase:
            logger.info(
                'preflight.transition',
                workflow_id=state.workflow_id,
                from_phase=from_phase,
                to_phase=state.phase,
            )
            await self._emit(
                state.workflow_id,
                ACTION_TRANSITION,
                {'from_phase': from_phase, 'to_phase': state.phase},
            )
        previous_token = prev.pending_token if prev is not None else None
        if state.pending is not None and state.pending_token != previous_token:
            await self._emit(
                state.workflow_id,
                ACTION_SUSPENDED,
                {'phase': state.phase, 'kind': state.pending.kind},
            )

    async def _emit(
        self, workflow_id: str, action: str, payload: dict,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.emit(
            AuditEvent(workflow_id=workflow_id, action=action, payload=payload),
        )

    async def _load(self, workflow_id: str) -> WorkflowState:
        state = await self._store.load(workflow_id)
        if state is None:
            raise WorkflowNotFound(workflow_id)
        return state

    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        # Weakly held: the entry lives only while someone holds or awaits it.
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workflow_id] = lock
        return lock

    def _is_running(self, workflow_id: str) -> bool:
        lock = self._locks.get(workflow_id)
        return lock is not None and lock.locked()

    # ── Host policy ──────────────────────────────────────────────────

    def _encryption_required(self) -> bool:
        if self._settings.encryption_not_required:
            return False
        return not self._host.is_encrypted()

    def _shell_supports_managed_profiles(self) -> bool:
        level = self._host.current_shell_min_compatibility_level()
        if level is None:
            return False
        return level >= self._settings.min_shell_compatibility_level


def _now() -> datetime:
    """UTC-aware now for state transitions."""
    return datetime.now(timezone.utc)
