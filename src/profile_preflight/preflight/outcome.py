"""Caller-visible outcome for a finished pre-flight workflow."""

from __future__ import annotations

from dataclasses import dataclass

from .state_machine import CANCELLED, DELEGATED, REJECTED, WorkflowState

# Mirrors the platform activity result codes.
STATUS_OK = -1
STATUS_CANCELLED = 0
STATUS_FAILED = 1

CANCELLED_TEXT = 'cancelled'


@dataclass(frozen=True, slots=True)
class WorkflowOutcome:
    status_code: int
    diagnostic_text: str


class WorkflowNotTerminal(ValueError):
    """Raised when reporting on a workflow that has not finished."""

    def __init__(self, workflow_id: str, phase: str) -> None:
        self.workflow_id = workflow_id
        self.phase = phase
        super().__init__(
            f'workflow {workflow_id!r} is still in phase {phase!r}'
        )


def report(state: WorkflowState) -> WorkflowOutcome:
    """Map a terminal workflow state to ``(status_code, diagnostic_text)``.

    Raises:
        WorkflowNotTerminal: If the terminal-result slot is still empty.
    """
    result = state.result
    if result is None:
        raise WorkflowNotTerminal(state.workflow_id, state.phase)

    if result.phase == REJECTED:
        return WorkflowOutcome(
            status_code=STATUS_FAILED,
            diagnostic_text=f'{result.reason_code}: {result.diagnostic_text}',
        )
    if result.phase == CANCELLED:
        return WorkflowOutcome(
            status_code=STATUS_CANCELLED, diagnostic_text=CANCELLED_TEXT,
        )
    if result.phase == DELEGATED:
        # Executor status is passed through untouched.
        return WorkflowOutcome(
            status_code=result.status_code,
            diagnostic_text=result.diagnostic_text,
        )
    raise WorkflowNotTerminal(state.workflow_id, result.phase)
