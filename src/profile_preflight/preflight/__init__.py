"""Pre-flight workflow: validation, conflict resolution and delegation."""

from .conflict import ConflictResolver, ExistingProfile, ProfileRemovalError
from .orchestrator import PreflightOrchestrator, WorkflowHandle
from .outcome import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_OK,
    WorkflowNotTerminal,
    WorkflowOutcome,
    report,
)
from .request import ProvisioningRequest
from .state_machine import (
    InvalidStateTransition,
    SnapshotError,
    StepOutcome,
    TerminalResultAlreadySet,
    WorkflowResult,
    WorkflowState,
    from_snapshot,
    to_snapshot,
)
from .store import (
    InMemoryWorkflowStore,
    JsonFileWorkflowStore,
    WorkflowNotFound,
    WorkflowStore,
)
from .validator import Invalid, Valid, ValidationOutcome, validate

__all__ = [
    'STATUS_CANCELLED',
    'STATUS_FAILED',
    'STATUS_OK',
    'ConflictResolver',
    'ExistingProfile',
    'InMemoryWorkflowStore',
    'Invalid',
    'InvalidStateTransition',
    'JsonFileWorkflowStore',
    'PreflightOrchestrator',
    'ProfileRemovalError',
    'ProvisioningRequest',
    'SnapshotError',
    'StepOutcome',
    'TerminalResultAlreadySet',
    'Valid',
    'ValidationOutcome',
    'WorkflowHandle',
    'WorkflowNotFound',
    'WorkflowNotTerminal',
    'WorkflowOutcome',
    'WorkflowResult',
    'WorkflowState',
    'WorkflowStore',
    'from_snapshot',
    'report',
    'to_snapshot',
    'validate',
]
