"""Pre-flight workflow start, resume, status and events API.

Exposes the orchestrator's inbound operations:
  POST /api/v1/preflight                          → start a workflow
  GET  /api/v1/preflight/{workflow_id}            → current status
  POST /api/v1/preflight/{workflow_id}/resume     → deliver a step outcome
  GET  /api/v1/preflight/{workflow_id}/events     → audit trail

Response contract:
  - status payloads carry phase, pending step (token + kind), history,
    the terminal result and, once finished, the caller-visible outcome.
  - a resume whose token does not match the pending step is accepted
    (200) and leaves the workflow unchanged.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from profile_preflight.audit import AuditEmitter, AuditEvent
from profile_preflight.preflight.orchestrator import (
    PreflightOrchestrator,
    WorkflowHandle,
)
from profile_preflight.preflight.outcome import report
from profile_preflight.preflight.request import ProvisioningRequest
from profile_preflight.preflight.state_machine import StepOutcome, WorkflowState
from profile_preflight.preflight.store import WorkflowNotFound


# ── Request schemas ───────────────────────────────────────────────────


class StartRequest(BaseModel):
    package_name: str = Field(
        default='',
        description='Package that will own the managed profile.',
    )
    admin_extras: Any = Field(
        default=None,
        description='Opaque admin configuration passed to the executor.',
    )
    caller_package: str | None = None
    privileged_caller: bool = False


class ResumeRequest(BaseModel):
    token: str = Field(min_length=1)
    status: Literal['completed', 'cancelled', 'failed']
    reason: str | None = None
    result_code: int | None = None


# ── Response helpers ──────────────────────────────────────────────────


def _status_response(state: WorkflowState) -> dict:
    """Build a status payload from a workflow state."""
    result = state.result
    outcome = report(state) if result is not None else None
    return {
        'workflow_id': state.workflow_id,
        'phase': state.phase,
        'package_name': state.request.package_name,
        'pending': (
            {'token': state.pending.token, 'kind': state.pending.kind}
            if state.pending is not None
            else None
        ),
        'history': list(state.history),
        'removed_profile_id': state.removed_profile_id,
        'result': (
            {
                'phase': result.phase,
                'status_code': result.status_code,
                'reason_code': result.reason_code,
                'diagnostic_text': result.diagnostic_text,
            }
            if result is not None
            else None
        ),
        'outcome': (
            {
                'status_code': outcome.status_code,
                'diagnostic_text': outcome.diagnostic_text,
            }
            if outcome is not None
            else None
        ),
        'created_at': state.created_at.isoformat() if state.created_at else None,
        'updated_at': state.updated_at.isoformat() if state.updated_at else None,
    }


def _event_response(event: AuditEvent) -> dict:
    return {
        'id': event.id,
        'action': event.action,
        'payload': event.payload,
        'created_at': event.created_at.isoformat(),
    }


def _not_found(exc: WorkflowNotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={'error': 'workflow_not_found', 'detail': str(exc)},
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_preflight_router(
    orchestrator: PreflightOrchestrator,
    audit_emitter: AuditEmitter | None = None,
) -> APIRouter:
    """Create the pre-flight workflow router.

    Args:
        orchestrator: Orchestrator that owns workflow transitions.
        audit_emitter: Optional audit store. If None, the events endpoint
            returns an empty list.
    """
    router = APIRouter(prefix='/api/v1/preflight', tags=['preflight'])

    @router.post('', status_code=201)
    async def start_workflow(body: StartRequest):
        """Start a pre-flight workflow for a provisioning request."""
        request = ProvisioningRequest(
            package_name=body.package_name,
            admin_extras=body.admin_extras,
            caller_package=body.caller_package,
            privileged_caller=body.privileged_caller,
        )
        handle = await orchestrator.start(request)
        state = await orchestrator.get_state(handle)
        return _status_response(state)

    @router.get('/{workflow_id}')
    async def get_workflow(workflow_id: str):
        try:
            state = await orchestrator.get_state(WorkflowHandle(workflow_id))
        except WorkflowNotFound as exc:
            return _not_found(exc)
        return _status_response(state)

    @router.post('/{workflow_id}/resume')
    async def resume_workflow(workflow_id: str, body: ResumeRequest):
        """Deliver a nested-flow outcome to a suspended workflow."""
        outcome = StepOutcome(
            token=body.token,
            status=body.status,
            reason=body.reason,
            result_code=body.result_code,
        )
        try:
            state = await orchestrator.resume(
                WorkflowHandle(workflow_id), outcome,
            )
        except WorkflowNotFound as exc:
            return _not_found(exc)
        return _status_response(state)

    @router.get('/{workflow_id}/events')
    async def list_workflow_events(workflow_id: str, limit: int = 50):
        if audit_emitter is None:
            return {'events': []}
        events = await audit_emitter.list_for_workflow(
            workflow_id, limit=min(limit, 200),
        )
        return {'events': [_event_response(e) for e in events]}

    return router
