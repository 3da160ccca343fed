"""Audit trail for pre-flight workflows.

Records an immutable event for every phase transition, every suspension
and every discarded step outcome. The orchestrator writes events after the
snapshot has been persisted, so the trail never claims a transition the
store does not hold.

Storage:
  The in-memory emitter is used for local runs and tests. Platform
  deployments inject an emitter that forwards to their own event sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

ACTION_TRANSITION = 'preflight.transition'
ACTION_SUSPENDED = 'preflight.suspended'
ACTION_OUTCOME_DISCARDED = 'preflight.outcome_discarded'
ACTION_PROFILE_REMOVED = 'preflight.profile_removed'


@dataclass(frozen=True)
class AuditEvent:
    """Immutable audit event for one workflow."""

    workflow_id: str
    action: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    id: int | None = None


# ── Emitter protocol ─────────────────────────────────────────────────


class AuditEmitter(Protocol):
    """Abstract audit event emitter."""

    async def emit(self, event: AuditEvent) -> AuditEvent: ...
    async def list_for_workflow(
        self, workflow_id: str, limit: int = 50,
    ) -> list[AuditEvent]: ...


# ── In-memory implementation ──────────────────────────────────────────


class InMemoryAuditEmitter:
    """Simple in-memory audit store for testing."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._next_id = 1

    async def emit(self, event: AuditEvent) -> AuditEvent:
        # AuditEvent is frozen, so create new with id set.
        stored = AuditEvent(
            id=self._next_id,
            workflow_id=event.workflow_id,
            action=event.action,
            payload=event.payload,
            created_at=event.created_at,
        )
        self._next_id += 1
        self._events.append(stored)
        return stored

    async def list_for_workflow(
        self, workflow_id: str, limit: int = 50,
    ) -> list[AuditEvent]:
        matching = [
            e for e in self._events
            if e.workflow_id == workflow_id
        ]
        # Emission order is transition order.
        return matching[:limit]

    @property
    def events(self) -> list[AuditEvent]:
        """Access all events (for testing assertions)."""
        return list(self._events)
