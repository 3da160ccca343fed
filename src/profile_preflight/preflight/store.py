"""Persistence for pre-flight workflow snapshots.

The orchestrator keeps no workflow state in memory between events: every
transition is saved here as a ``to_snapshot()`` dict and every event starts
by reloading it. A restarted process therefore picks up a suspended workflow
exactly where it stopped.

Implementations: InMemoryWorkflowStore (local runs, tests) and
JsonFileWorkflowStore (one JSON document per workflow on disk).
"""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Protocol

from .state_machine import (
    TERMINAL_PHASES,
    WorkflowState,
    from_snapshot,
    to_snapshot,
)


class WorkflowNotFound(KeyError):
    """Raised when no workflow exists for the given id."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(workflow_id)

    def __str__(self) -> str:
        return f'no pre-flight workflow with id {self.workflow_id!r}'


# ── Store protocol ───────────────────────────────────────────────────


class WorkflowStore(Protocol):
    """Abstract storage for workflow snapshots."""

    async def save(self, state: WorkflowState) -> None:
        """Insert or replace the snapshot for ``state.workflow_id``."""
        ...

    async def load(self, workflow_id: str) -> WorkflowState | None:
        """Return the reconstructed state, or None if unknown."""
        ...

    async def get_active_for_user(
        self, primary_user_id: int,
    ) -> WorkflowState | None:
        """Return the single non-terminal workflow for an account, or None."""
        ...


# ── In-memory implementation ────────────────────────────────────────


class InMemoryWorkflowStore:
    """Snapshot store backed by a dict.

    Snapshots are stored serialized so reads always go through
    ``from_snapshot()``, the same path a restarted process takes.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[str, Any]] = {}

    async def save(self, state: WorkflowState) -> None:
        self._snapshots[state.workflow_id] = to_snapshot(state)

    async def load(self, workflow_id: str) -> WorkflowState | None:
        snapshot = self._snapshots.get(workflow_id)
        if snapshot is None:
            return None
        return from_snapshot(copy.deepcopy(snapshot))

    async def get_active_for_user(
        self, primary_user_id: int,
    ) -> WorkflowState | None:
        for snapshot in self._snapshots.values():
            if (
                snapshot['primary_user_id'] == primary_user_id
                and snapshot['phase'] not in TERMINAL_PHASES
            ):
                return from_snapshot(copy.deepcopy(snapshot))
        return None

    @property
    def snapshots(self) -> dict[str, dict[str, Any]]:
        """Access raw snapshots (for testing assertions)."""
        return copy.deepcopy(self._snapshots)


# ── JSON file implementation ────────────────────────────────────────


class JsonFileWorkflowStore:
    """One ``<workflow_id>.json`` document per workflow under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, workflow_id: str) -> Path:
        if not workflow_id or '/' in workflow_id or workflow_id.startswith('.'):
            raise ValueError(f'invalid workflow id: {workflow_id!r}')
        return self._root / f'{workflow_id}.json'

    async def save(self, state: WorkflowState) -> None:
        path = self._path(state.workflow_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.json.tmp')
        tmp.write_text(
            json.dumps(to_snapshot(state), indent=2, sort_keys=True) + '\n',
            encoding='utf-8',
        )
        os.replace(tmp, path)

    async def load(self, workflow_id: str) -> WorkflowState | None:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        return from_snapshot(json.loads(path.read_text(encoding='utf-8')))

    async def get_active_for_user(
        self, primary_user_id: int,
    ) -> WorkflowState | None:
        if not self._root.exists():
            return None
        for path in sorted(self._root.glob('*.json')):
            data = json.loads(path.read_text(encoding='utf-8'))
            if (
                data.get('primary_user_id') == primary_user_id
                and data.get('phase') not in TERMINAL_PHASES
            ):
                return from_snapshot(data)
        return None
