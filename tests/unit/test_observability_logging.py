"""Tests for workflow-correlated structured logging."""

from __future__ import annotations

import logging

import pytest
import structlog

from profile_preflight.inmemory import InMemoryHost, InMemoryPrompter
from profile_preflight.inmemory import (
    InMemoryEncryptionFlow,
    InMemoryProvisioningExecutor,
    InMemoryShellChangeFlow,
)
from profile_preflight.observability.logging import (
    configure_logging,
    get_logger,
    request_context,
    workflow_context,
)
from profile_preflight.preflight.orchestrator import PreflightOrchestrator
from profile_preflight.preflight.request import ProvisioningRequest
from profile_preflight.preflight.state_machine import StepOutcome
from profile_preflight.preflight.store import InMemoryWorkflowStore
from profile_preflight.settings import PreflightSettings

MDM = 'com.acme.mdm'


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class ContextRecordingPrompter(InMemoryPrompter):
    """Prompter that snapshots the bound log context at launch time."""

    def __init__(self) -> None:
        super().__init__()
        self.contexts: list[dict] = []

    async def show_prompt(self, kind, message, token):
        self.contexts.append(structlog.contextvars.get_contextvars())
        return await super().show_prompt(kind, message, token)


# ── Context binding ───────────────────────────────────────────────────


class TestContextBinding:
    def test_workflow_context_binds_and_restores(self):
        structlog.contextvars.clear_contextvars()
        with workflow_context('pf_abc'):
            assert structlog.contextvars.get_contextvars() == {
                'workflow_id': 'pf_abc',
            }
        assert 'workflow_id' not in structlog.contextvars.get_contextvars()

    def test_nested_contexts_restore_outer(self):
        structlog.contextvars.clear_contextvars()
        with request_context('req-1'):
            with workflow_context('pf_outer'):
                with workflow_context('pf_inner'):
                    pass
                assert (
                    structlog.contextvars.get_contextvars()['workflow_id']
                    == 'pf_outer'
                )
            assert structlog.contextvars.get_contextvars() == {
                'request_id': 'req-1',
            }

    @pytest.mark.asyncio
    async def test_orchestrator_scopes_workflow_id_to_each_event(self):
        structlog.contextvars.clear_contextvars()
        host = InMemoryHost(installed_packages={MDM})
        prompter = ContextRecordingPrompter()
        orchestrator = PreflightOrchestrator(
            host=host,
            prompter=prompter,
            encryption_flow=InMemoryEncryptionFlow(host=host),
            shell_flow=InMemoryShellChangeFlow(host=host),
            executor=InMemoryProvisioningExecutor(),
            store=InMemoryWorkflowStore(),
        )

        handle = await orchestrator.start(
            ProvisioningRequest(package_name=MDM, caller_package=MDM),
        )

        assert prompter.contexts == [{'workflow_id': handle.workflow_id}]
        assert 'workflow_id' not in structlog.contextvars.get_contextvars()

        state = await orchestrator.get_state(handle)
        await orchestrator.resume(
            handle, StepOutcome(token=state.pending_token, status='cancelled'),
        )
        assert 'workflow_id' not in structlog.contextvars.get_contextvars()


# ── Configuration ─────────────────────────────────────────────────────


class TestConfigureLogging:
    def test_level_comes_from_settings(self, root_logger):
        configure_logging(PreflightSettings(log_level='warning'))
        assert root_logger.level == logging.WARNING

    def test_reconfiguring_replaces_handler(self, root_logger):
        configure_logging(PreflightSettings(log_json=True))
        configure_logging(PreflightSettings(log_json=False, log_level='DEBUG'))
        assert len(root_logger.handlers) == 1
        assert root_logger.level == logging.DEBUG

    def test_get_logger_returns_bindable_logger(self):
        logger = get_logger('profile_preflight.test')
        assert logger.bind(workflow_id='pf_abc') is not None
