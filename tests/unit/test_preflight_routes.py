"""Tests for the pre-flight HTTP API and application factory.

Validates:
  1. POST /api/v1/preflight starts a workflow and returns its status
  2. POST /{id}/resume advances the workflow through delegation
  3. Stale tokens are accepted but leave the workflow unchanged
  4. Unknown workflows return 404
  5. Rejected requests report status code and reason text
  6. GET /{id}/events returns the audit trail
  7. create_app settings validation and collaborator requirements
"""

from __future__ import annotations

import pytest
import structlog
from fastapi.testclient import TestClient

from profile_preflight.inmemory import (
    InMemoryEncryptionFlow,
    InMemoryHost,
    InMemoryPrompter,
    InMemoryProvisioningExecutor,
    InMemoryShellChangeFlow,
)
from profile_preflight.main import create_app
from profile_preflight.preflight.store import JsonFileWorkflowStore
from profile_preflight.settings import PreflightSettings

MDM = 'com.acme.mdm'
BASE = '/api/v1/preflight'


# ── Test fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def executor():
    return InMemoryProvisioningExecutor()


@pytest.fixture
def app(executor):
    host = InMemoryHost(installed_packages={MDM})
    return create_app(
        PreflightSettings(log_json=False),
        host=host,
        prompter=InMemoryPrompter(),
        encryption_flow=InMemoryEncryptionFlow(host=host),
        shell_flow=InMemoryShellChangeFlow(host=host),
        executor=executor,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _start(client, **overrides):
    body = {'package_name': MDM, 'caller_package': MDM}
    body.update(overrides)
    response = client.post(BASE, json=body)
    assert response.status_code == 201
    return response.json()


def _resume(client, workflow_id, token, status='completed', **extra):
    return client.post(
        f'{BASE}/{workflow_id}/resume',
        json={'token': token, 'status': status, **extra},
    )


# =====================================================================
# Start / resume
# =====================================================================


class TestStartAndResume:
    def test_start_suspends_at_consent(self, client):
        data = _start(client)

        assert data['workflow_id'].startswith('pf_')
        assert data['phase'] == 'awaiting_consent'
        assert data['pending']['kind'] == 'consent'
        assert data['pending']['token']
        assert data['history'] == ['init', 'validating', 'awaiting_consent']
        assert data['result'] is None
        assert data['outcome'] is None

    def test_full_run_to_delegated(self, client, executor):
        data = _start(client)
        wid = data['workflow_id']

        response = _resume(client, wid, data['pending']['token'])
        assert response.status_code == 200
        delegating = response.json()
        assert delegating['phase'] == 'delegating'
        assert len(executor.calls) == 1

        response = _resume(
            client, wid, delegating['pending']['token'], result_code=-1,
        )
        done = response.json()

        assert done['phase'] == 'delegated'
        assert done['pending'] is None
        assert done['outcome'] == {'status_code': -1, 'diagnostic_text': ''}

    def test_get_status(self, client):
        data = _start(client)

        response = client.get(f"{BASE}/{data['workflow_id']}")

        assert response.status_code == 200
        assert response.json()['pending'] == data['pending']

    def test_stale_token_leaves_workflow_unchanged(self, client):
        data = _start(client)

        response = _resume(client, data['workflow_id'], 'not-the-token')

        assert response.status_code == 200
        assert response.json()['phase'] == 'awaiting_consent'
        assert response.json()['pending'] == data['pending']

    def test_declined_consent_reports_cancelled(self, client):
        data = _start(client)

        response = _resume(
            client, data['workflow_id'], data['pending']['token'], 'cancelled',
        )

        body = response.json()
        assert body['phase'] == 'cancelled'
        assert body['outcome'] == {'status_code': 0, 'diagnostic_text': 'cancelled'}

    def test_rejected_request(self, client):
        data = _start(client, package_name='com.not.installed')

        assert data['phase'] == 'rejected'
        assert data['result']['reason_code'] == 'PACKAGE_NOT_INSTALLED'
        assert data['outcome']['status_code'] == 1
        assert data['outcome']['diagnostic_text'].startswith(
            'PACKAGE_NOT_INSTALLED: ',
        )

    def test_malformed_admin_extras_rejected(self, client):
        data = _start(client, admin_extras=['a', 'b'])

        assert data['phase'] == 'rejected'
        assert data['result']['reason_code'] == 'MALFORMED_ADMIN_EXTRAS'

    def test_second_start_is_concurrent_attempt(self, client):
        _start(client)
        data = _start(client)

        assert data['phase'] == 'rejected'
        assert data['result']['reason_code'] == 'UNSUPPORTED_CONCURRENT_ATTEMPT'


# =====================================================================
# Errors
# =====================================================================


class TestErrors:
    def test_unknown_workflow_status(self, client):
        response = client.get(f'{BASE}/pf_missing')
        assert response.status_code == 404
        assert response.json()['error'] == 'workflow_not_found'

    def test_unknown_workflow_resume(self, client):
        response = _resume(client, 'pf_missing', 'tok')
        assert response.status_code == 404

    def test_invalid_resume_status(self, client):
        data = _start(client)
        response = _resume(
            client, data['workflow_id'], data['pending']['token'], 'maybe',
        )
        assert response.status_code == 422

    def test_empty_token(self, client):
        data = _start(client)
        response = _resume(client, data['workflow_id'], '')
        assert response.status_code == 422


# =====================================================================
# Events, health, middleware
# =====================================================================


class TestEventsAndHealth:
    def test_events_follow_workflow(self, client):
        data = _start(client)

        response = client.get(f"{BASE}/{data['workflow_id']}/events")

        assert response.status_code == 200
        actions = [e['action'] for e in response.json()['events']]
        assert actions == [
            'preflight.transition',
            'preflight.transition',
            'preflight.suspended',
        ]

    def test_events_for_unknown_workflow_empty(self, client):
        response = client.get(f'{BASE}/pf_missing/events')
        assert response.json() == {'events': []}

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.json() == {'status': 'ok', 'environment': 'local'}

    def test_request_id_propagated(self, client):
        response = client.get('/health', headers={'X-Request-ID': 'req-123'})
        assert response.headers['X-Request-ID'] == 'req-123'

    def test_request_id_generated(self, client):
        response = client.get('/health')
        assert response.headers['X-Request-ID']

    def test_request_id_bound_to_log_context(self, app):
        @app.get('/log-context')
        async def log_context():
            return structlog.contextvars.get_contextvars()

        with TestClient(app) as client:
            response = client.get(
                '/log-context', headers={'X-Request-ID': 'req-456'},
            )

        assert response.json() == {'request_id': 'req-456'}
        assert 'request_id' not in structlog.contextvars.get_contextvars()


# =====================================================================
# Application factory
# =====================================================================


class TestCreateApp:
    def test_local_defaults_fill_collaborators(self):
        app = create_app(PreflightSettings(log_json=False))
        deps = app.state.deps
        assert isinstance(deps.host, InMemoryHost)
        assert isinstance(deps.executor, InMemoryProvisioningExecutor)

    def test_state_dir_selects_json_store(self, state_dir):
        app = create_app(
            PreflightSettings(log_json=False, state_dir=str(state_dir)),
        )
        assert isinstance(app.state.deps.store, JsonFileWorkflowStore)

    def test_invalid_settings_raise(self):
        with pytest.raises(ValueError, match='validation failed'):
            create_app(PreflightSettings(environment='production'))

    def test_non_local_requires_collaborators(self, state_dir):
        settings = PreflightSettings(
            environment='production', state_dir=str(state_dir),
        )
        with pytest.raises(ValueError, match='Missing: host, prompter'):
            create_app(settings)

    def test_non_local_with_collaborators(self, state_dir):
        host = InMemoryHost(installed_packages={MDM})
        app = create_app(
            PreflightSettings(environment='staging', state_dir=str(state_dir)),
            host=host,
            prompter=InMemoryPrompter(),
            encryption_flow=InMemoryEncryptionFlow(host=host),
            shell_flow=InMemoryShellChangeFlow(host=host),
            executor=InMemoryProvisioningExecutor(),
        )
        assert app.state.deps.host is host
        assert isinstance(app.state.deps.store, JsonFileWorkflowStore)
