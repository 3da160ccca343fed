"""Pre-flight orchestrator FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires request-ID middleware and the pre-flight router, and
injects host/flow/store implementations via dependency injection.

Usage:
    # Local development (in-memory host and flows)
    from profile_preflight import create_app, PreflightSettings
    app = create_app(PreflightSettings())

    # Platform deployment (real adapters injected)
    settings = PreflightSettings.from_env()
    app = create_app(settings, host=platform_host, prompter=ui_bridge, ...)
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from .audit import AuditEmitter, InMemoryAuditEmitter
from .observability.logging import (
    configure_logging,
    get_logger,
    request_context,
)
from .preflight.orchestrator import PreflightOrchestrator
from .preflight.store import (
    InMemoryWorkflowStore,
    JsonFileWorkflowStore,
    WorkflowStore,
)
from .protocols import (
    EncryptionFlow,
    HostQueries,
    ProvisioningExecutor,
    ShellChangeFlow,
    UserPrompter,
)
from .routes.preflight import create_preflight_router
from .settings import PreflightSettings

logger = get_logger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for all injected collaborator instances.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    host: HostQueries
    prompter: UserPrompter
    encryption_flow: EncryptionFlow
    shell_flow: ShellChangeFlow
    executor: ProvisioningExecutor
    store: WorkflowStore
    audit_emitter: AuditEmitter


def _build_inmemory_deps(settings: PreflightSettings) -> AppDependencies:
    """Construct all-InMemory dependencies for local development."""
    from .inmemory import (
        InMemoryEncryptionFlow,
        InMemoryHost,
        InMemoryPrompter,
        InMemoryProvisioningExecutor,
        InMemoryShellChangeFlow,
    )

    host = InMemoryHost()
    return AppDependencies(
        host=host,
        prompter=InMemoryPrompter(),
        encryption_flow=InMemoryEncryptionFlow(host=host),
        shell_flow=InMemoryShellChangeFlow(host=host),
        executor=InMemoryProvisioningExecutor(),
        store=_build_store(settings),
        audit_emitter=InMemoryAuditEmitter(),
    )


def _build_store(settings: PreflightSettings) -> WorkflowStore:
    if settings.state_dir:
        return JsonFileWorkflowStore(settings.state_dir)
    return InMemoryWorkflowStore()


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID and bind it to the log context.

    Every log entry emitted while handling the request, including the
    orchestrator's ``preflight.*`` events, carries ``request_id``.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        with request_context(request_id):
            response = await call_next(request)
            logger.info(
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
            )
        response.headers["X-Request-ID"] = request_id
        return response


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: PreflightSettings | None = None,
    *,
    host: HostQueries | None = None,
    prompter: UserPrompter | None = None,
    encryption_flow: EncryptionFlow | None = None,
    shell_flow: ShellChangeFlow | None = None,
    executor: ProvisioningExecutor | None = None,
    store: WorkflowStore | None = None,
    audit_emitter: AuditEmitter | None = None,
) -> FastAPI:
    """Create a configured pre-flight FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        host..audit_emitter: Collaborator overrides. When None, local
            mode uses InMemory implementations. Non-local mode requires
            the host, prompter, flows and executor to be provided.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
        ValueError: If non-local environment is missing a collaborator.
    """
    if settings is None:
        settings = PreflightSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Pre-flight settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    configure_logging(settings)

    if settings.is_local:
        # Local mode: fill any missing collaborator with InMemory
        defaults = _build_inmemory_deps(settings)
        deps = AppDependencies(
            host=host or defaults.host,
            prompter=prompter or defaults.prompter,
            encryption_flow=encryption_flow or defaults.encryption_flow,
            shell_flow=shell_flow or defaults.shell_flow,
            executor=executor or defaults.executor,
            store=store or defaults.store,
            audit_emitter=audit_emitter or defaults.audit_emitter,
        )
    else:
        missing = [
            name
            for name, value in (
                ("host", host),
                ("prompter", prompter),
                ("encryption_flow", encryption_flow),
                ("shell_flow", shell_flow),
                ("executor", executor),
            )
            if value is None
        ]
        if missing:
            raise ValueError(
                f"Non-local environment ({settings.environment}) requires all "
                f"collaborators to be explicitly provided. Missing: {', '.join(missing)}"
            )
        deps = AppDependencies(
            host=host,  # type: ignore[arg-type]
            prompter=prompter,  # type: ignore[arg-type]
            encryption_flow=encryption_flow,  # type: ignore[arg-type]
            shell_flow=shell_flow,  # type: ignore[arg-type]
            executor=executor,  # type: ignore[arg-type]
            store=store or _build_store(settings),
            audit_emitter=audit_emitter or InMemoryAuditEmitter(),
        )

    orchestrator = PreflightOrchestrator(
        host=deps.host,
        prompter=deps.prompter,
        encryption_flow=deps.encryption_flow,
        shell_flow=deps.shell_flow,
        executor=deps.executor,
        store=deps.store,
        audit=deps.audit_emitter,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("preflight.startup", environment=settings.environment)
        yield
        logger.info("preflight.shutdown")

    app = FastAPI(
        title="Managed Profile Pre-flight",
        description="Pre-flight orchestration for managed-profile provisioning",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    app.include_router(
        create_preflight_router(orchestrator, deps.audit_emitter),
    )

    return app


# For uvicorn, use --factory flag:
#   uvicorn profile_preflight.main:create_app --factory
