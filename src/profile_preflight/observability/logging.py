"""Structured logging for the pre-flight orchestrator.

Log entries are JSON lines (or console output for local runs) rendered by
structlog through the stdlib ``logging`` root handler. Correlation ids are
structlog context variables: ``workflow_context()`` binds ``workflow_id``
for the duration of one orchestrator event, and the HTTP middleware binds
``request_id`` for one request. Both are restored on exit, so nothing leaks
into unrelated log lines of the same task.

Usage::

    configure_logging(settings)
    logger = get_logger(__name__)
    with workflow_context('pf_1234'):
        logger.info('preflight.transition', to_phase='validating')
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from ..settings import PreflightSettings


def configure_logging(settings: PreflightSettings) -> None:
    """Route structlog and stdlib logging through one root handler.

    Level and format come from ``settings`` only. Calling it again replaces
    the previous configuration.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        ),
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())


def workflow_context(workflow_id: str) -> AbstractContextManager:
    """Bind ``workflow_id`` to every log entry emitted inside the block."""
    return structlog.contextvars.bound_contextvars(workflow_id=workflow_id)


def request_context(request_id: str) -> AbstractContextManager:
    """Bind ``request_id`` to every log entry emitted inside the block."""
    return structlog.contextvars.bound_contextvars(request_id=request_id)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
