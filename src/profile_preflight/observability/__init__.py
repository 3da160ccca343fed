"""Observability infrastructure for the pre-flight orchestrator."""

from .logging import (
    configure_logging,
    get_logger,
    request_context,
    workflow_context,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "request_context",
    "workflow_context",
]
