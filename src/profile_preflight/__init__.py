"""Managed-profile pre-flight orchestrator."""

from .main import create_app
from .settings import PreflightSettings

__all__ = ["create_app", "PreflightSettings"]
