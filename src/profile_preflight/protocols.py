"""Collaborator protocol interfaces for dependency injection.

These protocols define the contracts the pre-flight workflow needs from the
host platform and from the external flows it hands control to. Concrete
implementations (``inmemory`` for local runs and tests, platform adapters in
production) are injected into ``PreflightOrchestrator`` and ``create_app()``.

Nested flows are launched with a token and report back later through
``PreflightOrchestrator.resume()``. A launcher may also return a
``StepOutcome`` directly when it completes synchronously.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from .preflight.conflict import HostProfile
from .preflight.request import ProvisioningRequest
from .preflight.state_machine import StepOutcome


@runtime_checkable
class HostQueries(Protocol):
    """Read-mostly view of the host platform.

    Every method except ``remove_profile`` is a pure read.
    """

    def has_managed_profile_feature(self) -> bool: ...
    def current_user_id(self) -> int: ...
    def primary_user_id(self) -> int: ...
    def installed_package(self, name: str) -> bool: ...
    def primary_owner_package(self) -> str | None: ...
    def caller_has_manage_accounts_permission(self, package: str) -> bool: ...
    def is_encrypted(self) -> bool: ...
    def profiles_of(self, user_id: int) -> Iterable[HostProfile]: ...
    def remove_profile(self, profile_id: int) -> bool: ...
    def current_shell_min_compatibility_level(self) -> int | None: ...


@runtime_checkable
class UserPrompter(Protocol):
    """Shows a confirmation or consent prompt; the answer arrives via resume."""

    async def show_prompt(
        self, kind: str, message: str, token: str,
    ) -> StepOutcome | None: ...


@runtime_checkable
class EncryptionFlow(Protocol):
    """External device-encryption flow (may span a reboot)."""

    async def request_encryption(
        self, request: ProvisioningRequest, token: str,
    ) -> StepOutcome | None: ...


@runtime_checkable
class ShellChangeFlow(Protocol):
    """External "pick a new default shell" flow."""

    async def request_shell_change(self, token: str) -> StepOutcome | None: ...


@runtime_checkable
class ProvisioningExecutor(Protocol):
    """Downstream executor that performs the privileged provisioning."""

    async def delegate(
        self, request: ProvisioningRequest, token: str,
    ) -> StepOutcome | None: ...
