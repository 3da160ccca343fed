"""In-memory collaborator implementations for local runs and tests.

These satisfy the protocol interfaces in ``protocols.py`` without touching a
real device. Each records its calls so tests can assert on exactly what the
orchestrator asked for. Flows that are given an automatic answer return it
directly from the launch call; otherwise the test (or a local operator)
delivers the outcome later through ``PreflightOrchestrator.resume()``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .preflight.conflict import PROFILE_KIND_MANAGED, HostProfile
from .preflight.request import ProvisioningRequest
from .preflight.state_machine import OUTCOME_COMPLETED, StepOutcome


class InMemoryHost:
    """Fake host platform with mutable, inspectable state."""

    def __init__(
        self,
        *,
        managed_profile_feature: bool = True,
        current_user_id: int = 0,
        primary_user_id: int = 0,
        installed_packages: Iterable[str] = (),
        primary_owner_package: str | None = None,
        manage_accounts_packages: Iterable[str] = (),
        encrypted: bool = True,
        profiles: Mapping[int, Iterable[HostProfile]] | None = None,
        shell_min_compatibility_level: int | None = 21,
        remove_fails: bool = False,
    ) -> None:
        self.managed_profile_feature = managed_profile_feature
        self._current_user_id = current_user_id
        self._primary_user_id = primary_user_id
        self.installed_packages = set(installed_packages)
        self._primary_owner_package = primary_owner_package
        self.manage_accounts_packages = set(manage_accounts_packages)
        self.encrypted = encrypted
        self.profiles: dict[int, list[HostProfile]] = {
            user_id: list(items) for user_id, items in (profiles or {}).items()
        }
        self.shell_min_compatibility_level = shell_min_compatibility_level
        self.remove_fails = remove_fails
        self.removed_profiles: list[int] = []

    def add_managed_profile(self, user_id: int, profile_id: int) -> None:
        self.profiles.setdefault(user_id, []).append(
            HostProfile(id=profile_id, kind=PROFILE_KIND_MANAGED),
        )

    def has_managed_profile_feature(self) -> bool:
        return self.managed_profile_feature

    def current_user_id(self) -> int:
        return self._current_user_id

    def primary_user_id(self) -> int:
        return self._primary_user_id

    def installed_package(self, name: str) -> bool:
        return name in self.installed_packages

    def primary_owner_package(self) -> str | None:
        return self._primary_owner_package

    def caller_has_manage_accounts_permission(self, package: str) -> bool:
        return package in self.manage_accounts_packages

    def is_encrypted(self) -> bool:
        return self.encrypted

    def profiles_of(self, user_id: int) -> list[HostProfile]:
        return list(self.profiles.get(user_id, []))

    def remove_profile(self, profile_id: int) -> bool:
        self.removed_profiles.append(profile_id)
        if self.remove_fails:
            return False
        for user_id, items in self.profiles.items():
            remaining = [p for p in items if p.id != profile_id]
            if len(remaining) != len(items):
                self.profiles[user_id] = remaining
                return True
        return False

    def current_shell_min_compatibility_level(self) -> int | None:
        return self.shell_min_compatibility_level


class InMemoryPrompter:
    """Records prompts; answers immediately for kinds listed in ``answers``."""

    def __init__(self, answers: Mapping[str, str] | None = None) -> None:
        self.answers = dict(answers or {})
        self.prompts: list[tuple[str, str, str]] = []

    async def show_prompt(
        self, kind: str, message: str, token: str,
    ) -> StepOutcome | None:
        self.prompts.append((kind, message, token))
        status = self.answers.get(kind)
        if status is None:
            return None
        return StepOutcome(token=token, status=status)

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.prompts]

    @property
    def last_token(self) -> str | None:
        return self.prompts[-1][2] if self.prompts else None


class InMemoryEncryptionFlow:
    """Encryption flow that optionally completes immediately."""

    def __init__(
        self,
        *,
        auto_status: str | None = None,
        host: InMemoryHost | None = None,
        fails: bool = False,
    ) -> None:
        self.auto_status = auto_status
        self._host = host
        self.fails = fails
        self.calls: list[tuple[str, str]] = []

    async def request_encryption(
        self, request: ProvisioningRequest, token: str,
    ) -> StepOutcome | None:
        self.calls.append((request.package_name, token))
        if self.fails:
            raise RuntimeError('encryption flow unavailable')
        if self.auto_status is None:
            return None
        if self.auto_status == OUTCOME_COMPLETED and self._host is not None:
            self._host.encrypted = True
        return StepOutcome(token=token, status=self.auto_status)


class InMemoryShellChangeFlow:
    """Shell-change flow; may switch the host shell to ``new_level``."""

    def __init__(
        self,
        *,
        auto_status: str | None = None,
        host: InMemoryHost | None = None,
        new_level: int | None = None,
    ) -> None:
        self.auto_status = auto_status
        self._host = host
        self.new_level = new_level
        self.calls: list[str] = []

    async def request_shell_change(self, token: str) -> StepOutcome | None:
        self.calls.append(token)
        if self.auto_status is None:
            return None
        if (
            self.auto_status == OUTCOME_COMPLETED
            and self._host is not None
            and self.new_level is not None
        ):
            self._host.shell_min_compatibility_level = self.new_level
        return StepOutcome(token=token, status=self.auto_status)


class InMemoryProvisioningExecutor:
    """Executor that records delegations and optionally reports at once."""

    def __init__(
        self,
        *,
        auto_result_code: int | None = None,
        fails: bool = False,
    ) -> None:
        self.auto_result_code = auto_result_code
        self.fails = fails
        self.calls: list[tuple[ProvisioningRequest, str]] = []

    async def delegate(
        self, request: ProvisioningRequest, token: str,
    ) -> StepOutcome | None:
        self.calls.append((request, token))
        if self.fails:
            raise RuntimeError('provisioning executor unavailable')
        if self.auto_result_code is None:
            return None
        return StepOutcome(
            token=token,
            status=OUTCOME_COMPLETED,
            result_code=self.auto_result_code,
        )
