"""Precondition checks for entering managed-profile provisioning.

Checks run in a fixed order and stop at the first failure:

  1. platform exposes the managed-profile capability
  2. invoking user is the primary account
  3. admin extras (if any) are a persistable mapping
  4. target package name is non-empty
  5. target package is installed
  6. caller is allowed to name the target package
  7. a configured primary owner belongs to the target package

Every check is a read against ``HostQueries``; validation has no side
effects and yields exactly one ``ValidationOutcome`` per request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .request import ProvisioningRequest, is_persistable_mapping

if TYPE_CHECKING:
    from ..protocols import HostQueries

UNSUPPORTED_PLATFORM = 'UNSUPPORTED_PLATFORM'
NOT_PRIMARY_ACCOUNT = 'NOT_PRIMARY_ACCOUNT'
MALFORMED_ADMIN_EXTRAS = 'MALFORMED_ADMIN_EXTRAS'
MISSING_PACKAGE = 'MISSING_PACKAGE'
PACKAGE_NOT_INSTALLED = 'PACKAGE_NOT_INSTALLED'
PERMISSION_DENIED = 'PERMISSION_DENIED'
UNSUPPORTED_CONCURRENT_ATTEMPT = 'UNSUPPORTED_CONCURRENT_ATTEMPT'
PROFILE_REMOVAL_FAILED = 'PROFILE_REMOVAL_FAILED'
WORKFLOW_ABANDONED = 'WORKFLOW_ABANDONED'


@dataclass(frozen=True, slots=True)
class Valid:
    package_name: str

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Invalid:
    reason_code: str
    diagnostic_text: str

    @property
    def ok(self) -> bool:
        return False


ValidationOutcome = Valid | Invalid


def validate(
    request: ProvisioningRequest, host: HostQueries,
) -> ValidationOutcome:
    """Run all precondition checks for ``request`` against ``host``."""
    if not host.has_managed_profile_feature():
        return Invalid(
            UNSUPPORTED_PLATFORM,
            'Exiting managed profile provisioning, '
            'managed profiles feature is not available',
        )

    if host.current_user_id() != host.primary_user_id():
        return Invalid(
            NOT_PRIMARY_ACCOUNT,
            'Exiting managed profile provisioning, '
            'calling user is not owner.',
        )

    if request.admin_extras is not None and not is_persistable_mapping(
        request.admin_extras,
    ):
        return Invalid(
            MALFORMED_ADMIN_EXTRAS,
            'Admin extras must be a mapping of strings to scalars, '
            'lists of scalars or nested mappings, got '
            f'{type(request.admin_extras).__name__}.',
        )

    package_name = (request.package_name or '').strip()
    if not package_name:
        return Invalid(
            MISSING_PACKAGE, 'Missing device admin package name.',
        )

    if not host.installed_package(package_name):
        return Invalid(
            PACKAGE_NOT_INSTALLED,
            f'Device admin package {package_name!r} is not installed.',
        )

    if not request.privileged_caller:
        caller = request.caller_package
        if not caller:
            return Invalid(
                PERMISSION_DENIED,
                'Calling package is unknown. '
                'The caller must identify itself to request provisioning.',
            )
        if (
            caller != package_name
            and not host.caller_has_manage_accounts_permission(caller)
        ):
            return Invalid(
                PERMISSION_DENIED,
                'Permission denied, calling package tried to set a '
                'different package as profile owner. '
                'The manage accounts permission is required.',
            )

    owner = host.primary_owner_package()
    if owner is not None and owner != package_name:
        return Invalid(
            PERMISSION_DENIED,
            'Permission denied, profile owner must be in the same '
            'package as device owner.',
        )

    return Valid(package_name)
