"""Provisioning request model and admin-extras type contract.

A ``ProvisioningRequest`` is built once from the triggering call and never
mutated. The optional ``admin_extras`` payload is opaque to the workflow but
must be a *persistable mapping*: string keys, and values restricted to
scalars, lists of scalars, or nested persistable mappings. Anything else is
reported by the validator as ``MALFORMED_ADMIN_EXTRAS``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

_SCALAR_TYPES = (bool, int, float, str)


@dataclass(frozen=True, slots=True)
class ProvisioningRequest:
    """Immutable request to provision a managed profile for ``package_name``."""

    package_name: str
    admin_extras: Any = None
    caller_package: str | None = None
    privileged_caller: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-safe primitives.

        Malformed admin extras are dropped: such a request can only belong
        to a workflow that was rejected during validation.
        """
        extras = None
        if self.admin_extras is not None and is_persistable_mapping(
            self.admin_extras,
        ):
            extras = _thaw(self.admin_extras)
        return {
            'package_name': self.package_name,
            'admin_extras': extras,
            'caller_package': self.caller_package,
            'privileged_caller': self.privileged_caller,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProvisioningRequest:
        extras = data.get('admin_extras')
        return cls(
            package_name=str(data.get('package_name') or ''),
            admin_extras=freeze_extras(extras) if extras is not None else None,
            caller_package=data.get('caller_package'),
            privileged_caller=bool(data.get('privileged_caller', False)),
        )


def is_persistable_mapping(value: Any) -> bool:
    """Return True if ``value`` is a mapping of the restricted payload type."""
    if not isinstance(value, Mapping):
        return False
    for key, item in value.items():
        if not isinstance(key, str):
            return False
        if not _is_persistable_value(item):
            return False
    return True


def _is_persistable_value(value: Any) -> bool:
    if value is None or isinstance(value, _SCALAR_TYPES):
        return True
    if isinstance(value, (list, tuple)):
        return all(
            item is None or isinstance(item, _SCALAR_TYPES) for item in value
        )
    return is_persistable_mapping(value)


def freeze_extras(value: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return a read-only deep copy of a persistable mapping."""
    frozen: dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(item, Mapping):
            frozen[key] = freeze_extras(item)
        elif isinstance(item, list):
            frozen[key] = tuple(item)
        else:
            frozen[key] = item
    return MappingProxyType(frozen)


def _thaw(value: Mapping[str, Any]) -> dict[str, Any]:
    thawed: dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(item, Mapping):
            thawed[key] = _thaw(item)
        elif isinstance(item, tuple):
            thawed[key] = list(item)
        else:
            thawed[key] = item
    return thawed
