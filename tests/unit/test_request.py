"""Provisioning request model and admin-extras type contract tests."""

from __future__ import annotations

import pytest

from profile_preflight.preflight.request import (
    ProvisioningRequest,
    freeze_extras,
    is_persistable_mapping,
)


class TestPersistableMapping:
    @pytest.mark.parametrize(
        'extras',
        [
            {},
            {'server': 'https://mdm.example.com', 'port': 443},
            {'enabled': True, 'ratio': 0.5, 'note': None},
            {'tags': ['a', 'b'], 'ids': (1, 2, 3)},
            {'nested': {'deeper': {'flag': False}}},
        ],
    )
    def test_accepts_restricted_payloads(self, extras):
        assert is_persistable_mapping(extras) is True

    @pytest.mark.parametrize(
        'extras',
        [
            ['not', 'a', 'mapping'],
            'string',
            42,
            {1: 'non-string key'},
            {'obj': object()},
            {'lists': [['nested', 'list']]},
            {'list_of_maps': [{'a': 1}]},
            {'set': {1, 2}},
            {'nested': {'bad': object()}},
        ],
    )
    def test_rejects_arbitrary_object_graphs(self, extras):
        assert is_persistable_mapping(extras) is False


class TestFreezeExtras:
    def test_frozen_copy_is_read_only(self):
        frozen = freeze_extras({'a': 1, 'nested': {'b': [1, 2]}})
        with pytest.raises(TypeError):
            frozen['a'] = 2  # type: ignore[index]
        with pytest.raises(TypeError):
            frozen['nested']['b'] = 3  # type: ignore[index]
        assert frozen['nested']['b'] == (1, 2)

    def test_source_mutation_does_not_leak(self):
        source = {'a': 1}
        frozen = freeze_extras(source)
        source['a'] = 99
        assert frozen['a'] == 1


class TestRequestSerialization:
    def test_round_trip_preserves_fields(self):
        request = ProvisioningRequest(
            package_name='com.acme.mdm',
            admin_extras={'server': 'x', 'tags': ['a']},
            caller_package='com.acme.mdm',
            privileged_caller=False,
        )

        restored = ProvisioningRequest.from_dict(request.to_dict())

        assert restored.package_name == 'com.acme.mdm'
        assert restored.caller_package == 'com.acme.mdm'
        assert restored.privileged_caller is False
        assert dict(restored.admin_extras)['server'] == 'x'
        assert restored.to_dict() == request.to_dict()

    def test_malformed_extras_are_dropped_from_snapshot(self):
        request = ProvisioningRequest(
            package_name='com.acme.mdm', admin_extras=['bad'],
        )
        assert request.to_dict()['admin_extras'] is None

    def test_request_is_immutable(self):
        request = ProvisioningRequest(package_name='com.acme.mdm')
        with pytest.raises(AttributeError):
            request.package_name = 'other'  # type: ignore[misc]
