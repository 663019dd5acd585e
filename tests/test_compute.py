"""Tests for the Compute Engine gateway and instance resource building."""
from __future__ import annotations

import pytest
from google.api_core import exceptions as gexc
from google.cloud import compute_v1

from conftest import FakeInstancesClient, FakeOperation, make_instance

from ollama_fleet.compute import (
    LAST_ACTIVITY_KEY,
    STARTUP_SCRIPT_KEY,
    STARTUP_TIMESTAMP_KEY,
    ComputeGateway,
    build_instance_resource,
    instance_external_ip,
    merge_activity_items,
    network_interfaces_to_dict,
)
from ollama_fleet.errors import InstanceNotFound, ProviderError


def _items(*pairs):
    return [compute_v1.Items(key=k, value=v) for k, v in pairs]


def test_build_instance_resource(settings):
    instance = build_instance_resource(
        name="ollama-vm-1",
        zone="us-central1-a",
        settings=settings,
        startup_script="#!/bin/bash\necho hi\n",
        initial_timestamp="2024-05-01T12:00:00.000Z",
    )

    assert instance.name == "ollama-vm-1"
    assert instance.machine_type == "zones/us-central1-a/machineTypes/n1-standard-2"

    disk = instance.disks[0]
    assert disk.boot is True
    assert disk.auto_delete is True
    assert disk.initialize_params.source_image == "projects/debian-cloud/global/images/family/debian-11"
    assert disk.initialize_params.disk_size_gb == 50

    nic = instance.network_interfaces[0]
    assert nic.network == "global/networks/default"
    assert nic.access_configs[0].type_ == "ONE_TO_ONE_NAT"

    account = instance.service_accounts[0]
    assert account.email == "default"
    assert list(account.scopes) == ["https://www.googleapis.com/auth/cloud-platform"]

    metadata = {item.key: item.value for item in instance.metadata.items}
    assert metadata == {
        STARTUP_SCRIPT_KEY: "#!/bin/bash\necho hi\n",
        STARTUP_TIMESTAMP_KEY: "2024-05-01T12:00:00.000Z",
        LAST_ACTIVITY_KEY: "2024-05-01T12:00:00.000Z",
    }


def test_external_ip():
    assert instance_external_ip(make_instance(nat_ip="35.0.0.7")) == "35.0.0.7"
    assert instance_external_ip(make_instance(nat_ip=None)) is None
    assert instance_external_ip(compute_v1.Instance(name="bare")) is None


def test_network_interfaces_to_dict():
    interfaces = network_interfaces_to_dict(make_instance(nat_ip="35.0.0.7"))

    assert len(interfaces) == 1
    assert interfaces[0]["name"] == "nic0"
    assert "35.0.0.7" in str(interfaces[0])


def test_merge_keeps_other_keys():
    items, written = merge_activity_items(
        _items(
            (STARTUP_SCRIPT_KEY, "#!/bin/bash"),
            (STARTUP_TIMESTAMP_KEY, "2024-01-01T00:00:00.000Z"),
            (LAST_ACTIVITY_KEY, "2024-01-01T00:00:00.000Z"),
        ),
        "2024-01-01T00:10:00.000Z",
    )

    assert written == "2024-01-01T00:10:00.000Z"
    assert {i.key: i.value for i in items} == {
        STARTUP_SCRIPT_KEY: "#!/bin/bash",
        STARTUP_TIMESTAMP_KEY: "2024-01-01T00:00:00.000Z",
        LAST_ACTIVITY_KEY: "2024-01-01T00:10:00.000Z",
    }


def test_merge_never_moves_marker_backwards():
    items, written = merge_activity_items(
        _items((LAST_ACTIVITY_KEY, "2024-01-01T01:00:00.000Z")),
        "2024-01-01T00:10:00.000Z",
    )

    assert written == "2024-01-01T01:00:00.000Z"
    assert [(i.key, i.value) for i in items] == [(LAST_ACTIVITY_KEY, "2024-01-01T01:00:00.000Z")]


def test_merge_replaces_unparseable_marker():
    _, written = merge_activity_items(_items((LAST_ACTIVITY_KEY, "garbage")), "2024-01-01T00:10:00.000Z")
    assert written == "2024-01-01T00:10:00.000Z"


def test_merge_adds_missing_marker():
    items, _ = merge_activity_items(_items((STARTUP_SCRIPT_KEY, "x")), "2024-01-01T00:10:00.000Z")
    assert [i.key for i in items] == [STARTUP_SCRIPT_KEY, LAST_ACTIVITY_KEY]


def test_insert_waits_for_operation(settings):
    instances = FakeInstancesClient()
    gateway = ComputeGateway(settings, client=instances)
    resource = compute_v1.Instance(name="ollama-vm-1")

    gateway.insert_instance("p", "us-central1-a", resource)

    assert instances.insert_calls == [{"project": "p", "zone": "us-central1-a", "instance_resource": resource}]
    assert instances.operation.waited_with == settings.operation_timeout_s


def test_insert_operation_error(settings):
    instances = FakeInstancesClient(operation=FakeOperation(error_code=403, error_message="QUOTA_EXCEEDED"))
    gateway = ComputeGateway(settings, client=instances)

    with pytest.raises(ProviderError) as excinfo:
        gateway.insert_instance("p", "z", compute_v1.Instance(name="ollama-vm-1"))

    assert excinfo.value.extra["error"] == "QUOTA_EXCEEDED"


def test_get_not_found(settings):
    gateway = ComputeGateway(settings, client=FakeInstancesClient(get_error=gexc.NotFound("gone")))

    with pytest.raises(InstanceNotFound) as excinfo:
        gateway.get_instance("p", "us-east1-b", "ollama-vm-1")

    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Instance ollama-vm-1 not found in zone us-east1-b."


def test_get_other_error(settings):
    gateway = ComputeGateway(settings, client=FakeInstancesClient(get_error=gexc.TooManyRequests("slow down")))

    with pytest.raises(ProviderError):
        gateway.get_instance("p", "z", "ollama-vm-1")


def test_touch_last_activity(settings):
    instances = FakeInstancesClient(instance=make_instance(fingerprint="abc123"))
    gateway = ComputeGateway(settings, client=instances)

    written = gateway.touch_last_activity("p", "z", "ollama-vm-1", "2025-01-01T00:00:00.000Z")

    assert written == "2025-01-01T00:00:00.000Z"
    assert len(instances.get_calls) == 1
    metadata = instances.set_metadata_calls[0]["metadata_resource"]
    assert metadata.fingerprint == "abc123"
    assert {i.key: i.value for i in metadata.items}[LAST_ACTIVITY_KEY] == "2025-01-01T00:00:00.000Z"


def test_touch_fingerprint_conflict(settings):
    instances = FakeInstancesClient(
        set_metadata_error=gexc.PreconditionFailed("Supplied fingerprint does not match current metadata fingerprint."),
    )
    gateway = ComputeGateway(settings, client=instances)

    with pytest.raises(ProviderError):
        gateway.touch_last_activity("p", "z", "ollama-vm-1", "2025-01-01T00:00:00.000Z")
