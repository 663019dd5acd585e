from __future__ import annotations

from typing import Any, Callable, List, Optional

import httpx
import pytest
from google.cloud import compute_v1

from ollama_fleet.app import create_app
from ollama_fleet.compute import LAST_ACTIVITY_KEY, STARTUP_TIMESTAMP_KEY
from ollama_fleet.config import Settings
from ollama_fleet.http_client import ollama_client


def make_instance(
    name: str = "ollama-vm-1",
    status: str = "RUNNING",
    nat_ip: Optional[str] = "34.1.2.3",
    fingerprint: str = "fp-1",
    last_activity: str = "2024-01-01T00:00:00.000Z",
) -> compute_v1.Instance:
    access = compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")
    if nat_ip:
        access.nat_i_p = nat_ip
    return compute_v1.Instance(
        name=name,
        status=status,
        network_interfaces=[
            compute_v1.NetworkInterface(
                name="nic0",
                network="global/networks/default",
                access_configs=[access],
            )
        ],
        metadata=compute_v1.Metadata(
            fingerprint=fingerprint,
            items=[
                compute_v1.Items(key="startup-script", value="#!/bin/bash"),
                compute_v1.Items(key=STARTUP_TIMESTAMP_KEY, value="2024-01-01T00:00:00.000Z"),
                compute_v1.Items(key=LAST_ACTIVITY_KEY, value=last_activity),
            ],
        ),
    )


class FakeCompute:
    """Stands in for ComputeGateway; records every call."""

    def __init__(
        self,
        instance: Optional[compute_v1.Instance] = None,
        insert_error: Optional[Exception] = None,
        get_error: Optional[Exception] = None,
        touch_error: Optional[Exception] = None,
    ):
        self.instance = instance
        self.insert_error = insert_error
        self.get_error = get_error
        self.touch_error = touch_error
        self.inserted: List[tuple] = []
        self.gets: List[tuple] = []
        self.touches: List[tuple] = []

    @property
    def call_count(self) -> int:
        return len(self.inserted) + len(self.gets) + len(self.touches)

    def insert_instance(self, project, zone, instance):
        self.inserted.append((project, zone, instance))
        if self.insert_error:
            raise self.insert_error

    def get_instance(self, project, zone, name):
        self.gets.append((project, zone, name))
        if self.get_error:
            raise self.get_error
        return self.instance if self.instance is not None else make_instance(name=name)

    def touch_last_activity(self, project, zone, name, when):
        self.touches.append((project, zone, name, when))
        if self.touch_error:
            raise self.touch_error
        return when


class FakeOperation:
    def __init__(self, error_code: int = 0, error_message: Optional[str] = None):
        self.name = "operation-1"
        self.error_code = error_code
        self.error_message = error_message
        self.warnings: List[Any] = []
        self.waited_with: Optional[float] = None

    def result(self, timeout=None):
        self.waited_with = timeout
        return None


class FakeInstancesClient:
    """Stands in for compute_v1.InstancesClient."""

    def __init__(self, instance=None, get_error=None, set_metadata_error=None, operation=None):
        self.instance = instance or make_instance()
        self.get_error = get_error
        self.set_metadata_error = set_metadata_error
        self.operation = operation or FakeOperation()
        self.insert_calls: List[dict] = []
        self.get_calls: List[dict] = []
        self.set_metadata_calls: List[dict] = []

    def insert(self, project, zone, instance_resource):
        self.insert_calls.append({"project": project, "zone": zone, "instance_resource": instance_resource})
        return self.operation

    def get(self, project, zone, instance):
        self.get_calls.append({"project": project, "zone": zone, "instance": instance})
        if self.get_error:
            raise self.get_error
        return self.instance

    def set_metadata(self, project, zone, instance, metadata_resource):
        self.set_metadata_calls.append(
            {"project": project, "zone": zone, "instance": instance, "metadata_resource": metadata_resource}
        )
        if self.set_metadata_error:
            raise self.set_metadata_error
        return self.operation


def mock_ollama(handler: Callable[[httpx.Request], httpx.Response]):
    """Client factory whose requests are answered by ``handler``."""
    return lambda: ollama_client(transport=httpx.MockTransport(handler))


@pytest.fixture
def settings() -> Settings:
    return Settings(project="test-project", default_zone="us-central1-a", default_model="llama2")


@pytest.fixture
def fake_compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def make_client(settings):
    from fastapi.testclient import TestClient

    def _make(compute=None, handler=None, app_settings=None):
        app = create_app(
            app_settings or settings,
            compute=compute if compute is not None else FakeCompute(),
            client_factory=mock_ollama(handler) if handler else None,
        )
        return TestClient(app)

    return _make
