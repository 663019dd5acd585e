"""
Compute Engine access for ollama-fleet.

Wraps ``google.cloud.compute_v1.InstancesClient`` so the handlers see three
blocking calls (insert, get, touch activity marker) and our own error types
instead of ``google.api_core`` exceptions. The client is created on first use
so the app can start without Application Default Credentials.
"""
from __future__ import annotations

import threading
from concurrent import futures
from typing import Any, Dict, List, Optional, Tuple

import requests
from google.api_core import exceptions as gexc
from google.auth import exceptions as gauth_exc
from google.cloud import compute_v1

from ollama_fleet.config import Settings
from ollama_fleet.errors import InstanceNotFound, ProviderError
from ollama_fleet.logging_utils import get_logger, timer
from ollama_fleet.naming import format_timestamp, parse_timestamp

STARTUP_SCRIPT_KEY = "startup-script"
STARTUP_TIMESTAMP_KEY = "startup-timestamp"
LAST_ACTIVITY_KEY = "last-activity-timestamp"

# Everything the client can raise on a failed call, including building the
# client without credentials and transport failures below the API layer.
PROVIDER_ERRORS = (
    gexc.GoogleAPIError,
    gauth_exc.GoogleAuthError,
    requests.exceptions.RequestException,
    futures.TimeoutError,
)


def build_instance_resource(
    *,
    name: str,
    zone: str,
    settings: Settings,
    startup_script: str,
    initial_timestamp: str,
) -> compute_v1.Instance:
    """Instance body for ``instances.insert``; both activity keys start equal."""
    boot_disk = compute_v1.AttachedDisk(
        boot=True,
        auto_delete=True,
        initialize_params=compute_v1.AttachedDiskInitializeParams(
            source_image=settings.source_image,
            disk_size_gb=settings.disk_size_gb,
        ),
    )
    nic = compute_v1.NetworkInterface(
        network=settings.network,
        access_configs=[compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")],
    )
    service_account = compute_v1.ServiceAccount(
        email="default",
        scopes=list(settings.service_account_scopes),
    )
    metadata = compute_v1.Metadata(
        items=[
            compute_v1.Items(key=STARTUP_SCRIPT_KEY, value=startup_script),
            compute_v1.Items(key=STARTUP_TIMESTAMP_KEY, value=initial_timestamp),
            compute_v1.Items(key=LAST_ACTIVITY_KEY, value=initial_timestamp),
        ]
    )
    return compute_v1.Instance(
        name=name,
        machine_type=f"zones/{zone}/machineTypes/{settings.machine_type}",
        display_device=compute_v1.DisplayDevice(enable_display=True),
        disks=[boot_disk],
        network_interfaces=[nic],
        service_accounts=[service_account],
        metadata=metadata,
    )


def instance_external_ip(instance: compute_v1.Instance) -> Optional[str]:
    for nic in instance.network_interfaces:
        for access in nic.access_configs:
            if access.nat_i_p:
                return access.nat_i_p
    return None


def network_interfaces_to_dict(instance: compute_v1.Instance) -> List[Dict[str, Any]]:
    return [
        compute_v1.NetworkInterface.to_dict(nic, preserving_proto_field_name=False)
        for nic in instance.network_interfaces
    ]


def merge_activity_items(
    items: List[compute_v1.Items],
    when: str,
) -> Tuple[List[compute_v1.Items], str]:
    """
    Return metadata items with ``last-activity-timestamp`` set to ``when``.

    ``setMetadata`` replaces the whole item list, so every other key is carried
    over. The marker never moves backwards: if the stored value is newer than
    ``when`` it is kept.
    """
    merged: List[compute_v1.Items] = []
    written = when
    for item in items:
        if item.key == LAST_ACTIVITY_KEY:
            current = parse_timestamp(item.value)
            proposed = parse_timestamp(when)
            if current is not None and proposed is not None and current > proposed:
                written = format_timestamp(current)
            continue
        merged.append(compute_v1.Items(key=item.key, value=item.value))
    merged.append(compute_v1.Items(key=LAST_ACTIVITY_KEY, value=written))
    return merged, written


class ComputeGateway:
    def __init__(
        self,
        settings: Settings,
        client: Optional[compute_v1.InstancesClient] = None,
    ):
        self.settings = settings
        self._client = client
        self._client_lock = threading.Lock()
        self.slog = get_logger()

    @property
    def client(self) -> compute_v1.InstancesClient:
        with self._client_lock:
            if self._client is None:
                self._client = compute_v1.InstancesClient()
            return self._client

    def _wait(self, operation, action: str, instance_name: str) -> None:
        operation.result(timeout=self.settings.operation_timeout_s)
        if operation.error_code:
            raise ProviderError(
                f"Compute operation {action} failed for {instance_name}",
                error=operation.error_message or str(operation.error_code),
            )
        for warning in operation.warnings or []:
            self.slog.warning(
                "compute_operation_warning",
                instance=instance_name,
                action=action,
                code=warning.code,
                warning=warning.message,
            )

    def insert_instance(self, project: str, zone: str, instance: compute_v1.Instance) -> None:
        """Create ``instance`` and block until the insert operation completes."""
        with timer() as t:
            try:
                operation = self.client.insert(
                    project=project,
                    zone=zone,
                    instance_resource=instance,
                )
                self.slog.info(
                    "compute_insert_started",
                    instance=instance.name,
                    zone=zone,
                    operation=getattr(operation, "name", None),
                )
                self._wait(operation, "insert", instance.name)
            except PROVIDER_ERRORS as exc:
                raise ProviderError("Compute insert failed", error=str(exc)) from exc
            self.slog.info("compute_insert_done", instance=instance.name, zone=zone, duration_ms=t.stop())

    def get_instance(self, project: str, zone: str, name: str) -> compute_v1.Instance:
        try:
            return self.client.get(project=project, zone=zone, instance=name)
        except gexc.NotFound as exc:
            raise InstanceNotFound(name, zone, details=str(exc)) from exc
        except PROVIDER_ERRORS as exc:
            raise ProviderError("Compute get failed", error=str(exc)) from exc

    def touch_last_activity(self, project: str, zone: str, name: str, when: str) -> str:
        """
        Write ``last-activity-timestamp`` on ``name``.

        The fingerprint is re-read right before the write. A concurrent writer
        makes the write fail with a fingerprint mismatch, which surfaces as
        ``ProviderError`` for the caller to log.
        """
        instance = self.get_instance(project, zone, name)
        items, written = merge_activity_items(list(instance.metadata.items), when)
        metadata = compute_v1.Metadata(fingerprint=instance.metadata.fingerprint, items=items)
        try:
            operation = self.client.set_metadata(
                project=project,
                zone=zone,
                instance=name,
                metadata_resource=metadata,
            )
            self._wait(operation, "setMetadata", name)
        except PROVIDER_ERRORS as exc:
            raise ProviderError("Compute setMetadata failed", error=str(exc)) from exc
        return written
