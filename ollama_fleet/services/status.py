from __future__ import annotations

from typing import Optional

from ollama_fleet.compute import ComputeGateway, network_interfaces_to_dict
from ollama_fleet.config import Settings
from ollama_fleet.errors import BadRequestError, FleetError, InstanceNotFound, ProviderError
from ollama_fleet.logging_utils import get_logger
from ollama_fleet.schemas import InstanceStatusResponse


def describe_instance(
    settings: Settings,
    compute: ComputeGateway,
    instance_name: Optional[str],
    zone: Optional[str] = None,
) -> InstanceStatusResponse:
    slog = get_logger()
    project = settings.require_project()
    if not instance_name:
        raise BadRequestError("Missing required query parameter: instanceName")
    zone = zone or settings.default_zone

    try:
        instance = compute.get_instance(project, zone, instance_name)
    except InstanceNotFound:
        slog.warning("instance_not_found", instance=instance_name, zone=zone)
        raise
    except ProviderError as exc:
        slog.error("instance_status_failed", instance=instance_name, zone=zone, error=exc.message, detail=exc.extra)
        raise ProviderError("Error getting instance status", error=exc.extra.get("error") or exc.message) from exc

    if not instance or not instance.status:
        raise FleetError(
            f"Instance {instance_name} not found or status unavailable.",
            status_code=404,
        )

    slog.info("instance_status", instance=instance_name, zone=zone, status=instance.status)
    return InstanceStatusResponse(
        instance_name=instance_name,
        zone=zone,
        status=instance.status,
        network_interfaces=network_interfaces_to_dict(instance),
    )
