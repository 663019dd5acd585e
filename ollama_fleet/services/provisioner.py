from __future__ import annotations

from typing import Optional

from ollama_fleet.boot_script import render_startup_script
from ollama_fleet.compute import ComputeGateway, build_instance_resource, instance_external_ip
from ollama_fleet.config import Settings
from ollama_fleet.errors import InstanceNotFound, ProviderError
from ollama_fleet.logging_utils import get_logger
from ollama_fleet.naming import generate_instance_name, utc_now_iso
from ollama_fleet.schemas import CreateInstanceResponse

IP_NOT_AVAILABLE = "IP not available yet. Check VM status."


def provision_instance(
    settings: Settings,
    compute: ComputeGateway,
    model_name: Optional[str] = None,
    zone: Optional[str] = None,
) -> CreateInstanceResponse:
    """
    Create one Ollama VM and wait for the insert operation to finish.

    No cleanup is attempted when the follow-up ``get`` fails: the instance may
    exist even though this call reports an error.
    """
    slog = get_logger()
    project = settings.require_project()
    model_name = model_name or settings.default_model
    zone = zone or settings.default_zone

    startup_script = render_startup_script(model_name)
    instance_name = generate_instance_name()
    initial_timestamp = utc_now_iso()

    resource = build_instance_resource(
        name=instance_name,
        zone=zone,
        settings=settings,
        startup_script=startup_script,
        initial_timestamp=initial_timestamp,
    )

    slog.info(
        "instance_create_requested",
        instance=instance_name,
        zone=zone,
        model=model_name,
        machine_type=settings.machine_type,
    )

    try:
        compute.insert_instance(project, zone, resource)
        instance = compute.get_instance(project, zone, instance_name)
    except (ProviderError, InstanceNotFound) as exc:
        slog.error("instance_create_failed", instance=instance_name, zone=zone, error=exc.message, detail=exc.extra)
        raise ProviderError("Error creating instance", error=exc.extra.get("error") or exc.message) from exc

    external_ip = instance_external_ip(instance)
    slog.info(
        "instance_created",
        instance=instance_name,
        zone=zone,
        status=instance.status,
        external_ip=external_ip,
    )

    return CreateInstanceResponse(
        message=f"Instance {instance_name} creation initiated.",
        instance_name=instance_name,
        status=instance.status,
        external_ip=external_ip or IP_NOT_AVAILABLE,
        zone=zone,
        model_name=model_name,
    )
