from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ollama_fleet.compute import ComputeGateway
from ollama_fleet.config import Settings
from ollama_fleet.errors import BadRequestError, FleetError
from ollama_fleet.http_client import ollama_client
from ollama_fleet.http_logging_asgi import HTTPLoggingASGIMiddleware
from ollama_fleet.logging_utils import get_logger, init_logging
from ollama_fleet.schemas import CreateInstanceRequest, ExecuteCommandRequest
from ollama_fleet.services.provisioner import provision_instance
from ollama_fleet.services.relay import ClientFactory, relay_command
from ollama_fleet.services.status import describe_instance


# ---------------------------
# Dependencies
# ---------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_compute(request: Request) -> ComputeGateway:
    return request.app.state.compute


def get_client_factory(request: Request) -> ClientFactory:
    return request.app.state.client_factory


async def _json_object(request: Request) -> Dict[str, Any]:
    """Request body as a dict; empty or non-object bodies count as ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise BadRequestError("Request body must be valid JSON.", error=str(exc)) from exc
    return body if isinstance(body, dict) else {}


def _parse(model, body: Dict[str, Any]):
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise BadRequestError(
            "Invalid request body.",
            errors=json.loads(exc.json(include_url=False)),
        ) from exc


# ---------------------------
# Handlers
# ---------------------------
async def create_instance(
    request: Request,
    settings: Settings = Depends(get_settings),
    compute: ComputeGateway = Depends(get_compute),
):
    settings.require_project()
    req = _parse(CreateInstanceRequest, await _json_object(request))
    result = await run_in_threadpool(
        provision_instance, settings, compute, req.model_name, req.zone
    )
    return result.model_dump(by_alias=True)


async def get_instance_status(
    instanceName: Optional[str] = None,
    zone: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    compute: ComputeGateway = Depends(get_compute),
):
    result = await run_in_threadpool(describe_instance, settings, compute, instanceName, zone)
    return result.model_dump(by_alias=True)


async def execute_ollama_command(
    request: Request,
    settings: Settings = Depends(get_settings),
    compute: ComputeGateway = Depends(get_compute),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    settings.require_project()
    req = _parse(ExecuteCommandRequest, await _json_object(request))
    return await relay_command(req, settings, compute, client_factory)


async def health(settings: Settings = Depends(get_settings)):
    return {"ok": True, "project_configured": bool(settings.project)}


async def _fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
    get_logger().warning(
        "request_failed",
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def build_router() -> APIRouter:
    router = APIRouter()
    router.add_api_route("/createInstance", create_instance, methods=["POST"])
    router.add_api_route("/getInstanceStatus", get_instance_status, methods=["GET"])
    router.add_api_route("/executeOllamaCommand", execute_ollama_command, methods=["POST"])
    router.add_api_route("/health", health, methods=["GET"])
    return router


def create_app(
    settings: Settings,
    compute: Optional[ComputeGateway] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """
    Build the ollama-fleet API.

    ``compute`` and ``client_factory`` default to the real Compute Engine
    gateway and an httpx client with the configured Ollama timeout; tests pass
    fakes instead.
    """
    init_logging(project_id=settings.project)

    app = FastAPI(title="ollama-fleet")
    app.state.settings = settings
    app.state.compute = compute if compute is not None else ComputeGateway(settings)
    app.state.client_factory = client_factory if client_factory is not None else (
        lambda: ollama_client(timeout_s=settings.ollama_timeout_s)
    )

    app.add_middleware(HTTPLoggingASGIMiddleware, service="ollama-fleet")
    app.add_exception_handler(FleetError, _fleet_error_handler)
    app.include_router(build_router())
    return app
