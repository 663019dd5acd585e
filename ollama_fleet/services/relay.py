"""
Relay of Ollama API commands to a provisioned instance.

A command is POSTed to ``http://{instanceIp}:{port}/api/{ollamaCommand}``.
Single JSON documents are relayed whole; ``application/x-ndjson`` streams are
forwarded chunk by chunk. After a successful relay the instance's
``last-activity-timestamp`` is refreshed so the watchdog keeps it alive.
That refresh is best effort: its failure is logged and never changes the
response. Failed inference calls never refresh the marker.
"""
from __future__ import annotations

import json
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response, StreamingResponse

from ollama_fleet.compute import ComputeGateway
from ollama_fleet.config import Settings
from ollama_fleet.errors import BadRequestError, InferenceError
from ollama_fleet.http_client import LoggedHTTPClient
from ollama_fleet.logging_utils import get_logger
from ollama_fleet.naming import utc_now_iso
from ollama_fleet.schemas import ExecuteCommandRequest

ClientFactory = Callable[[], LoggedHTTPClient]

STREAMING_CONTENT_TYPES = ("application/x-ndjson", "text/event-stream")

# Checked in this order; the first missing field is reported.
REQUIRED_FIELDS = (
    ("instance_ip", "Missing required field: instanceIp."),
    ("instance_name", "Missing required field: instanceName (for metadata update)."),
    ("zone", "Missing required field: zone (for metadata update)."),
    ("ollama_command", "Missing required field: ollamaCommand"),
)

# Errors raised while building or writing the request, before anything reached the instance.
REQUEST_SETUP_ERRORS = (httpx.InvalidURL, httpx.UnsupportedProtocol, httpx.LocalProtocolError)


def validate_command_request(req: ExecuteCommandRequest) -> None:
    for attr, message in REQUIRED_FIELDS:
        if not getattr(req, attr):
            raise BadRequestError(message)


def inference_url(instance_ip: str, port: int, command: str) -> str:
    return f"http://{instance_ip}:{port}/api/{command}"


def is_streaming_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower() in STREAMING_CONTENT_TYPES


def _decode_error_body(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")


class ActivityMarker:
    """Refreshes ``last-activity-timestamp`` on one instance, best effort."""

    def __init__(self, compute: ComputeGateway, project: str, zone: str, instance_name: str):
        self.compute = compute
        self.project = project
        self.zone = zone
        self.instance_name = instance_name
        self.slog = get_logger()

    async def touch(self) -> Optional[str]:
        when = utc_now_iso()
        try:
            written = await run_in_threadpool(
                self.compute.touch_last_activity,
                self.project,
                self.zone,
                self.instance_name,
                when,
            )
        except Exception as exc:
            self.slog.warning(
                "activity_marker_update_failed",
                instance=self.instance_name,
                zone=self.zone,
                error=f"{type(exc).__name__}: {exc}",
            )
            return None
        self.slog.info(
            "activity_marker_updated",
            instance=self.instance_name,
            zone=self.zone,
            timestamp=written,
        )
        return written


class BufferedRelay:
    """Relays a single JSON document: read it whole, then respond."""

    async def read(self, upstream: httpx.Response, command: str) -> Response:
        try:
            body = await upstream.aread()
        except httpx.TransportError as exc:
            raise InferenceError(_no_response_message(command), error=str(exc)) from exc
        return Response(
            content=body,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "application/json"),
        )


class StreamingRelay:
    """Relays newline-delimited JSON chunk by chunk as the instance produces it."""

    def __init__(self):
        self.completed = False
        self.slog = get_logger()

    async def _chunks(
        self,
        upstream: httpx.Response,
        resources: AsyncExitStack,
        instance_name: str,
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
            self.completed = True
        except httpx.TransportError as exc:
            # Headers are already sent; all that can be done is end the body early.
            self.slog.error(
                "relay_stream_interrupted",
                instance=instance_name,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            await resources.aclose()

    def respond(
        self,
        upstream: httpx.Response,
        resources: AsyncExitStack,
        marker: ActivityMarker,
    ) -> StreamingResponse:
        async def after_stream():
            if self.completed:
                await marker.touch()

        return StreamingResponse(
            self._chunks(upstream, resources, marker.instance_name),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
            background=BackgroundTask(after_stream),
        )


def _no_response_message(command: str) -> str:
    return (
        f"No response from Ollama for command '{command}'. "
        "Ensure the instance is running and Ollama service is accessible."
    )


async def relay_command(
    req: ExecuteCommandRequest,
    settings: Settings,
    compute: ComputeGateway,
    client_factory: ClientFactory,
) -> Response:
    slog = get_logger()
    project = settings.require_project()
    validate_command_request(req)

    command = req.ollama_command
    url = inference_url(req.instance_ip, settings.ollama_port, command)
    payload = req.command_payload if req.command_payload is not None else {}
    marker = ActivityMarker(compute, project, req.zone, req.instance_name)

    slog.info(
        "relay_command",
        instance=req.instance_name,
        zone=req.zone,
        command=command,
        url=url,
    )

    async with AsyncExitStack() as stack:
        client = await stack.enter_async_context(client_factory())
        try:
            upstream = await client.open_stream("POST", url, json=payload)
        except REQUEST_SETUP_ERRORS as exc:
            raise InferenceError(
                "Error setting up request to Ollama.",
                status_code=500,
                error=str(exc),
            ) from exc
        except httpx.TransportError as exc:
            raise InferenceError(_no_response_message(command), error=str(exc)) from exc
        stack.push_async_callback(upstream.aclose)

        if not upstream.is_success:
            try:
                error_body = _decode_error_body(await upstream.aread())
            except httpx.TransportError:
                error_body = None
            slog.warning(
                "relay_upstream_error",
                instance=req.instance_name,
                command=command,
                status_code=upstream.status_code,
            )
            raise InferenceError(
                f"Ollama API error for command '{command}'",
                status_code=upstream.status_code,
                ollamaError=error_body,
                ollamaStatus=upstream.status_code,
            )

        if is_streaming_response(upstream):
            return StreamingRelay().respond(upstream, stack.pop_all(), marker)

        response = await BufferedRelay().read(upstream, command)

    await marker.touch()
    return response
