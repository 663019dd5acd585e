"""
ASGI-safe HTTP logging middleware.

This middleware:
- Drains all incoming http.request messages
- Replays buffered messages to downstream via replay_receive
- Passes streamed responses through untouched (logged once the last chunk is sent)
- Logs http_in with method, path, status and duration
"""

import json
import secrets
import time
from typing import Any, Dict, List, Optional
from starlette.types import ASGIApp, Receive, Scope, Send

from ollama_fleet.logging_utils import get_logger


class HTTPLoggingASGIMiddleware:
    """
    ASGI-safe HTTP logger that drains & replays request messages.
    Avoids BaseHTTPMiddleware, which buffers streaming responses and breaks
    request-body replay.
    """

    def __init__(self, app: ASGIApp, *, service: str = "ollama-fleet"):
        self.app = app
        self.service = service
        self.logger = get_logger()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        received: List[Dict[str, Any]] = []
        body = b""
        while True:
            msg = await receive()
            received.append(msg)

            if msg.get("type") == "http.request":
                body += msg.get("body", b"")
                if not msg.get("more_body", False):
                    break
                continue

            break

        replay_queue = list(received)

        async def replay_receive() -> Dict[str, Any]:
            if replay_queue:
                return replay_queue.pop(0)
            return await receive()

        t0 = time.time()
        request_id = secrets.token_hex(4)

        method = scope.get("method")
        path = scope.get("path")
        query = scope.get("query_string", b"").decode("latin-1")
        full_path = f"{path}?{query}" if query else path
        client = scope.get("client")
        remote_addr = None
        if client and len(client) >= 2:
            remote_addr = f"{client[0]}:{client[1]}"

        headers = {}
        for k, v in scope.get("headers", []):
            headers[k.decode("latin-1")] = v.decode("latin-1")

        status_code: Optional[int] = None

        async def send_wrapper(message: Dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", 0) or 0)
            await send(message)

        try:
            await self.app(scope, replay_receive, send_wrapper)
        finally:
            dur_ms = (time.time() - t0) * 1000.0

            if path and path.endswith("/health"):
                self.logger.debug(
                    "http_in",
                    request_id=request_id,
                    method=method,
                    path=full_path,
                    status_code=status_code,
                    duration_ms=dur_ms,
                )
            else:
                body_obj = None
                if body and headers.get("content-type", "").startswith("application/json"):
                    try:
                        body_obj = json.loads(body)
                    except ValueError:
                        body_obj = body[:200]

                self.logger.http_in(
                    method=method,
                    path=full_path,
                    remote_addr=remote_addr or "unknown",
                    request_id=request_id,
                    headers=headers,
                    body=body_obj,
                    status_code=status_code,
                    duration_ms=dur_ms,
                )
