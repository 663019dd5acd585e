"""
Instrumented HTTP client wrapper for ollama-fleet.

Wraps httpx with structured logging for every outbound request to the
Ollama server running on a provisioned instance.
"""

import uuid
from typing import Any, Optional
import httpx

from ollama_fleet.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    Wraps httpx.AsyncClient with automatic logging of:
    - Request method, URL, body
    - Response status, duration
    - Errors and exceptions
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        """
        Initialize logged HTTP client.

        Args:
            service: Service name for logging (e.g., "ollama")
            base_url: Base URL for the service
            timeout: Request timeout configuration
            **client_kwargs: Additional arguments for httpx.AsyncClient
                (tests pass ``transport=httpx.MockTransport(...)``)
        """
        self.service = service
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout

        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(**self._client_kwargs)
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.__aexit__(exc_type, exc_val, exc_tb)
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the underlying httpx client."""
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    def _timeout_value(self, timeout: Any) -> Optional[float]:
        if isinstance(timeout, httpx.Timeout):
            return timeout.read or timeout.connect
        return timeout

    def _log_error(self, method, url, request_id, timeout_value, request_body, duration_ms, error):
        self.logger.http_out(
            service=self.service,
            method=method,
            url=str(url),
            request_id=request_id,
            timeout=timeout_value,
            request_body=request_body,
            duration_ms=duration_ms,
            error=error,
        )

    async def open_stream(
        self,
        method: str,
        url: str,
        **kwargs
    ) -> httpx.Response:
        """
        Send a request and return as soon as the response headers arrive.

        The body is not read. The caller owns the response and must
        ``await response.aclose()`` (directly or by leaving the client's
        context) once the body has been consumed.

        Args:
            method: HTTP method
            url: URL to request
            **kwargs: Arguments for httpx.AsyncClient.build_request

        Returns:
            httpx.Response object in streaming mode
        """
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        timeout_value = self._timeout_value(
            kwargs.get("timeout", self._client_kwargs.get("timeout"))
        )
        request_body = kwargs.get("json") or kwargs.get("data") or kwargs.get("content")

        with timer() as t:
            try:
                request = client.build_request(method, url, **kwargs)
                response = await client.send(request, stream=True)

                self.logger.http_out(
                    service=self.service,
                    method=method,
                    url=str(url),
                    request_id=request_id,
                    timeout=timeout_value,
                    request_body=request_body,
                    status_code=response.status_code,
                    duration_ms=t.stop(),
                )

                return response

            except httpx.TimeoutException as e:
                self._log_error(method, url, request_id, timeout_value, request_body,
                                t.stop(), f"Timeout: {str(e)}")
                raise

            except httpx.ConnectError as e:
                self._log_error(method, url, request_id, timeout_value, request_body,
                                t.stop(), f"Connection error: {str(e)}")
                raise

            except Exception as e:
                self._log_error(method, url, request_id, timeout_value, request_body,
                                t.stop(), f"{type(e).__name__}: {str(e)}")
                raise


def ollama_client(
    timeout_s: float = 600.0,
    timeout: Optional[httpx.Timeout] = None,
    **client_kwargs
) -> LoggedHTTPClient:
    """Create a logged HTTP client for an instance's Ollama server."""
    return LoggedHTTPClient(
        service="ollama",
        timeout=timeout or httpx.Timeout(connect=10.0, read=timeout_s, write=timeout_s, pool=10.0),
        **client_kwargs
    )
