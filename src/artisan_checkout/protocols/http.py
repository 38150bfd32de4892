"""Shared async HTTP plumbing for outbound service clients."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from artisan_checkout.errors import ServiceClientError

logger = structlog.get_logger(__name__)

_DEFAULT_TIMEOUT = 15.0
_MAX_RETRIES = 2


class ServiceClient:
    """Async HTTP client with retries and error mapping.

    4xx responses are returned to the caller via :class:`httpx.HTTPStatusError`
    wrapped in :class:`ServiceClientError`; timeouts, 5xx and transport errors
    are retried up to ``max_retries`` times.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT,
        max_retries: int = _MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._transport = transport
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-initialise the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
                headers=self._headers,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retries: int | None = None,
    ) -> Any:
        """Execute an HTTP request with retries and error mapping."""
        client = await self._get_client()
        max_retries = self._max_retries if retries is None else retries
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                response = await client.request(method, path, json=json_body, params=params)
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as exc:
                last_error = exc
                logger.warning(
                    "service_request_timeout",
                    service=self.service_name,
                    path=path,
                    attempt=attempt + 1,
                )
            except httpx.HTTPStatusError as exc:
                # Don't retry 4xx errors
                if 400 <= exc.response.status_code < 500:
                    raise ServiceClientError(
                        f"{self.service_name} request failed "
                        f"({exc.response.status_code}): {exc.response.text}",
                        upstream_status=exc.response.status_code,
                        upstream_body=exc.response.text,
                    ) from exc
                last_error = exc
                logger.warning(
                    "service_request_http_error",
                    service=self.service_name,
                    path=path,
                    status=exc.response.status_code,
                    attempt=attempt + 1,
                )
            except httpx.RequestError as exc:
                last_error = exc
                logger.warning(
                    "service_request_error",
                    service=self.service_name,
                    path=path,
                    error=str(exc),
                    attempt=attempt + 1,
                )
            except ValueError as exc:
                # 2xx whose body is not JSON
                raise ServiceClientError(
                    f"{self.service_name} returned an unreadable body for {path}",
                    upstream_status=response.status_code,
                    upstream_body=response.text,
                ) from exc

        raise ServiceClientError(
            f"{self.service_name} request to {path} failed after "
            f"{max_retries + 1} attempts: {last_error}"
        )
