"""HTTP implementation of the remote record service.

Talks to the employee REST API, unwraps its ``{"status", "data"}`` envelope
and maps transport and HTTP failures onto the sync error taxonomy.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..config import RemoteConfig
from ..errors import (
    ClientError,
    ConnectionFailed,
    InvalidResponse,
    RateLimited,
    RemoteError,
    RemoteTimeout,
    RemoteUnreachable,
    ServerError,
)
from .base import RawRecord, RemoteService

logger = logging.getLogger(__name__)


class HttpRemoteService(RemoteService):
    """Remote service backed by ``httpx.AsyncClient``.

    Retries are off by default (``max_retries=1``). When enabled, timeouts,
    connection errors and 5xx responses are retried with exponential backoff;
    other failures are raised immediately.
    """

    def __init__(
        self,
        base_url: str = RemoteConfig.base_url,
        timeout: float = 5.0,
        max_retries: int = 1,
        retry_backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the service.

        Args:
            base_url: Base URL of the API (e.g., "https://host/api/v1").
            timeout: Request timeout in seconds.
            max_retries: Total attempts per request.
            retry_backoff: Initial backoff between attempts, doubled each time.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: RemoteConfig) -> "HttpRemoteService":
        return cls(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or "Unknown error"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return "Unknown error"

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._error_message(response)
        if status == 429:
            raise RateLimited(message)
        if status >= 500:
            raise ServerError(message, status_code=status)
        raise ClientError(message, status_code=status)

    async def _send(
        self, method: str, path: str, json_data: Any = None
    ) -> httpx.Response:
        client = await self._get_client()
        logger.debug(f"REQUEST[{method}] => PATH: {path} data={json_data}")
        try:
            response = await client.request(method, path, json=json_data)
        except httpx.TimeoutException as e:
            raise RemoteTimeout(f"Request timeout: {method} {path}") from e
        except httpx.DecodingError as e:
            raise InvalidResponse(f"Undecodable response: {method} {path}: {e}") from e
        except httpx.TransportError as e:
            raise ConnectionFailed(f"Connection failed: {method} {path}: {e}") from e
        except httpx.HTTPError as e:
            # Redirect loops and other request-level failures
            raise ConnectionFailed(f"Request failed: {method} {path}: {e}") from e

        logger.debug(f"RESPONSE[{response.status_code}] => PATH: {path}")
        self._raise_for_status(response)
        return response

    async def _request_with_retry(
        self, method: str, path: str, json_data: Any = None
    ) -> Any:
        """Make a request and return the envelope's ``data`` field.

        Raises:
            RemoteError: On any failure after the final attempt.
        """
        backoff = self.retry_backoff

        for attempt in range(self.max_retries):
            try:
                response = await self._send(method, path, json_data)
                break
            except (RemoteUnreachable, ServerError) as e:
                logger.warning(
                    f"ERROR[{e.status_code}] => PATH: {path}: {e}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                if attempt == self.max_retries - 1:
                    raise
            except RemoteError as e:
                logger.warning(f"ERROR[{e.status_code}] => PATH: {path}: {e}")
                raise

            # Exponential backoff
            await asyncio.sleep(backoff)
            backoff *= 2

        return self._unwrap(response, path)

    @staticmethod
    def _unwrap(response: httpx.Response, path: str) -> Any:
        """Validate the success envelope and return its payload."""
        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponse(f"Non-JSON response from {path}") from e

        if not isinstance(body, dict) or body.get("status") != "success":
            message = body.get("message") if isinstance(body, dict) else None
            raise InvalidResponse(
                f"Unsuccessful response from {path}: {message or body!r}",
                status_code=response.status_code,
            )
        return body.get("data")

    async def fetch_all(self) -> list[RawRecord]:
        data = await self._request_with_retry("GET", "/employees")
        if not isinstance(data, list):
            raise InvalidResponse("Employee list response has no data list")
        return data

    async def fetch_one(self, record_id: int) -> RawRecord:
        data = await self._request_with_retry("GET", f"/employee/{record_id}")
        if not isinstance(data, dict):
            raise InvalidResponse(f"Employee {record_id} response has no data")
        return data

    async def create(self, fields: dict[str, Any]) -> RawRecord:
        data = await self._request_with_retry("POST", "/create", fields)
        if not isinstance(data, dict):
            raise InvalidResponse("Create response has no data")
        return data

    async def update(self, record_id: int, fields: dict[str, Any]) -> Any:
        return await self._request_with_retry("PUT", f"/update/{record_id}", fields)

    async def delete(self, record_id: int) -> Any:
        return await self._request_with_retry("DELETE", f"/delete/{record_id}")
