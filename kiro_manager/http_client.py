# -*- coding: utf-8 -*-

# Kiro Account Manager
# Copyright (C) 2025 Jwadow
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Shared HTTP client for identity provider and portal calls.

One KiroHttpClient is created per process and handed to every adapter.
Proxy and timeouts come from HttpClientConfig instead of process-wide
environment variables, so tests can inject an httpx.MockTransport.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from kiro_manager.config import (
    API_TIMEOUT,
    CONNECT_TIMEOUT,
    IMPORT_TIMEOUT,
    LOGIN_TIMEOUT,
    REFRESH_TIMEOUT,
    USER_AGENT,
)
from kiro_manager.errors import NetworkError, OperationCancelledError


class CancelToken:
    """
    Cooperative cancellation signal passed into adapter calls.

    Setting the token aborts HTTP requests that are in flight and stops
    batch loops from scheduling more work.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, operation: str = "Operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{operation} cancelled")


@dataclass(frozen=True)
class HttpClientConfig:
    """
    Network settings shared by every outbound call.

    Attributes:
        proxy_url: HTTP(S) proxy for all requests, or None.
        connect_timeout: Connection timeout in seconds.
        login_timeout: Timeout for login / device authorization endpoints.
        refresh_timeout: Timeout for token refresh endpoints.
        api_timeout: Timeout for portal API calls.
        import_timeout: Timeout for the long SSO import steps.
        user_agent: User-Agent header sent to the Kiro auth service.
    """

    proxy_url: Optional[str] = None
    connect_timeout: float = CONNECT_TIMEOUT
    login_timeout: float = LOGIN_TIMEOUT
    refresh_timeout: float = REFRESH_TIMEOUT
    api_timeout: float = API_TIMEOUT
    import_timeout: float = IMPORT_TIMEOUT
    user_agent: str = USER_AGENT


def extract_error_message(response: httpx.Response) -> str:
    """
    Builds a readable error message from a failed response.

    Handles the portal's `{"__type": ..., "message": ...}` shape and the OAuth
    `{"error": ..., "error_description": ...}` shape. The HTTP status is always
    part of the message.

    Args:
        response: Failed HTTP response.

    Returns:
        Message like "HTTP 423: AccountSuspendedException: suspended".
    """
    prefix = f"HTTP {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return f"{prefix}: {text[:300]}" if text else prefix

    if not isinstance(payload, dict):
        return prefix

    error_type = payload.get("__type") or payload.get("error")
    message = payload.get("message") or payload.get("Message") or payload.get("error_description")
    if error_type and "#" in str(error_type):
        error_type = str(error_type).split("#")[-1]

    if error_type and message:
        return f"{prefix}: {error_type}: {message}"
    if error_type or message:
        return f"{prefix}: {error_type or message}"
    return prefix


def extract_error_code(response: httpx.Response) -> Optional[str]:
    """Returns the vendor error code (`__type` or OAuth `error`) of a response."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    code = payload.get("__type") or payload.get("error")
    if code is None:
        return None
    return str(code).split("#")[-1]


class KiroHttpClient:
    """
    Lazily created httpx.AsyncClient wrapper.

    Translates httpx timeouts and transport failures into NetworkError
    carrying the operation name, and races every request against an
    optional CancelToken.

    Example:
        >>> http = KiroHttpClient(HttpClientConfig(proxy_url="http://127.0.0.1:8080"))
        >>> response = await http.post_json(url, {"a": 1}, operation="Token refresh")
        >>> await http.close()
    """

    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or HttpClientConfig()
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """
        Returns the shared client, creating it if needed.

        Returns:
            Open httpx.AsyncClient
        """
        if self.client is None or self.client.is_closed:
            kwargs: Dict[str, Any] = {
                "timeout": httpx.Timeout(self.config.api_timeout, connect=self.config.connect_timeout),
                "follow_redirects": True,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif self.config.proxy_url:
                kwargs["proxy"] = self.config.proxy_url
            self.client = httpx.AsyncClient(**kwargs)
        return self.client

    async def close(self) -> None:
        """Closes the underlying client."""
        if self.client and not self.client.is_closed:
            await self.client.aclose()

    async def reconfigure(self, config: HttpClientConfig) -> None:
        """
        Applies new network settings to all later requests.

        The current client is closed and a new one is created on next use.
        """
        await self.close()
        self.client = None
        self.config = config
        logger.info(f"HTTP client reconfigured (proxy: {'on' if config.proxy_url else 'off'})")

    async def set_proxy(self, proxy_url: Optional[str]) -> None:
        await self.reconfigure(replace(self.config, proxy_url=proxy_url or None))

    async def request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Sends a request and returns the response without checking its status.

        Args:
            method: HTTP method
            url: Full URL
            operation: Human readable operation name used in errors and logs
            timeout: Read timeout override in seconds
            cancel: Optional cancel token

        Returns:
            httpx.Response

        Raises:
            NetworkError: On timeout or transport failure
            OperationCancelledError: If the cancel token fires first
        """
        if cancel is not None:
            cancel.raise_if_cancelled(operation)

        client = await self._get_client()
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout, connect=self.config.connect_timeout)

        logger.debug(f"{operation}: {method} {url}")
        try:
            if cancel is None:
                return await client.request(method, url, **kwargs)
            return await self._race_cancel(client.request(method, url, **kwargs), cancel, operation)
        except httpx.TimeoutException as e:
            logger.warning(f"{operation} timed out: {e}")
            raise NetworkError(f"{operation} timed out", operation=operation) from e
        except httpx.HTTPError as e:
            logger.warning(f"{operation} failed: {type(e).__name__}: {e}")
            raise NetworkError(f"{operation} failed: {e}", operation=operation) from e

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> httpx.Response:
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        return await self.request(
            "POST",
            url,
            operation=operation,
            timeout=timeout,
            cancel=cancel,
            json=payload,
            headers=request_headers,
        )

    @staticmethod
    async def _race_cancel(coro: Any, cancel: CancelToken, operation: str) -> httpx.Response:
        request_task = asyncio.ensure_future(coro)
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()

        if request_task.done() and not request_task.cancelled():
            return request_task.result()

        await asyncio.gather(request_task, return_exceptions=True)
        logger.info(f"{operation} aborted by cancel token")
        raise OperationCancelledError(f"{operation} cancelled")
