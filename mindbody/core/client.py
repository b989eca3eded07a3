"""
HTTP client wrapper for the Mindbody APIs.
Handles requests, retries, timeouts and error mapping.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import httpx

from ..config import Settings
from ..utils.logger import get_logger
from .exceptions import (
    AuthenticationError,
    MindbodyApiError,
    MindbodyError,
    NotFoundError,
    RateLimitError,
)

if TYPE_CHECKING:
    from .auth import TokenManager

logger = get_logger(__name__)

SENSITIVE_KEYS = ("password", "api_key", "apikey", "token", "secret", "authorization")


class MindbodyClient:
    """Async HTTP client for Mindbody with error mapping and retries.

    Only server errors (5xx) and transport failures are retried; client
    errors are raised on the first response.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        *,
        timeout: float = 30,
        connect_timeout: float = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_manager: Optional["TokenManager"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.token_manager = token_manager
        self.user_token: Optional[str] = None
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def for_public_api(
        cls,
        settings: Settings,
        token_manager: Optional["TokenManager"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MindbodyClient":
        if token_manager is not None:
            headers = token_manager.base_headers()
        else:
            headers = {"Api-Key": settings.api_key or "", "Content-Type": "application/json", "Accept": "application/json"}
            if settings.site_id:
                headers["SiteId"] = settings.site_id
        return cls(
            settings.api_base_url,
            headers,
            timeout=settings.api_timeout,
            connect_timeout=settings.api_connect_timeout,
            max_retries=settings.api_retry_times,
            retry_delay=settings.api_retry_delay / 1000.0,
            transport=transport,
            token_manager=token_manager,
        )

    @classmethod
    def for_webhooks_api(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MindbodyClient":
        headers = {
            "Api-Key": settings.webhooks_api_key or "",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return cls(
            settings.webhooks_base_url,
            headers,
            timeout=settings.api_timeout,
            connect_timeout=settings.api_connect_timeout,
            max_retries=settings.api_retry_times,
            retry_delay=settings.api_retry_delay / 1000.0,
            transport=transport,
        )

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def authenticate(self, username: str, password: str) -> "MindbodyClient":
        """Obtain a user token for staff-authenticated endpoints."""
        if self.token_manager is None:
            raise MindbodyError("Token manager is required for user authentication")
        self.user_token = await self.token_manager.get_token(username, password)
        logger.debug(f"Authenticated successfully as {username}")
        return self

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make a request, retrying server errors and transport failures."""
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        request_headers = dict(self.headers)
        if self.user_token:
            request_headers["Authorization"] = self.user_token
        if headers:
            request_headers.update(headers)

        logger.debug(f"API Request: {method} {path}")
        if params:
            logger.debug(f"  Params: {params}")
        if isinstance(json, dict):
            logger.debug(f"  Body: {self._mask_sensitive_data(json)}")

        attempts = self.max_retries + 1
        for attempt in range(attempts):
            start_ts = time.monotonic()
            try:
                response = await self._client.request(
                    method=method,
                    url=path,
                    json=json,
                    params=params,
                    headers=request_headers,
                )
            except httpx.TimeoutException as e:
                duration_ms = int((time.monotonic() - start_ts) * 1000)
                logger.warning(
                    f"Request timeout (attempt {attempt + 1}/{attempts}): {method} {path} | duration={duration_ms} ms"
                )
                if attempt == attempts - 1:
                    logger.error(f"Request timeout after {attempts} attempts")
                    raise MindbodyError("Request timeout") from e
                await self._sleep(self._backoff(attempt))
                continue
            except httpx.TransportError as e:
                logger.warning(f"Network error (attempt {attempt + 1}/{attempts}): {e}")
                if attempt == attempts - 1:
                    logger.error(f"Network error after {attempts} attempts: {e}")
                    raise MindbodyError(f"Network error: {e}") from e
                await self._sleep(self._backoff(attempt))
                continue

            duration_ms = int((time.monotonic() - start_ts) * 1000)
            logger.debug(f"API Response: {response.status_code} for {method} {path} ({duration_ms} ms)")

            if response.status_code >= 500 and attempt < attempts - 1:
                logger.warning(
                    f"Server error {response.status_code} (attempt {attempt + 1}/{attempts}): {method} {path}"
                )
                await self._sleep(self._backoff(attempt))
                continue

            return self._handle_response(response)

        # Loop always returns or raises; kept for type checkers
        raise MindbodyError("Max retries exceeded")

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def _mask_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive data in logs."""
        masked = data.copy()
        for key in masked:
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                masked[key] = "***MASKED***"
        return masked

    def _handle_response(self, response: httpx.Response) -> Any:
        """Return the decoded body of a 2xx response or raise a typed error."""
        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return response.text

        if response.status_code == 401:
            logger.error("Authentication error - invalid credentials or API key")
            raise AuthenticationError.from_response(response)
        if response.status_code == 403:
            logger.error("Authorization error - insufficient permissions")
            raise AuthenticationError.insufficient_permissions(
                f"{response.request.method} {response.request.url.path}",
                details=MindbodyApiError.from_response(response).details,
            )
        if response.status_code == 404:
            logger.error(f"Resource not found: {response.request.url}")
            raise NotFoundError.from_response(response)
        if response.status_code == 429:
            logger.error("Rate limit exceeded")
            raise RateLimitError.from_response(response)

        error = MindbodyApiError.from_response(response)
        logger.error(f"API error {response.status_code}: {error.message}, details: {error.details}")
        raise error

    # Convenience methods
    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make GET request."""
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Any] = None, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make POST request."""
        return await self.request("POST", path, json=json, params=params)

    async def put(self, path: str, json: Optional[Any] = None) -> Any:
        """Make PUT request."""
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str, headers: Optional[Dict[str, str]] = None) -> Any:
        """Make DELETE request."""
        return await self.request("DELETE", path, headers=headers)

    async def test_connection(self) -> bool:
        """Probe the public API with a lightweight site listing."""
        try:
            await self.get("/site/sites")
            return True
        except MindbodyError as e:
            logger.error(f"Connection test failed: {e}")
            return False
