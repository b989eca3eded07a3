"""
Bearer token issuing and caching for the Mindbody public API.

Tokens are cached per username in an injected cache store and reused until
they get within the grace period of their expiry.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import httpx

from ..config import Settings
from ..utils.logger import get_logger
from .cache import CacheStore, InMemoryCache
from .client import MindbodyClient
from .exceptions import AuthenticationError, AuthErrorKind, MindbodyApiError

if TYPE_CHECKING:
    from ..localdb.tokens import ApiTokenStore

logger = get_logger(__name__)

GRACE_PERIOD = 300
DEFAULT_EXPIRES_IN = 3600


class TokenManager:
    """Issues, caches and revokes user tokens."""

    def __init__(
        self,
        settings: Settings,
        cache: Optional[CacheStore] = None,
        token_store: Optional["ApiTokenStore"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.api_key = settings.api_key or ""
        self.site_id = settings.site_id
        self.base_url = settings.api_base_url
        self.cache_prefix = settings.cache_prefix
        self.cache: CacheStore = cache if cache is not None else InMemoryCache(clock)
        self.token_store = token_store
        self._transport = transport
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

        if not self.api_key:
            raise AuthenticationError.missing_api_key()

    async def get_token(self, username: str, password: str) -> str:
        """Return a cached token for the username, issuing a new one when needed."""
        cache_key = self.token_cache_key(username)

        cached = self.cache.get(cache_key)
        if cached and self.is_token_valid(cached):
            return cached["access_token"]

        # Concurrent misses for the same user share a single issue call
        lock = self._locks.setdefault(cache_key, asyncio.Lock())
        async with lock:
            cached = self.cache.get(cache_key)
            if cached and self.is_token_valid(cached):
                return cached["access_token"]

            token_data = await self.issue_token(username, password)
            ttl = max(token_data["expires_in"] - GRACE_PERIOD, GRACE_PERIOD)
            self.cache.set(cache_key, token_data, ttl)
            self.cache.set(self._token_ref_key(token_data["access_token"]), cache_key, ttl)

            if self.token_store is not None:
                await self.token_store.create_from_response(username, token_data)

        return token_data["access_token"]

    async def issue_token(self, username: str, password: str) -> Dict[str, Any]:
        """Call the issuing endpoint and normalize its response."""
        logger.debug(f"Issuing new user token for {username}")

        async with self._client() as client:
            try:
                data = await client.post(
                    "/usertoken/issue",
                    json={"Username": username, "Password": password},
                )
            except AuthenticationError as e:
                logger.error(f"Failed to issue user token for {username}: status={e.status_code}")
                if e.status_code == 401:
                    raise AuthenticationError.invalid_credentials(username) from e
                raise
            except MindbodyApiError as e:
                logger.error(
                    f"Failed to issue user token for {username}: status={e.status_code} response={e.details}"
                )
                raise

        access_token = data.get("AccessToken") if isinstance(data, dict) else None
        if not access_token:
            raise AuthenticationError.missing_access_token()

        token_data = {
            "access_token": access_token,
            "token_type": data.get("TokenType") or "Bearer",
            "expires_in": self._expires_in(data.get("ExpiresIn")),
            "issued_at": self._clock(),
        }
        logger.debug(f"User token issued successfully for {username}")
        return token_data

    @staticmethod
    def _expires_in(value: Any) -> int:
        if value is None or value == "":
            return DEFAULT_EXPIRES_IN
        try:
            expires_in = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Unusable ExpiresIn {value!r} in token response, using {DEFAULT_EXPIRES_IN}s")
            return DEFAULT_EXPIRES_IN
        return expires_in if expires_in > 0 else DEFAULT_EXPIRES_IN

    async def revoke_token(self, token: str) -> bool:
        """Revoke a token upstream and evict it from the cache."""
        logger.debug("Revoking user token")

        async with self._client() as client:
            try:
                await client.delete("/usertoken/revoke", headers={"Authorization": token})
            except MindbodyApiError as e:
                logger.error(f"Failed to revoke user token: status={e.status_code} response={e.details}")
                return False

        ref_key = self._token_ref_key(token)
        cache_key = self.cache.get(ref_key)
        if cache_key:
            cached = self.cache.get(cache_key)
            if cached and cached.get("access_token") == token:
                self.cache.delete(cache_key)
            self.cache.delete(ref_key)

        if self.token_store is not None:
            await self.token_store.revoke(token)

        logger.debug("User token revoked successfully")
        return True

    def get_cached_token(self, username: str) -> Optional[str]:
        cached = self.cache.get(self.token_cache_key(username))
        if cached and self.is_token_valid(cached):
            return cached["access_token"]
        return None

    def clear_token_cache(self, username: str) -> None:
        cache_key = self.token_cache_key(username)
        cached = self.cache.get(cache_key)
        if cached and cached.get("access_token"):
            self.cache.delete(self._token_ref_key(cached["access_token"]))
        self.cache.delete(cache_key)

    def is_token_valid(self, token_data: Dict[str, Any]) -> bool:
        """A token is usable until GRACE_PERIOD seconds before it expires."""
        issued_at = token_data.get("issued_at")
        expires_in = token_data.get("expires_in")
        if issued_at is None or expires_in is None:
            return False
        return self._clock() < issued_at + expires_in - GRACE_PERIOD

    def base_headers(self) -> Dict[str, str]:
        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.site_id:
            headers["SiteId"] = self.site_id
        return headers

    def get_headers(self, user_token: Optional[str] = None) -> Dict[str, str]:
        headers = self.base_headers()
        if user_token:
            headers["Authorization"] = user_token
        return headers

    def validate_configuration(self) -> None:
        if not self.api_key:
            raise AuthenticationError.missing_api_key()
        if not self.site_id:
            raise AuthenticationError.missing_site_id()

    async def test_connection(self) -> bool:
        async with MindbodyClient.for_public_api(self.settings, self, self._transport) as client:
            return await client.test_connection()

    def token_cache_key(self, username: str) -> str:
        return f"{self.cache_prefix}:user_token:" + hashlib.md5(username.encode("utf-8")).hexdigest()

    def _token_ref_key(self, token: str) -> str:
        return f"{self.cache_prefix}:user_token_ref:" + hashlib.sha256(token.encode("utf-8")).hexdigest()

    def _client(self) -> MindbodyClient:
        return MindbodyClient(
            self.base_url,
            self.base_headers(),
            timeout=self.settings.api_timeout,
            connect_timeout=self.settings.api_connect_timeout,
            max_retries=self.settings.api_retry_times,
            retry_delay=self.settings.api_retry_delay / 1000.0,
            transport=self._transport,
        )


__all__ = ["TokenManager", "GRACE_PERIOD", "AuthErrorKind"]
