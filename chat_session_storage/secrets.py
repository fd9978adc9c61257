"""
Secret proxy client.

Fetches configuration secrets (e.g. the Cosmos DB endpoint and key) from
an HTTP proxy in front of a key vault:

    GET {base_url}/api/get-secret?name={secret_name}

Responses are ``{"success": true, "data": {"value": ...}}`` or
``{"value": ...}``. Non-empty values are cached for a short TTL. The proxy
is guarded by its own circuit breaker so a dead proxy costs one timeout,
not one per secret. In development mode, CHAT_STORAGE_SECRET_<NAME>
environment variables stand in for unreachable or unauthorized secrets.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import aiohttp

from .cache import BoundedCache
from .config import SecretProxyConfig, development_fallback
from .exceptions import CircuitOpenError, SecretFetchError
from .logging_utils import log_once
from .resilience import CircuitBreaker, is_auth_status

logger = logging.getLogger(__name__)

SECRET_PATH = "/api/get-secret"
HEALTH_PATH = "/api/health"

TokenProvider = Callable[[], Awaitable[str | None]]


def extract_secret_value(payload: Any) -> str | None:
    """Pull the secret value out of either supported response shape."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if payload.get("success") and isinstance(data, dict) and data.get("value"):
        return str(data["value"])
    if payload.get("value"):
        return str(payload["value"])
    return None


class SecretProxyClient:
    """Cached, circuit-breaker-guarded client for the secret proxy."""

    def __init__(
        self,
        config: SecretProxyConfig | None = None,
        token_provider: TokenProvider | None = None,
        session: aiohttp.ClientSession | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the client.

        Args:
            config: Proxy settings (defaults to SecretProxyConfig())
            token_provider: Async callable returning a bearer token, or None
            session: Shared aiohttp session (created lazily if omitted)
            breaker: Circuit breaker (one is created from config if omitted)
            clock: Monotonic time source for the cache and breaker
        """
        self.config = config or SecretProxyConfig()
        self.token_provider = token_provider
        self.breaker = breaker or CircuitBreaker(
            name="secret-proxy",
            failure_threshold=self.config.circuit_failure_threshold,
            reset_timeout=self.config.circuit_reset_timeout,
            clock=clock,
        )
        self._session = session
        self._owns_session = session is None
        self._cache: BoundedCache[str] = BoundedCache(
            max_entries=self.config.cache_max_entries,
            ttl_seconds=self.config.cache_ttl,
            clock=clock,
        )
        self._warnings: BoundedCache[bool] = BoundedCache(
            max_entries=self.config.warning_cache_size
        )

    @property
    def url(self) -> str:
        return self.config.base_url.rstrip("/") + SECRET_PATH

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> SecretProxyClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _fallback(self, secret_name: str) -> str | None:
        if not self.config.development_mode:
            return None
        return development_fallback(secret_name)

    def _warn_once(self, key: str, msg: str, *args: Any) -> None:
        log_once(logger, logging.WARNING, key, msg, *args, cache=self._warnings)

    async def _auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token_provider is None:
            return headers
        try:
            token = await self.token_provider()
        except Exception as e:
            # The proxy decides what unauthenticated callers may read.
            logger.error("Failed to get access token for secret request: %s", e)
            return headers
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # =========================================================================
    # Fetching
    # =========================================================================

    async def _fetch(self, secret_name: str) -> str | None:
        """One round trip to the proxy.

        Raises:
            SecretFetchError: On transport errors, timeouts and non-2xx responses
        """
        session = await self._get_session()
        headers = await self._auth_headers()
        try:
            async with session.get(
                self.url,
                params={"name": secret_name},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            ) as response:
                if response.status >= 400:
                    reason = f"HTTP {response.status}"
                    try:
                        body = await response.json(content_type=None)
                        if isinstance(body, dict) and body.get("error"):
                            reason = str(body["error"])
                    except (aiohttp.ContentTypeError, ValueError):
                        pass
                    raise SecretFetchError(secret_name, reason, response.status)
                payload = await response.json(content_type=None)
        except TimeoutError as e:
            raise SecretFetchError(
                secret_name, "request timed out - the proxy may be starting up"
            ) from e
        except aiohttp.ClientError as e:
            raise SecretFetchError(secret_name, f"cannot reach secret proxy: {e}") from e
        except ValueError as e:
            raise SecretFetchError(secret_name, f"invalid JSON response: {e}") from e

        value = extract_secret_value(payload)
        if value is None:
            logger.warning("Unexpected response structure for secret %s", secret_name)
        return value

    async def get_secret(self, secret_name: str) -> str | None:
        """Return a secret value, or None if it is unavailable.

        Raises:
            CircuitOpenError: If the circuit is open and no development fallback exists
        """
        cached = self._cache.get(secret_name)
        if cached:
            logger.debug("Using cached value for secret: %s", secret_name)
            return cached

        if self.breaker.is_open():
            fallback = self._fallback(secret_name)
            if fallback is not None:
                self._warn_once(
                    f"circuit-{secret_name}",
                    "Using development fallback for %s due to open circuit",
                    secret_name,
                )
                return fallback
            raise CircuitOpenError(self.breaker.name, self.breaker.retry_in())

        try:
            value = await self._fetch(secret_name)
        except SecretFetchError as e:
            self.breaker.record_failure()
            return self._on_fetch_error(e)

        self.breaker.record_success()
        if value and value.strip():
            self._cache.put(secret_name, value)
        else:
            logger.warning("Received empty value for secret %s, not caching", secret_name)
        return value

    def _on_fetch_error(self, error: SecretFetchError) -> str | None:
        name = error.secret_name
        fallback = self._fallback(name)

        if is_auth_status(error.status_code):
            self._warn_once(
                f"auth-{name}",
                "Authentication failed for secret access (%s). Using development fallback if available.",
                error.status_code,
            )
            return fallback

        logger.error("Error fetching secret %s: %s", name, error.reason)
        if fallback is not None:
            self._warn_once(
                f"error-{name}",
                "Using development fallback for %s due to error: %s",
                name,
                error.reason,
            )
        return fallback

    async def get_secrets(self, secret_names: Iterable[str]) -> dict[str, str | None]:
        """Fetch several secrets concurrently. Failed lookups map to None."""
        names = list(dict.fromkeys(secret_names))
        results = await asyncio.gather(
            *(self.get_secret(name) for name in names), return_exceptions=True
        )
        secrets: dict[str, str | None] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to get secret %s: %s", name, result)
                secrets[name] = None
            else:
                secrets[name] = result
        return secrets

    # =========================================================================
    # Cache management and health
    # =========================================================================

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Secret cache cleared")

    def clear_secrets_cache(self, secret_names: Iterable[str]) -> None:
        for name in secret_names:
            self._cache.pop(name)

    async def refresh_secret(self, secret_name: str) -> str | None:
        """Drop a cached secret and fetch it again."""
        self._cache.pop(secret_name)
        return await self.get_secret(secret_name)

    async def health_check(self) -> dict[str, Any]:
        """Probe the proxy's health endpoint. Never raises."""
        healthy = False
        error: str | None = None
        try:
            session = await self._get_session()
            async with session.get(
                self.config.base_url.rstrip("/") + HEALTH_PATH,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            ) as response:
                healthy = response.status < 400
                if not healthy:
                    error = f"HTTP {response.status}"
        except (aiohttp.ClientError, TimeoutError) as e:
            error = str(e) or type(e).__name__

        return {
            "healthy": healthy,
            "error": error,
            "cached_secrets": len(self._cache),
            "circuit": self.breaker.metrics(),
        }
