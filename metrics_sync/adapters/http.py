"""
Shared async HTTP client for platform adapters.

Features:
- Connection pooling with httpx
- Explicit per-request timeout
- Exponential backoff retry for transient failures only
- Request correlation IDs for tracing
- Uniform mapping of HTTP failures onto the sync error taxonomy
"""
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from metrics_sync.config import config
from metrics_sync.exceptions import ApiError, CredentialError, is_retryable
from metrics_sync.observability import get_logger, get_correlation_id, Timer, request_stats
from metrics_sync.resilience import RetryConfig, RateLimiter, retry_with_backoff

logger = get_logger(__name__)

Params = Union[Dict[str, Any], List[Tuple[str, Any]], None]

DEFAULT_RETRY_CONFIG = RetryConfig(
    max_attempts=config.http.max_attempts,
    base_delay=config.http.base_delay,
    max_delay=config.http.max_delay,
    exponential_base=2.0,
)


class PlatformHttpClient:
    """
    Async HTTP client bound to one platform's base URL.

    Authentication varies per app, so auth headers are passed per request.

    Usage:
        async with PlatformHttpClient("stripe", "https://api.stripe.com/v1") as client:
            page = await client.get_json("invoices", headers=auth)
    """

    def __init__(
        self,
        platform: str,
        base_url: str,
        timeout: float = None,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.platform = platform
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or config.http.timeout_seconds
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self.rate_limiter = rate_limiter
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=config.http.max_keepalive_connections,
                    max_connections=config.http.max_connections,
                ),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PlatformHttpClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Params = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Make an HTTP request with retry.

        Raises:
            CredentialError: 401/403
            ApiError: Any other failure, after retries for transient ones
        """
        return await retry_with_backoff(
            self._do_request,
            method, endpoint, params, headers,
            config=self.retry_config,
            should_retry=is_retryable,
            label=f"{self.platform} {method} {endpoint.split('?')[0]}",
        )

    async def _do_request(
        self,
        method: str,
        endpoint: str,
        params: Params = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Execute a single HTTP request (called by retry wrapper)."""
        if not self._client:
            await self.connect()

        if self.rate_limiter and not await self.rate_limiter.acquire():
            raise ApiError("Rate limiter timeout", platform=self.platform, retry_after=5)

        request_headers = dict(headers or {})
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        stat_key = f"{self.platform}:{endpoint.split('?')[0]}"
        try:
            with Timer(f"{self.platform}_{endpoint}", logger) as timer:
                response = await self._client.request(
                    method=method,
                    url=self._url(endpoint),
                    params=params,
                    headers=request_headers or None,
                )
        except httpx.TimeoutException as e:
            request_stats.record(stat_key, 0, error="timeout")
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"platform": self.platform, "endpoint": endpoint, "timeout": self.timeout}
            )
            raise ApiError(
                f"Request timeout after {self.timeout}s",
                platform=self.platform,
                retry_after=5,
            ) from e
        except httpx.RequestError as e:
            request_stats.record(stat_key, 0, error="network")
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"platform": self.platform, "endpoint": endpoint, "error": str(e)}
            )
            raise ApiError("Request failed", str(e), platform=self.platform) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            request_stats.record(stat_key, timer.elapsed_ms, error=str(response.status_code))
            if response.status_code in (401, 403):
                raise CredentialError(
                    f"Credentials rejected ({response.status_code})",
                    error_text,
                    platform=self.platform,
                )
            retry_after = response.headers.get("Retry-After") if response.headers else None
            level = "warning" if response.status_code == 404 else "error"
            getattr(logger, level)(
                f"API error {response.status_code}: {error_text}",
                extra={"platform": self.platform, "endpoint": endpoint, "status_code": response.status_code}
            )
            raise ApiError(
                f"API returned {response.status_code}",
                error_text,
                platform=self.platform,
                status_code=response.status_code,
                retry_after=int(retry_after) if retry_after and str(retry_after).isdigit() else None,
            )

        request_stats.record(stat_key, timer.elapsed_ms)
        return response

    async def get_json(
        self,
        endpoint: str,
        params: Params = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        response = await self.request("GET", endpoint, params=params, headers=headers)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ApiError("Response is not JSON", str(e), platform=self.platform) from e

    async def get_bytes(
        self,
        endpoint: str,
        params: Params = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        response = await self.request("GET", endpoint, params=params, headers=headers)
        return response.content
