"""Shared HTTP wrapper and retry helper composed into every provider client."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from .public_api import (
    AuthenticationRequiredError,
    RateLimitExceededError,
    TrackerPayloadError,
    TrackerRequestError,
)

logger = logging.getLogger("tracker_sync.http")

T = TypeVar("T")

AuthHeaders = Callable[[], Awaitable[dict[str, str]]]

NON_RETRYABLE_ERRORS = (RateLimitExceededError, TrackerPayloadError, AuthenticationRequiredError)


class TrackerHttp:
    """
    Thin wrapper over ``httpx.AsyncClient`` for provider REST calls.

    Builds URLs from the provider base URL, merges auth headers from the
    provider's hook with caller headers, applies a timeout and turns any
    transport failure or non-2xx status into ``TrackerRequestError``.
    """

    def __init__(
        self,
        base_url: str,
        auth_headers: AuthHeaders,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._auth_headers = auth_headers
        self._timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self._base_url}{path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        authenticated: bool = True,
    ) -> Any:
        """
        Perform a request and return the decoded body.

        Args:
            method: HTTP method.
            path: Path relative to the base URL, or an absolute URL.
            params: Query parameters (a dict or a list of pairs for repeated keys).
            json: JSON request body.
            headers: Extra headers; these win over auth headers.
            timeout: Per-request timeout override in seconds.
            authenticated: Whether to include the provider's auth headers.

        Returns:
            Parsed JSON for JSON responses, the raw text otherwise.

        Raises:
            TrackerRequestError: On network errors, timeouts and non-2xx statuses.
            TrackerPayloadError: If a JSON response cannot be decoded.
        """
        url = self.build_url(path)
        merged = {"Content-Type": "application/json", "Accept": "application/json"}
        if authenticated:
            merged.update(await self._auth_headers())
        if headers:
            merged.update(headers)

        request_timeout = timeout if timeout is not None else self._timeout
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=merged,
                timeout=request_timeout,
            )
        except httpx.TimeoutException as e:
            raise TrackerRequestError(
                f"Request to {path} timed out after {request_timeout}s",
                endpoint=path,
            ) from e
        except httpx.HTTPError as e:
            raise TrackerRequestError(f"Request to {path} failed: {e}", endpoint=path) from e

        if not response.is_success:
            raise TrackerRequestError(
                f"HTTP {response.status_code}: {response.reason_phrase} ({method} {path})",
                endpoint=path,
                status_code=response.status_code,
                reason=response.reason_phrase,
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError as e:
                raise TrackerPayloadError(f"Invalid JSON from {path}: {e}", endpoint=path) from e
        return response.text

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` are used.

    Any failure is retried after ``base_delay * 2 ** (attempt - 1)`` seconds,
    except rate limiting, malformed payloads and authentication failures,
    which retrying would only repeat.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as e:
            last_error = e
            if attempt == max_attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e}; retrying in {delay:.2f}s")
            await sleep(delay)

    if last_error:
        raise last_error
    raise RuntimeError("retry loop exited without a result")
