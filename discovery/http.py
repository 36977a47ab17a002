"""
HTTP access to the registry, the replica and the catalog with retry logic.

This module provides resilient GET requests with:
- Exponential backoff retry logic for transient failures
- Rate limiting protection (HTTP 429, honouring Retry-After)
- Circuit breaker to stop hammering a failing endpoint
- Typed errors so callers can map failures to their own taxonomy
"""

import httpx
import asyncio
from typing import Dict, Any, Optional
from datetime import datetime, timedelta
from core.clock import utc_now
from core.exceptions import (
    HttpError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class ResilientHttpClient:
    """
    Thin wrapper over ``httpx.AsyncClient`` used by every outbound call.

    Attributes:
        max_retries: Maximum number of attempts per request (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Per-request timeout in seconds (default: 30.0)
        circuit_breaker_threshold: Failed requests before the circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before the circuit resets (default: 60)
        client_errors_open_circuit: Whether 4xx answers (other than 404 and 429)
            count towards the circuit breaker; off for tarball hosts
            (default: True)
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        name: str = "registry",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
        client_errors_open_circuit: bool = True
    ):
        self._client = client
        self._owns_client = client is None
        self.name = name
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = circuit_breaker_threshold
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = circuit_breaker_timeout
        self.client_errors_open_circuit = client_errors_open_circuit

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": "registry-discovery"}
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ResilientHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if utc_now() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = utc_now() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_client_error(self):
        if self.client_errors_open_circuit:
            self._record_failure()

    def _record_success(self):
        """Record a successful request."""
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """
        GET with retry logic and exponential backoff.

        Returns:
            The successful (2xx) response

        Raises:
            AuthenticationError: HTTP 401/403, not retried
            ResourceNotFoundError: HTTP 404, not retried
            RateLimitError: HTTP 429 after all retries
            NetworkError: Timeouts, connection errors and 5xx after all retries
            HttpError: Any other non-2xx status, or an open circuit
        """
        if self._is_circuit_open():
            raise HttpError(
                f"Circuit breaker is open for {self.name}",
                context={
                    "url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")

                response = await self.client.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )
            except httpx.TimeoutException as e:
                if not last_attempt:
                    delay = self._backoff(attempt)
                    logger.warning(f"Request timeout for {url}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Request timeout after {self.max_retries} attempts",
                    context={"url": url, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )
            except httpx.TransportError as e:
                if not last_attempt:
                    delay = self._backoff(attempt)
                    logger.warning(f"Network error for {url}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Network error after {self.max_retries} attempts",
                    context={"url": url, "retry_count": attempt + 1},
                    original_exception=e
                )

            status = response.status_code

            if status in (401, 403):
                self._record_client_error()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": status, "url": url}
                )

            if status == 404:
                # The resource does not exist (yet); the endpoint itself is healthy
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={"status_code": 404, "url": url}
                )

            if status == 429:
                retry_after = self._retry_after(response, attempt)
                if not last_attempt:
                    logger.warning(f"Rate limited by {self.name}. Retrying after {retry_after} seconds")
                    await asyncio.sleep(retry_after)
                    continue
                self._record_failure()
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    context={"status_code": 429, "url": url, "retry_count": attempt + 1},
                    retry_after=retry_after
                )

            if status >= 500:
                if not last_attempt:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Server error {status} from {url}. "
                        f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Server error after {self.max_retries} attempts",
                    context={
                        "status_code": status,
                        "url": url,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if status >= 400:
                self._record_client_error()
                raise HttpError(
                    f"Unexpected status {status} for {url}",
                    context={"status_code": status, "url": url, "response_body": response.text[:500]}
                )

            self._record_success()
            return response

        # Unreachable: every branch above returns, continues or raises
        raise HttpError("Max retries exceeded", context={"url": url})

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        header = response.headers.get("Retry-After")
        try:
            return float(header)
        except (TypeError, ValueError):
            return self._backoff(attempt)

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET and decode a JSON body; a body that is not JSON raises HttpError"""
        response = await self.get(url, params=params, headers={"Accept": "application/json"})
        try:
            return response.json()
        except ValueError as e:
            raise HttpError(
                "Failed to parse JSON response",
                context={"url": url, "response_body": response.text[:500]},
                original_exception=e
            )


def encode_package_name(name: str) -> str:
    """Registry document path for a package (scoped names keep the @, escape the /)"""
    return name.replace("/", "%2F")
