"""
Carrier HTTP Client

One instance per adapter. Wraps httpx.AsyncClient and maps every transport
level problem into the gateway error taxonomy so no httpx or carrier-native
error shape escapes an adapter:
- httpx.TimeoutException / httpx.RequestError -> TransportFailure
- HTTP 401/403 -> AuthenticationError
- Other HTTP status >= 400 -> TransportFailure
- Body that is not JSON when JSON was expected -> ParseFailure

Also provides the opt-in retry policy for idempotent calls (rate quotes and
tracking). Label creation is never retried.
"""
import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from carrier_gateway.core.exceptions import (
    AuthenticationError,
    ParseFailure,
    RETRYABLE_ERRORS,
    TransportFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Keep error excerpts short in logs and error details
MAX_BODY_EXCERPT = 500

AUTH_STATUS_CODES = (401, 403)


@dataclass
class RetryPolicy:
    """Opt-in retry behavior for idempotent carrier calls."""
    max_retries: int = 2
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 5.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    def backoff(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0-based).

        Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay += delay * self.jitter_factor * (2 * random.random() - 1)
        return max(0.0, min(delay, self.max_delay))


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy],
    label: str = "carrier call",
) -> T:
    """
    Run ``operation``, retrying TransportFailure per ``policy``.

    Without a policy the operation runs exactly once. Auth, parse, unit and
    availability errors are raised immediately.
    """
    if policy is None:
        return await operation()

    attempt = 0
    while True:
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            if attempt >= policy.max_retries:
                raise
            delay = policy.backoff(attempt)
            attempt += 1
            logger.warning(
                f"[RETRY] {label}: {e.code} on attempt {attempt}, "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)


def body_excerpt(response: httpx.Response) -> str:
    try:
        return response.text[:MAX_BODY_EXCERPT]
    except Exception:
        return "<undecodable body>"


class CarrierHTTPClient:
    """
    Async HTTP client bound to one carrier's base URL.

    Usage:
        client = CarrierHTTPClient("ups", "https://onlinetools.ups.com", timeout=12.0)
        data = await client.request_json("POST", "/api/rating/v2403/Shop", json=body)
        await client.close()
    """

    def __init__(
        self,
        carrier_id: str,
        base_url: str,
        timeout: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_headers: Optional[Dict[str, str]] = None,
    ):
        self.carrier_id = carrier_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and return the raw response, whatever its status.

        Only network-level problems are mapped here; status handling is left
        to the caller (SOAP faults arrive with HTTP 500).
        """
        client = self._get_client()
        url = self.url(path)
        try:
            response = await client.request(method.upper(), url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{self.carrier_id} {method.upper()} {path} timed out after {self.timeout}s")
            raise TransportFailure(
                f"{self.carrier_id}: request timed out after {self.timeout}s",
                carrier_code=self.carrier_id,
                code="CARRIER_TIMEOUT",
                details={"path": path, "cause": type(e).__name__},
            )
        except httpx.RequestError as e:
            logger.error(f"{self.carrier_id} {method.upper()} {path} network error: {e}")
            raise TransportFailure(
                f"{self.carrier_id}: network error: {e}",
                carrier_code=self.carrier_id,
                code="CARRIER_NETWORK_ERROR",
                details={"path": path, "cause": type(e).__name__},
            )

        logger.debug(f"{self.carrier_id} {method.upper()} {path} -> {response.status_code}")
        return response

    def raise_for_status(
        self,
        response: httpx.Response,
        path: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Map HTTP error statuses into the taxonomy."""
        status = response.status_code
        if status < 400:
            return

        message = error_message or f"HTTP {status}"
        if status in AUTH_STATUS_CODES:
            logger.error(f"{self.carrier_id} rejected credentials on {path}: {status}")
            raise AuthenticationError(
                f"{self.carrier_id}: credentials rejected ({message})",
                carrier_code=self.carrier_id,
                details={"path": path, "status_code": status},
            )

        logger.error(f"{self.carrier_id} API error on {path}: {status} - {message}")
        raise TransportFailure(
            f"{self.carrier_id}: {message}",
            carrier_code=self.carrier_id,
            status_code=status,
            details={"path": path, "body": body_excerpt(response)},
        )

    def decode_json(self, response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            logger.error(f"{self.carrier_id} returned non-JSON body on {path}")
            raise ParseFailure(
                f"{self.carrier_id}: response body is not valid JSON",
                carrier_code=self.carrier_id,
                details={"path": path, "body": body_excerpt(response)},
            )

    async def request_json(
        self,
        method: str,
        path: str,
        error_extractor: Optional[Callable[[Any], Optional[str]]] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Send a request and decode its JSON body.

        ``error_extractor`` pulls the carrier's human-readable message out of
        an error body so it lands in the raised exception.
        """
        response = await self.send(method, path, **kwargs)

        if response.status_code >= 400:
            message = None
            if error_extractor:
                try:
                    message = error_extractor(response.json())
                except Exception:
                    message = None
            self.raise_for_status(response, path, message)

        return self.decode_json(response, path)
