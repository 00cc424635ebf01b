"""
Credential Providers

One provider per adapter instance, never shared across carriers:
- StaticCredentialProvider: fixed key/secret pair, no network, no expiry
- OAuth2CredentialProvider: client-credentials grant, token cached until it is
  within ``refresh_margin_seconds`` of expiry

Refresh is single-flight: concurrent get_token() callers that find the cache
stale all await the same refresh task, so a carrier sees at most one token
request per provider at a time. Carriers commonly invalidate the previous
token when a new one is issued for the same client.
"""
import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from carrier_gateway.core.exceptions import AuthenticationError, ShippingGatewayError
from carrier_gateway.core.http_client import CarrierHTTPClient, body_excerpt
from carrier_gateway.models.carrier import CarrierCredential
from carrier_gateway.models.shipment import CredentialKind

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass
class TokenGrant:
    """Result of one token endpoint call."""
    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN_SECONDS


TokenFetcher = Callable[[], Awaitable[TokenGrant]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def basic_auth_header(key: str, secret: str) -> str:
    encoded = base64.b64encode(f"{key}:{secret}".encode()).decode()
    return f"Basic {encoded}"


class CredentialProvider(ABC):
    """Yields a currently-valid credential for the next outbound call."""

    def __init__(self, carrier_id: str):
        self.carrier_id = carrier_id

    @property
    @abstractmethod
    def kind(self) -> CredentialKind:
        pass

    @abstractmethod
    async def get_token(self) -> CarrierCredential:
        """
        Return a currently-valid credential.

        Raises:
            AuthenticationError: credential missing or refresh failed
        """
        pass

    async def authorization_header(self) -> str:
        """``Authorization`` header value for REST carriers."""
        credential = await self.get_token()
        if credential.kind == CredentialKind.OAUTH2:
            return f"Bearer {credential.access_token}"
        return basic_auth_header(credential.key or "", credential.secret or "")


class StaticCredentialProvider(CredentialProvider):
    """Fixed key/secret pair (API key + secret, or account + password)."""

    def __init__(self, carrier_id: str, key: str, secret: str = ""):
        super().__init__(carrier_id)
        self._credential = CarrierCredential(
            carrier_id=carrier_id,
            kind=CredentialKind.STATIC,
            key=key,
            secret=secret,
        )

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.STATIC

    async def get_token(self) -> CarrierCredential:
        if not self._credential.key:
            raise AuthenticationError(
                f"{self.carrier_id}: no static credentials configured",
                carrier_code=self.carrier_id,
                code="CREDENTIALS_MISSING",
            )
        return self._credential


class OAuth2CredentialProvider(CredentialProvider):
    """
    OAuth2 client-credentials provider with a cached, single-flight token.

    ``fetch_token`` performs one call to the carrier's token endpoint; see
    client_credentials_fetcher() for the standard implementation.
    """

    def __init__(
        self,
        carrier_id: str,
        fetch_token: TokenFetcher,
        refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Clock = utc_now,
    ):
        super().__init__(carrier_id)
        self._fetch_token = fetch_token
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._credential = CarrierCredential(carrier_id=carrier_id, kind=CredentialKind.OAUTH2)
        # Created on first use in each event loop; the provider may be built outside one
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def kind(self) -> CredentialKind:
        return CredentialKind.OAUTH2

    @property
    def credential(self) -> CarrierCredential:
        return self._credential

    def _is_fresh(self) -> bool:
        return self._credential.is_valid(self.refresh_margin_seconds, now=self._clock())

    async def get_token(self) -> CarrierCredential:
        if self._is_fresh():
            return self._credential

        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
            self._refresh_task = None
        async with self._lock:
            if self._is_fresh():
                return self._credential
            if self._refresh_task is None or self._refresh_task.done():
                self._refresh_task = asyncio.ensure_future(self._refresh())
            task = self._refresh_task

        # Shield so one cancelled caller does not abort the refresh for the rest
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Drop the cached token so the next call refreshes."""
        self._credential.access_token = None
        self._credential.expires_at = None

    async def _refresh(self) -> CarrierCredential:
        try:
            grant = await self._fetch_token()
        except AuthenticationError:
            raise
        except ShippingGatewayError as e:
            logger.error(f"{self.carrier_id} OAuth refresh failed: {e.message}")
            raise AuthenticationError(
                f"{self.carrier_id}: token refresh failed: {e.message}",
                carrier_code=self.carrier_id,
                code="TOKEN_REFRESH_FAILED",
                details={"cause": e.to_dict()},
            )
        except Exception as e:
            logger.error(f"{self.carrier_id} OAuth refresh failed: {e}")
            raise AuthenticationError(
                f"{self.carrier_id}: token refresh failed: {e}",
                carrier_code=self.carrier_id,
                code="TOKEN_REFRESH_FAILED",
            )

        if not grant.access_token:
            raise AuthenticationError(
                f"{self.carrier_id}: token endpoint returned an empty token",
                carrier_code=self.carrier_id,
                code="TOKEN_REFRESH_FAILED",
            )

        self._credential.access_token = grant.access_token
        self._credential.expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        logger.info(f"{self.carrier_id} OAuth token obtained, expires in {grant.expires_in}s")
        return self._credential


def client_credentials_fetcher(
    http: CarrierHTTPClient,
    token_path: str,
    client_id: str,
    client_secret: str,
    style: str = "basic",
) -> TokenFetcher:
    """
    Build a fetcher for the OAuth2 client-credentials grant.

    Styles differ by carrier:
    - "basic": client id/secret in an HTTP Basic header, form body (UPS)
    - "form": client id/secret in the form body (FedEx)
    - "json": client id/secret in a JSON body (USPS)
    """
    carrier_id = http.carrier_id

    async def fetch() -> TokenGrant:
        if style == "basic":
            response = await http.send(
                "POST",
                token_path,
                headers={
                    "Authorization": basic_auth_header(client_id, client_secret),
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "client_credentials"},
            )
        elif style == "form":
            response = await http.send(
                "POST",
                token_path,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
            )
        else:
            response = await http.send(
                "POST",
                token_path,
                json={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
            )

        if response.status_code != 200:
            logger.error(
                f"{carrier_id} OAuth failed: {response.status_code} - {body_excerpt(response)}"
            )
            raise AuthenticationError(
                f"Failed to authenticate with {carrier_id}",
                carrier_code=carrier_id,
                code="AUTH_FAILED",
                details={"status_code": response.status_code},
            )

        try:
            data = response.json()
            access_token = str(data["access_token"])
            expires_in = int(data.get("expires_in", DEFAULT_EXPIRES_IN_SECONDS))
        except (ValueError, KeyError, TypeError, AttributeError):
            raise AuthenticationError(
                f"{carrier_id}: malformed token response",
                carrier_code=carrier_id,
                code="AUTH_FAILED",
            )
        return TokenGrant(access_token=access_token, expires_in=expires_in)

    return fetch
