"""
Carrier configuration and credential models.

CarrierConfig is the construction surface for one adapter: identifier,
authentication mode and secrets, test mode, base URL override and timeout.
CarrierCredential is the mutable credential state owned by exactly one
credential provider.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from carrier_gateway.models.shipment import CredentialKind


class CarrierCode(str, enum.Enum):
    """
    Supported shipping carriers.

    Each code maps to exactly one adapter implementation in the carrier registry.
    """
    UPS = "ups"
    FEDEX = "fedex"
    USPS = "usps"
    DHL = "dhl"
    CHRONOPOST = "chronopost"


# Transport and default authentication per carrier
CARRIER_DEFAULT_AUTH = {
    CarrierCode.UPS: CredentialKind.OAUTH2,
    CarrierCode.FEDEX: CredentialKind.OAUTH2,
    CarrierCode.USPS: CredentialKind.OAUTH2,
    CarrierCode.DHL: CredentialKind.STATIC,
    CarrierCode.CHRONOPOST: CredentialKind.STATIC,
}


class CarrierConfig(BaseModel):
    """
    Per-adapter configuration.

    Secrets are SecretStr so they never show up in reprs or logs.
    ``carrier_id`` defaults to the carrier code; set it to register two
    accounts of the same carrier under different identifiers.
    """
    model_config = ConfigDict(frozen=True)

    carrier_code: CarrierCode
    carrier_id: Optional[str] = None
    auth_mode: Optional[CredentialKind] = None

    # OAuth2 client credentials
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None

    # Static credentials (API key/secret pair or account/password)
    api_key: Optional[str] = None
    api_secret: Optional[SecretStr] = None

    account_number: Optional[str] = None

    test_mode: bool = False
    use_sandbox: bool = False
    base_url: Optional[str] = None
    timeout_seconds: float = Field(default=12.0, gt=0)
    token_refresh_margin_seconds: int = Field(default=60, ge=0)
    currency: str = "EUR"

    # Carrier-specific extras (e.g. USPS payment authorization token)
    options: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_credentials(self):
        if self.test_mode:
            return self
        mode = self.resolved_auth_mode
        if mode == CredentialKind.OAUTH2:
            if not self.client_id or not self.client_secret:
                raise ValueError(
                    f"{self.resolved_carrier_id}: oauth2 requires client_id and client_secret"
                )
        elif not (self.api_key or self.account_number):
            raise ValueError(
                f"{self.resolved_carrier_id}: static auth requires api_key or account_number"
            )
        return self

    @property
    def resolved_carrier_id(self) -> str:
        return self.carrier_id or self.carrier_code.value

    @property
    def resolved_auth_mode(self) -> CredentialKind:
        return self.auth_mode or CARRIER_DEFAULT_AUTH[self.carrier_code]

    def secret(self, name: str) -> str:
        """Reveal a SecretStr field, empty string when unset."""
        value = getattr(self, name)
        return value.get_secret_value() if value is not None else ""


@dataclass
class CarrierCredential:
    """
    Credential state for one carrier.

    Static credentials carry key/secret and never expire. OAuth2 credentials
    carry the cached access token and its expiry instant and are only mutated
    by the owning provider's refresh step.
    """
    carrier_id: str
    kind: CredentialKind
    key: Optional[str] = None
    secret: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_valid(self, margin_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        """True if usable for the next call, with ``margin_seconds`` of headroom."""
        if self.kind == CredentialKind.STATIC:
            return True
        if not self.access_token or self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() > margin_seconds

    def __repr__(self) -> str:
        # Secrets stay out of reprs
        return (
            f"<CarrierCredential(carrier_id={self.carrier_id}, kind={self.kind.value}, "
            f"expires_at={self.expires_at})>"
        )
