"""
Gateway configuration

Loaded from the environment (or a .env file) via pydantic-settings.
Per-carrier secrets default to empty; a carrier is only built when it is
listed in SHIPPING_ENABLED_CARRIERS.
"""
import json
import logging
from typing import Dict, List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from carrier_gateway.models.carrier import CarrierCode, CarrierConfig

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Gateway-wide
    SHIPPING_REQUEST_TIMEOUT_SECONDS: float = 12.0
    SHIPPING_TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    SHIPPING_TEST_MODE: bool = False
    SHIPPING_DEFAULT_CURRENCY: str = "EUR"

    # Accepts JSON array or comma-separated string
    SHIPPING_ENABLED_CARRIERS: Union[str, List[str]] = []

    @field_validator("SHIPPING_ENABLED_CARRIERS", mode="before")
    @classmethod
    def parse_enabled_carriers(cls, v):
        if isinstance(v, list):
            return [str(code).strip().lower() for code in v if str(code).strip()]
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                try:
                    return [str(code).strip().lower() for code in json.loads(v)]
                except json.JSONDecodeError:
                    pass
            return [code.strip().lower() for code in v.split(",") if code.strip()]
        return v

    # UPS (OAuth2, REST)
    UPS_CLIENT_ID: str = ""
    UPS_CLIENT_SECRET: str = ""
    UPS_ACCOUNT_NUMBER: str = ""
    UPS_USE_SANDBOX: bool = False
    UPS_BASE_URL: Optional[str] = None

    # FedEx (OAuth2, REST)
    FEDEX_CLIENT_ID: str = ""
    FEDEX_CLIENT_SECRET: str = ""
    FEDEX_ACCOUNT_NUMBER: str = ""
    FEDEX_USE_SANDBOX: bool = False
    FEDEX_BASE_URL: Optional[str] = None

    # USPS (OAuth2, REST v3)
    USPS_CLIENT_ID: str = ""
    USPS_CLIENT_SECRET: str = ""
    USPS_PAYMENT_AUTHORIZATION_TOKEN: str = ""
    USPS_USE_SANDBOX: bool = False
    USPS_BASE_URL: Optional[str] = None

    # DHL Express (static key/secret, REST)
    DHL_API_KEY: str = ""
    DHL_API_SECRET: str = ""
    DHL_ACCOUNT_NUMBER: str = ""
    DHL_USE_SANDBOX: bool = False
    DHL_BASE_URL: Optional[str] = None

    # Chronopost (static account/password, SOAP)
    CHRONOPOST_ACCOUNT_NUMBER: str = ""
    CHRONOPOST_PASSWORD: str = ""
    CHRONOPOST_BASE_URL: Optional[str] = None


def _carrier_kwargs(s: Settings, code: CarrierCode) -> Dict:
    if code == CarrierCode.UPS:
        return {
            "client_id": s.UPS_CLIENT_ID or None,
            "client_secret": s.UPS_CLIENT_SECRET or None,
            "account_number": s.UPS_ACCOUNT_NUMBER or None,
            "use_sandbox": s.UPS_USE_SANDBOX,
            "base_url": s.UPS_BASE_URL,
        }
    if code == CarrierCode.FEDEX:
        return {
            "client_id": s.FEDEX_CLIENT_ID or None,
            "client_secret": s.FEDEX_CLIENT_SECRET or None,
            "account_number": s.FEDEX_ACCOUNT_NUMBER or None,
            "use_sandbox": s.FEDEX_USE_SANDBOX,
            "base_url": s.FEDEX_BASE_URL,
        }
    if code == CarrierCode.USPS:
        options = {}
        if s.USPS_PAYMENT_AUTHORIZATION_TOKEN:
            options["payment_authorization_token"] = s.USPS_PAYMENT_AUTHORIZATION_TOKEN
        return {
            "client_id": s.USPS_CLIENT_ID or None,
            "client_secret": s.USPS_CLIENT_SECRET or None,
            "use_sandbox": s.USPS_USE_SANDBOX,
            "base_url": s.USPS_BASE_URL,
            "options": options,
        }
    if code == CarrierCode.DHL:
        return {
            "api_key": s.DHL_API_KEY or None,
            "api_secret": s.DHL_API_SECRET or None,
            "account_number": s.DHL_ACCOUNT_NUMBER or None,
            "use_sandbox": s.DHL_USE_SANDBOX,
            "base_url": s.DHL_BASE_URL,
        }
    return {
        "account_number": s.CHRONOPOST_ACCOUNT_NUMBER or None,
        "api_secret": s.CHRONOPOST_PASSWORD or None,
        "base_url": s.CHRONOPOST_BASE_URL,
    }


def carrier_configs_from_settings(s: Optional[Settings] = None) -> List[CarrierConfig]:
    """Build one CarrierConfig per enabled carrier."""
    s = s or settings
    configs = []
    for raw_code in s.SHIPPING_ENABLED_CARRIERS:
        try:
            code = CarrierCode(raw_code)
        except ValueError:
            logger.warning(f"Ignoring unknown carrier in SHIPPING_ENABLED_CARRIERS: {raw_code}")
            continue
        configs.append(CarrierConfig(
            carrier_code=code,
            test_mode=s.SHIPPING_TEST_MODE,
            timeout_seconds=s.SHIPPING_REQUEST_TIMEOUT_SECONDS,
            token_refresh_margin_seconds=s.SHIPPING_TOKEN_REFRESH_MARGIN_SECONDS,
            currency=s.SHIPPING_DEFAULT_CURRENCY,
            **_carrier_kwargs(s, code),
        ))
    return configs


settings = Settings()
