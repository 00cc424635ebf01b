"""
Pytest configuration and fixtures for carrier gateway tests.
"""
import json
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.models.shipment import Dimensions, Weight
from carrier_gateway.modules.shipping.carriers.base import ParcelSpec, ShippingParty

FIXED_NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


class RecordingTransport:
    """
    Route table for httpx.MockTransport that keeps every request it served.

    Routes map "METHOD /path" to a handler returning httpx.Response, or to a
    ready httpx.Response. Unrouted requests get a 404.
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(f"{request.method} {request.url.path}")
        if route is None:
            return httpx.Response(404, json={"error": f"no route for {request.url.path}"})
        if callable(route):
            return route(request)
        # Fresh copy so one canned response can serve repeated requests
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def json_body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


def token_response(token: str = "test-access-token", expires_in: int = 3600) -> httpx.Response:
    return httpx.Response(
        200,
        json={"access_token": token, "token_type": "Bearer", "expires_in": expires_in},
    )


@pytest.fixture
def dakar() -> ShippingParty:
    return ShippingParty(
        name="Awa Diop",
        postal_code="10000",
        country_code="sn",
        city="Dakar",
        street_lines=("12 Avenue Cheikh Anta Diop",),
        phone="+221770000000",
        email="awa@example.com",
    )


@pytest.fixture
def paris() -> ShippingParty:
    return ShippingParty(
        name="Jean Martin",
        postal_code="75001",
        country_code="FR",
        city="Paris",
        street_lines=("1 Rue de Rivoli",),
        phone="+33100000000",
    )


@pytest.fixture
def new_york() -> ShippingParty:
    return ShippingParty(
        name="Sam Lee",
        postal_code="10001",
        country_code="US",
        city="New York",
        region="NY",
        street_lines=("350 5th Ave",),
    )


@pytest.fixture
def los_angeles() -> ShippingParty:
    return ShippingParty(
        name="Alex Kim",
        postal_code="90001",
        country_code="US",
        city="Los Angeles",
        region="CA",
        street_lines=("100 Main St",),
    )


@pytest.fixture
def parcel_2kg() -> ParcelSpec:
    return ParcelSpec(weight=Weight(2, "kg"))


@pytest.fixture
def boxed_parcel() -> ParcelSpec:
    return ParcelSpec(
        weight=Weight(4.4, "lb"),
        dimensions=Dimensions(30, 20, 10, "cm"),
        description="Comic books",
    )


@pytest.fixture
def make_config() -> Callable[..., CarrierConfig]:
    """Build a live (non test-mode) config with dummy credentials."""

    def _make(code: CarrierCode, **overrides) -> CarrierConfig:
        defaults = {
            CarrierCode.UPS: {"client_id": "ups-id", "client_secret": "ups-secret", "account_number": "A1B2C3"},
            CarrierCode.FEDEX: {"client_id": "fx-id", "client_secret": "fx-secret", "account_number": "510087000"},
            CarrierCode.USPS: {"client_id": "usps-id", "client_secret": "usps-secret"},
            CarrierCode.DHL: {"api_key": "dhl-key", "api_secret": "dhl-secret", "account_number": "123456789"},
            CarrierCode.CHRONOPOST: {"account_number": "19869502", "api_secret": "255562"},
        }[code]
        params = {"carrier_code": code, "base_url": "https://carrier.test", **defaults}
        params.update(overrides)
        return CarrierConfig(**params)

    return _make
