"""
USPS Carrier Implementation

USPS APIs v3 (OAuth 2.0, credentials in a JSON body):
- Domestic Prices: base-rates-list search
- Domestic Labels (requires a payment authorization token)
- Tracking v3

Pricing is domestic only; routes leaving the US are rejected locally with
RateUnavailableError before any request is made.
"""
import logging
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, Field

from carrier_gateway.core.exceptions import AuthenticationError, RateUnavailableError
from carrier_gateway.core.http_client import CarrierHTTPClient
from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.models.shipment import TrackingStatus
from carrier_gateway.modules.shipping.carriers import register_carrier
from carrier_gateway.modules.shipping.carriers.base import (
    BaseCarrier,
    LabelRequest,
    LabelResult,
    ParcelSpec,
    RateQuote,
    ShippingParty,
    TrackingEvent,
    ensure_list,
    join_location,
    map_status,
    ordered_events,
    parse_money,
    parse_timestamp,
    require_field,
    require_quotes,
    validate_schema,
)
from carrier_gateway.modules.shipping.carriers.sandbox import SandboxResponder, sandbox_services
from carrier_gateway.modules.shipping.credentials import (
    OAuth2CredentialProvider,
    client_credentials_fetcher,
    utc_now,
)

logger = logging.getLogger(__name__)

USPS_PRODUCTION_URL = "https://apis.usps.com"
USPS_SANDBOX_URL = "https://apis-tem.usps.com"

OAUTH_TOKEN_PATH = "/oauth2/v3/token"
PRICES_PATH = "/prices/v3/base-rates-list/search"
LABEL_PATH = "/labels/v3/label"
TRACKING_PATH = "/tracking/v3/tracking"

USPS_COUNTRIES = ("US", "PR", "VI", "GU", "AS", "MP")

# Mail classes quoted and their transit estimate in days
USPS_MAIL_CLASSES = {
    "USPS_GROUND_ADVANTAGE": ("USPS Ground Advantage", 5),
    "PRIORITY_MAIL": ("Priority Mail", 3),
    "PRIORITY_MAIL_EXPRESS": ("Priority Mail Express", 2),
}

# USPS eventCode -> TrackingStatus
USPS_STATUS_MAP = {
    "GX": TrackingStatus.CREATED,     # Shipping label created
    "MA": TrackingStatus.CREATED,     # Pre-shipment info sent
    "03": TrackingStatus.PICKED_UP,   # Accepted at USPS origin facility
    "OA": TrackingStatus.PICKED_UP,
    "10": TrackingStatus.IN_TRANSIT,  # Processed through facility
    "L1": TrackingStatus.IN_TRANSIT,  # Departed
    "NT": TrackingStatus.IN_TRANSIT,  # In transit to next facility
    "07": TrackingStatus.IN_TRANSIT,  # Arrived at post office
    "OF": TrackingStatus.OUT_FOR_DELIVERY,
    "01": TrackingStatus.DELIVERED,
    "02": TrackingStatus.EXCEPTION,   # Notice left
    "04": TrackingStatus.EXCEPTION,   # Refused
    "05": TrackingStatus.EXCEPTION,   # Undeliverable as addressed
    "09": TrackingStatus.EXCEPTION,   # Returned to sender
    "53": TrackingStatus.EXCEPTION,   # Delivery exception
}

USPS_SANDBOX_SERVICES = sandbox_services(
    ("USPS_GROUND_ADVANTAGE", "USPS Ground Advantage", "8.00", "1.50", 5),
    ("PRIORITY_MAIL", "Priority Mail", "12.00", "2.00", 3),
    ("PRIORITY_MAIL_EXPRESS", "Priority Mail Express", "30.00", "3.00", 2),
)


# =============================================================================
# Response schemas
# =============================================================================

class USPSRate(BaseModel):
    description: Optional[str] = None
    mail_class: Optional[str] = Field(default=None, alias="mailClass")
    price: float


class USPSRateOption(BaseModel):
    total_base_price: float = Field(alias="totalBasePrice")
    rates: Annotated[List[USPSRate], BeforeValidator(ensure_list)] = []


class USPSPricesResponse(BaseModel):
    rate_options: Annotated[List[USPSRateOption], BeforeValidator(ensure_list)] = Field(
        default=[], alias="rateOptions"
    )


class USPSLabelMetadata(BaseModel):
    tracking_number: str = Field(alias="trackingNumber")
    postage: Optional[float] = None
    sku: Optional[str] = Field(default=None, alias="SKU")


class USPSLabelResponse(BaseModel):
    label_metadata: USPSLabelMetadata = Field(alias="labelMetadata")
    label_image: Optional[str] = Field(default=None, alias="labelImage")
    label_url: Optional[str] = Field(default=None, alias="labelURL")


class USPSTrackingEvent(BaseModel):
    event_type: str = Field(default="", alias="eventType")
    event_code: Optional[str] = Field(default=None, alias="eventCode")
    event_timestamp: str = Field(alias="eventTimestamp")
    gmt_timestamp: Optional[str] = Field(default=None, alias="GMTTimestamp")
    event_city: Optional[str] = Field(default=None, alias="eventCity")
    event_state: Optional[str] = Field(default=None, alias="eventState")
    event_country: Optional[str] = Field(default=None, alias="eventCountry")


class USPSTrackingResponse(BaseModel):
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")
    tracking_events: Annotated[List[USPSTrackingEvent], BeforeValidator(ensure_list)] = Field(
        default=[], alias="trackingEvents"
    )


def usps_error_message(data: Any) -> Optional[str]:
    error = (data or {}).get("error")
    if isinstance(error, dict):
        return error.get("message")
    return None


# =============================================================================
# Carrier
# =============================================================================

@register_carrier(CarrierCode.USPS)
class USPSCarrier(BaseCarrier):
    """USPS shipping carrier implementation."""

    def __init__(
        self,
        config: CarrierConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config
        self._clock = clock or utc_now
        self._sandbox: Optional[SandboxResponder] = None
        self._http: Optional[CarrierHTTPClient] = None
        self._credentials: Optional[OAuth2CredentialProvider] = None

        if config.test_mode:
            self._sandbox = SandboxResponder(
                carrier_id=self.carrier_id,
                services=USPS_SANDBOX_SERVICES,
                currency="USD",
                tracking_prefix="94",
                tracking_url=self.tracking_url,
                clock=self._clock,
            )
            return

        base_url = config.base_url or (USPS_SANDBOX_URL if config.use_sandbox else USPS_PRODUCTION_URL)
        self._http = CarrierHTTPClient(
            self.carrier_id,
            base_url,
            timeout=config.timeout_seconds,
            transport=transport,
            default_headers={"Content-Type": "application/json"},
        )
        self._credentials = OAuth2CredentialProvider(
            self.carrier_id,
            client_credentials_fetcher(
                self._http,
                OAUTH_TOKEN_PATH,
                config.client_id or "",
                config.secret("client_secret"),
                style="json",
            ),
            refresh_margin_seconds=config.token_refresh_margin_seconds,
            clock=self._clock,
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.USPS

    @property
    def carrier_id(self) -> str:
        return self._config.resolved_carrier_id

    @property
    def carrier_name(self) -> str:
        return "USPS"

    def tracking_url(self, tracking_number: str) -> str:
        return f"https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking_number}"

    async def close(self) -> None:
        if self._http:
            await self._http.close()

    def _check_domestic(self, origin: ShippingParty, destination: ShippingParty) -> None:
        if origin.country_code not in USPS_COUNTRIES or destination.country_code not in USPS_COUNTRIES:
            raise RateUnavailableError(
                f"{self.carrier_id}: only domestic US routes are supported "
                f"({origin.country_code} -> {destination.country_code})",
                carrier_code=self.carrier_id,
                details={"origin": origin.country_code, "destination": destination.country_code},
            )

    def _package_fields(self, parcel: ParcelSpec) -> Dict[str, Any]:
        # USPS prices in pounds and inches
        dims = parcel.dimensions_in
        return {
            "weight": round(parcel.weight_lb, 2),
            "length": round(dims.length, 2) if dims else 1,
            "width": round(dims.width, 2) if dims else 1,
            "height": round(dims.height, 2) if dims else 1,
        }

    def _address(self, party: ShippingParty) -> Dict[str, Any]:
        address = {
            "streetAddress": party.first_line,
            "city": party.city,
            "state": party.region or "",
            "ZIPCode": party.postal_code[:5],
            "firstName": party.name,
        }
        if len(party.street_lines) > 1:
            address["secondaryAddress"] = party.street_lines[1]
        if party.company:
            address["firm"] = party.company
        if party.phone:
            address["phone"] = party.phone
        if party.email:
            address["email"] = party.email
        return address

    async def _headers(self) -> Dict[str, str]:
        return {"Authorization": await self._credentials.authorization_header()}

    # ==================== Rating ====================

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        self._check_domestic(origin, destination)
        if self._sandbox:
            return await self._sandbox.quote_rates(origin, destination, parcel)

        headers = await self._headers()
        quotes = []
        for mail_class, (name, transit_days) in USPS_MAIL_CLASSES.items():
            request_data = {
                "originZIPCode": origin.postal_code[:5],
                "destinationZIPCode": destination.postal_code[:5],
                "mailClass": mail_class,
                "processingCategory": "MACHINABLE",
                "destinationEntryFacilityType": "NONE",
                "rateIndicator": "SP",
                "priceType": "COMMERCIAL",
                "mailingDate": self._clock().date().isoformat(),
                **self._package_fields(parcel),
            }
            data = await self._http.request_json(
                "POST",
                PRICES_PATH,
                error_extractor=usps_error_message,
                headers=headers,
                json=request_data,
            )
            response = validate_schema(USPSPricesResponse, data, self.carrier_id, "prices")
            if not response.rate_options:
                logger.info(f"{self.carrier_id} has no {mail_class} price for this parcel")
                continue

            option = min(response.rate_options, key=lambda o: o.total_base_price)
            quotes.append(RateQuote(
                carrier_id=self.carrier_id,
                service_code=mail_class,
                service_name=name,
                cost=parse_money(option.total_base_price, "USD", self.carrier_id),
                transit_days=transit_days,
            ))

        logger.info(f"Got {len(quotes)} rates from {self.carrier_id}")
        return require_quotes(quotes, self.carrier_id)

    # ==================== Labels ====================

    async def create_label(self, request: LabelRequest) -> LabelResult:
        self._check_domestic(request.origin, request.destination)
        if self._sandbox:
            return await self._sandbox.create_label(request)

        payment_token = self._config.options.get("payment_authorization_token")
        if not payment_token:
            raise AuthenticationError(
                f"{self.carrier_id}: label creation needs a payment authorization token",
                carrier_code=self.carrier_id,
                code="CREDENTIALS_MISSING",
            )

        package = {
            "mailClass": request.service_code,
            "rateIndicator": "SP",
            "processingCategory": "MACHINABLE",
            "destinationEntryFacilityType": "NONE",
            "mailingDate": self._clock().date().isoformat(),
            **self._package_fields(request.parcel),
        }
        if request.reference:
            package["customerReference"] = [{"referenceNumber": request.reference[:30]}]

        request_data = {
            "imageInfo": {"imageType": "PDF", "labelType": "4X6LABEL", "receiptOption": "NONE"},
            "toAddress": self._address(request.destination),
            "fromAddress": self._address(request.origin),
            "packageDescription": package,
        }

        headers = await self._headers()
        headers["X-Payment-Authorization-Token"] = payment_token
        data = await self._http.request_json(
            "POST",
            LABEL_PATH,
            error_extractor=usps_error_message,
            headers=headers,
            json=request_data,
        )
        response = validate_schema(USPSLabelResponse, data, self.carrier_id, "label")

        tracking_number = require_field(response.label_metadata.tracking_number, self.carrier_id, "trackingNumber")
        if not (response.label_image or response.label_url):
            require_field(None, self.carrier_id, "labelImage")

        cost = None
        if response.label_metadata.postage is not None:
            cost = parse_money(response.label_metadata.postage, "USD", self.carrier_id)

        logger.info(f"{self.carrier_id} label created: {tracking_number}")
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=response.label_metadata.sku or tracking_number,
            tracking_number=tracking_number,
            cost=cost,
            label_url=response.label_url,
            label_data=response.label_image,
            tracking_url=self.tracking_url(tracking_number),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        if self._sandbox:
            return ordered_events(await self._sandbox.track_shipment(tracking_number))

        data = await self._http.request_json(
            "GET",
            f"{TRACKING_PATH}/{tracking_number}",
            error_extractor=usps_error_message,
            headers=await self._headers(),
            params={"expand": "DETAIL"},
        )
        response = validate_schema(USPSTrackingResponse, data, self.carrier_id, "tracking")

        events = []
        for event in response.tracking_events:
            events.append(TrackingEvent(
                timestamp=parse_timestamp(event.gmt_timestamp or event.event_timestamp, self.carrier_id),
                description=event.event_type,
                status=map_status(USPS_STATUS_MAP, event.event_code, self.carrier_id),
                location=join_location(event.event_city, event.event_state, event.event_country),
                carrier_status_code=event.event_code,
            ))
        return ordered_events(events)
