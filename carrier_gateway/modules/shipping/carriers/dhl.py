"""
DHL Express Carrier Implementation

MyDHL API (REST-JSON) with a static API key/secret sent as HTTP Basic auth.
No token exchange; the credential never expires from the gateway's view.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, Field

from carrier_gateway.core.exceptions import ParseFailure
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
    map_status,
    ordered_events,
    parse_money,
    parse_timestamp,
    require_field,
    require_quotes,
    validate_schema,
)
from carrier_gateway.modules.shipping.carriers.sandbox import SandboxResponder, sandbox_services
from carrier_gateway.modules.shipping.credentials import StaticCredentialProvider, utc_now
from carrier_gateway.modules.shipping.units import from_minor_units

logger = logging.getLogger(__name__)

DHL_PRODUCTION_URL = "https://express.api.dhl.com/mydhlapi"
DHL_SANDBOX_URL = "https://express.api.dhl.com/mydhlapi/test"

RATES_PATH = "/rates"
SHIPMENTS_PATH = "/shipments"

# DHL event typeCode -> TrackingStatus
DHL_STATUS_MAP = {
    "SD": TrackingStatus.CREATED,            # Shipment data received
    "PU": TrackingStatus.PICKED_UP,
    "PL": TrackingStatus.IN_TRANSIT,         # Processed at location
    "DF": TrackingStatus.IN_TRANSIT,         # Departed facility
    "AF": TrackingStatus.IN_TRANSIT,         # Arrived at facility
    "AR": TrackingStatus.IN_TRANSIT,         # Arrived at delivery facility
    "CC": TrackingStatus.IN_TRANSIT,         # Customs clearance
    "RR": TrackingStatus.IN_TRANSIT,         # Customs status updated
    "WC": TrackingStatus.OUT_FOR_DELIVERY,   # With courier
    "OK": TrackingStatus.DELIVERED,
    "DD": TrackingStatus.DELIVERED,
    "CA": TrackingStatus.EXCEPTION,          # Closed on arrival
    "NH": TrackingStatus.EXCEPTION,          # Not home
    "OH": TrackingStatus.EXCEPTION,          # On hold
    "BA": TrackingStatus.EXCEPTION,          # Bad address
    "RT": TrackingStatus.EXCEPTION,          # Returned to shipper
}

DHL_SANDBOX_SERVICES = sandbox_services(
    ("P", "DHL Express Worldwide", "30.00", "5.00", 3),
    ("U", "DHL Express Worldwide (EU)", "26.00", "4.00", 3),
    ("Y", "DHL Express 12:00", "45.00", "6.00", 2),
)


# =============================================================================
# Response schemas
# =============================================================================

class DHLTotalPrice(BaseModel):
    currency_type: Optional[str] = Field(default=None, alias="currencyType")
    price_currency: Optional[str] = Field(default=None, alias="priceCurrency")
    price: float


class DHLDeliveryCapabilities(BaseModel):
    estimated_delivery_date_and_time: Optional[str] = Field(
        default=None, alias="estimatedDeliveryDateAndTime"
    )
    total_transit_days: Optional[int] = Field(default=None, alias="totalTransitDays")


class DHLProduct(BaseModel):
    product_name: str = Field(alias="productName")
    product_code: str = Field(alias="productCode")
    total_price: Annotated[List[DHLTotalPrice], BeforeValidator(ensure_list)] = Field(
        default=[], alias="totalPrice"
    )
    delivery_capabilities: Optional[DHLDeliveryCapabilities] = Field(
        default=None, alias="deliveryCapabilities"
    )


class DHLRatesResponse(BaseModel):
    products: Annotated[List[DHLProduct], BeforeValidator(ensure_list)] = []


class DHLDocument(BaseModel):
    image_format: Optional[str] = Field(default=None, alias="imageFormat")
    content: str
    type_code: Optional[str] = Field(default=None, alias="typeCode")


class DHLShipmentCharge(BaseModel):
    currency_type: Optional[str] = Field(default=None, alias="currencyType")
    price_currency: Optional[str] = Field(default=None, alias="priceCurrency")
    price: float


class DHLShipmentResponse(BaseModel):
    shipment_tracking_number: str = Field(alias="shipmentTrackingNumber")
    tracking_url: Optional[str] = Field(default=None, alias="trackingUrl")
    dispatch_confirmation_number: Optional[str] = Field(default=None, alias="dispatchConfirmationNumber")
    documents: Annotated[List[DHLDocument], BeforeValidator(ensure_list)] = []
    shipment_charges: Annotated[List[DHLShipmentCharge], BeforeValidator(ensure_list)] = Field(
        default=[], alias="shipmentCharges"
    )


class DHLServiceArea(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None


class DHLEvent(BaseModel):
    date: str
    time: str = "00:00:00"
    gmt_offset: Optional[str] = Field(default=None, alias="GMTOffset")
    type_code: Optional[str] = Field(default=None, alias="typeCode")
    description: str = ""
    service_area: Annotated[List[DHLServiceArea], BeforeValidator(ensure_list)] = Field(
        default=[], alias="serviceArea"
    )


class DHLTrackedShipment(BaseModel):
    shipment_tracking_number: Optional[str] = Field(default=None, alias="shipmentTrackingNumber")
    events: Annotated[List[DHLEvent], BeforeValidator(ensure_list)] = []


class DHLTrackingResponse(BaseModel):
    shipments: Annotated[List[DHLTrackedShipment], BeforeValidator(ensure_list)] = []


def dhl_error_message(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    detail = data.get("detail") or data.get("title")
    return str(detail) if detail else None


def pick_price(prices: List[Any]) -> Optional[Any]:
    """Prefer the billing-currency price (BILLC), then the first with a currency."""
    billed = [p for p in prices if p.currency_type == "BILLC" and p.price_currency]
    if billed:
        return billed[0]
    priced = [p for p in prices if p.price_currency]
    return priced[0] if priced else None


# =============================================================================
# Carrier
# =============================================================================

@register_carrier(CarrierCode.DHL)
class DHLExpressCarrier(BaseCarrier):
    """DHL Express (MyDHL API) carrier implementation."""

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
        self._credentials: Optional[StaticCredentialProvider] = None

        if config.test_mode:
            self._sandbox = SandboxResponder(
                carrier_id=self.carrier_id,
                services=DHL_SANDBOX_SERVICES,
                currency=config.currency,
                tracking_prefix="JD",
                tracking_url=self.tracking_url,
                clock=self._clock,
            )
            return

        base_url = config.base_url or (DHL_SANDBOX_URL if config.use_sandbox else DHL_PRODUCTION_URL)
        self._http = CarrierHTTPClient(
            self.carrier_id,
            base_url,
            timeout=config.timeout_seconds,
            transport=transport,
            default_headers={"Accept": "application/json"},
        )
        self._credentials = StaticCredentialProvider(
            self.carrier_id,
            config.api_key or "",
            config.secret("api_secret"),
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.DHL

    @property
    def carrier_id(self) -> str:
        return self._config.resolved_carrier_id

    @property
    def carrier_name(self) -> str:
        return "DHL Express"

    def tracking_url(self, tracking_number: str) -> str:
        return f"https://www.dhl.com/en/express/tracking.html?AWB={tracking_number}"

    async def close(self) -> None:
        if self._http:
            await self._http.close()

    async def _headers(self) -> Dict[str, str]:
        return {"Authorization": await self._credentials.authorization_header()}

    def _planned_date(self) -> datetime:
        # DHL rejects same-day shipping dates after cut-off; plan for tomorrow
        return self._clock() + timedelta(days=1)

    # ==================== Rating ====================

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        if self._sandbox:
            return await self._sandbox.quote_rates(origin, destination, parcel)

        dims = parcel.dimensions_cm
        params = {
            "accountNumber": self._config.account_number,
            "originCountryCode": origin.country_code,
            "originPostalCode": origin.postal_code,
            "originCityName": origin.city,
            "destinationCountryCode": destination.country_code,
            "destinationPostalCode": destination.postal_code,
            "destinationCityName": destination.city,
            "weight": round(parcel.weight_kg, 3),
            "length": round(dims.length, 1) if dims else 1,
            "width": round(dims.width, 1) if dims else 1,
            "height": round(dims.height, 1) if dims else 1,
            "plannedShippingDate": self._planned_date().date().isoformat(),
            "isCustomsDeclarable": "true" if origin.country_code != destination.country_code else "false",
            "unitOfMeasurement": "metric",
        }

        data = await self._http.request_json(
            "GET",
            RATES_PATH,
            error_extractor=dhl_error_message,
            headers=await self._headers(),
            params=params,
        )
        response = validate_schema(DHLRatesResponse, data, self.carrier_id, "rates")

        quotes = []
        for product in response.products:
            price = pick_price(product.total_price)
            if price is None or not price.price:
                logger.warning(f"{self.carrier_id} product {product.product_code} returned without a price")
                continue

            capabilities = product.delivery_capabilities
            estimated = None
            transit_days = None
            if capabilities:
                transit_days = capabilities.total_transit_days
                if capabilities.estimated_delivery_date_and_time:
                    estimated = parse_timestamp(capabilities.estimated_delivery_date_and_time, self.carrier_id)

            quotes.append(RateQuote(
                carrier_id=self.carrier_id,
                service_code=product.product_code,
                service_name=product.product_name,
                cost=parse_money(price.price, price.price_currency, self.carrier_id),
                estimated_delivery=estimated,
                transit_days=transit_days,
            ))

        logger.info(f"Got {len(quotes)} rates from {self.carrier_id}")
        return require_quotes(quotes, self.carrier_id)

    # ==================== Shipping ====================

    def _party(self, party: ShippingParty) -> Dict[str, Any]:
        lines = list(party.street_lines) or [""]
        postal_address = {
            "postalCode": party.postal_code,
            "cityName": party.city,
            "countryCode": party.country_code,
            "addressLine1": lines[0][:45],
        }
        if len(lines) > 1:
            postal_address["addressLine2"] = lines[1][:45]
        if party.region:
            postal_address["provinceCode"] = party.region
        contact = {
            "fullName": party.name,
            "companyName": party.company or party.name,
            "phone": party.phone or "0000000000",
        }
        if party.email:
            contact["email"] = party.email
        return {"postalAddress": postal_address, "contactInformation": contact}

    async def create_label(self, request: LabelRequest) -> LabelResult:
        if self._sandbox:
            return await self._sandbox.create_label(request)

        dims = request.parcel.dimensions_cm
        package: Dict[str, Any] = {"weight": round(request.parcel.weight_kg, 3)}
        if dims:
            package["dimensions"] = {
                "length": round(dims.length, 1),
                "width": round(dims.width, 1),
                "height": round(dims.height, 1),
            }
        if request.reference:
            package["customerReferences"] = [{"value": request.reference[:35], "typeCode": "CU"}]

        planned = self._planned_date().strftime("%Y-%m-%dT%H:%M:%S GMT+00:00")
        request_data = {
            "plannedShippingDateAndTime": planned,
            "pickup": {"isRequested": False},
            "productCode": request.service_code,
            "accounts": [{"typeCode": "shipper", "number": self._config.account_number}],
            "outputImageProperties": {
                "encodingFormat": "pdf",
                "imageOptions": [{"typeCode": "label", "templateName": "ECOM26_84_001"}],
            },
            "customerDetails": {
                "shipperDetails": self._party(request.origin),
                "receiverDetails": self._party(request.destination),
            },
            "content": {
                "packages": [package],
                "isCustomsDeclarable": request.origin.country_code != request.destination.country_code,
                "description": (request.parcel.description or "Goods")[:70],
                "incoterm": "DAP",
                "unitOfMeasurement": "metric",
            },
        }
        if request.parcel.declared_value is not None:
            request_data["content"]["declaredValue"] = float(from_minor_units(request.parcel.declared_value))
            request_data["content"]["declaredValueCurrency"] = request.parcel.declared_value.currency

        data = await self._http.request_json(
            "POST",
            SHIPMENTS_PATH,
            error_extractor=dhl_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        response = validate_schema(DHLShipmentResponse, data, self.carrier_id, "shipment")

        tracking_number = require_field(response.shipment_tracking_number, self.carrier_id, "shipmentTrackingNumber")
        label = next((d for d in response.documents if (d.type_code or "label") == "label"), None)
        if label is None or not label.content:
            raise ParseFailure(
                f"{self.carrier_id}: shipment response has no label document",
                carrier_code=self.carrier_id,
                details={"field": "documents"},
            )

        charge = pick_price(response.shipment_charges)
        cost = parse_money(charge.price, charge.price_currency, self.carrier_id) if charge else None

        logger.info(f"{self.carrier_id} label created: {tracking_number}")
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=response.dispatch_confirmation_number or tracking_number,
            tracking_number=tracking_number,
            cost=cost,
            label_data=label.content,
            label_format=(label.image_format or "PDF").upper(),
            tracking_url=self.tracking_url(tracking_number),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        if self._sandbox:
            return ordered_events(await self._sandbox.track_shipment(tracking_number))

        data = await self._http.request_json(
            "GET",
            f"{SHIPMENTS_PATH}/{tracking_number}/tracking",
            error_extractor=dhl_error_message,
            headers=await self._headers(),
            params={"trackingView": "all-checkpoints", "levelOfDetail": "all"},
        )
        response = validate_schema(DHLTrackingResponse, data, self.carrier_id, "tracking")

        events = []
        for shipment in response.shipments:
            for event in shipment.events:
                events.append(TrackingEvent(
                    timestamp=self._event_time(event),
                    description=event.description,
                    status=map_status(DHL_STATUS_MAP, event.type_code, self.carrier_id),
                    location=next((a.description for a in event.service_area if a.description), ""),
                    carrier_status_code=event.type_code,
                ))
        return ordered_events(events)

    def _event_time(self, event: DHLEvent) -> datetime:
        offset = event.gmt_offset or "+00:00"
        if offset[0] not in "+-":
            offset = f"+{offset}"
        parsed = parse_timestamp(f"{event.date}T{event.time}{offset}", self.carrier_id)
        return parsed.astimezone(timezone.utc)
