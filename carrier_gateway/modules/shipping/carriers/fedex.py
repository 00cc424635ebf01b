"""
FedEx Carrier Implementation

FedEx REST APIs (OAuth 2.0, client id/secret sent in the form body):
- Rate Quotes: POST /rate/v1/rates/quotes
- Ship: POST /ship/v1/shipments
- Track: POST /track/v1/trackingnumbers
"""
import logging
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, Field

from carrier_gateway.core.exceptions import ParseFailure
from carrier_gateway.core.http_client import CarrierHTTPClient
from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.models.shipment import Money, TrackingStatus
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

FEDEX_PRODUCTION_URL = "https://apis.fedex.com"
FEDEX_SANDBOX_URL = "https://apis-sandbox.fedex.com"

OAUTH_TOKEN_PATH = "/oauth/token"
RATE_PATH = "/rate/v1/rates/quotes"
SHIP_PATH = "/ship/v1/shipments"
TRACK_PATH = "/track/v1/trackingnumbers"

FEDEX_SERVICE_NAMES = {
    "FEDEX_GROUND": "FedEx Ground",
    "FEDEX_2_DAY": "FedEx 2Day",
    "STANDARD_OVERNIGHT": "FedEx Standard Overnight",
    "PRIORITY_OVERNIGHT": "FedEx Priority Overnight",
    "INTERNATIONAL_ECONOMY": "FedEx International Economy",
    "INTERNATIONAL_PRIORITY": "FedEx International Priority",
    "FEDEX_INTERNATIONAL_PRIORITY": "FedEx International Priority",
    "FEDEX_INTERNATIONAL_CONNECT_PLUS": "FedEx International Connect Plus",
}

# FedEx scan event type -> TrackingStatus
FEDEX_STATUS_MAP = {
    "OC": TrackingStatus.CREATED,         # Shipment information sent to FedEx
    "PU": TrackingStatus.PICKED_UP,
    "IT": TrackingStatus.IN_TRANSIT,
    "AR": TrackingStatus.IN_TRANSIT,      # Arrived at FedEx location
    "DP": TrackingStatus.IN_TRANSIT,      # Departed FedEx location
    "AF": TrackingStatus.IN_TRANSIT,      # At FedEx facility
    "OD": TrackingStatus.OUT_FOR_DELIVERY,
    "DL": TrackingStatus.DELIVERED,
    "DE": TrackingStatus.EXCEPTION,       # Delivery exception
    "SE": TrackingStatus.EXCEPTION,       # Shipment exception
    "CA": TrackingStatus.EXCEPTION,       # Cancelled
}

# FedEx reports transit time as words
TRANSIT_DAY_WORDS = {
    "ONE_DAY": 1, "TWO_DAYS": 2, "THREE_DAYS": 3, "FOUR_DAYS": 4, "FIVE_DAYS": 5,
    "SIX_DAYS": 6, "SEVEN_DAYS": 7, "EIGHT_DAYS": 8, "NINE_DAYS": 9, "TEN_DAYS": 10,
}

FEDEX_SANDBOX_SERVICES = sandbox_services(
    ("INTERNATIONAL_ECONOMY", "FedEx International Economy", "18.00", "3.00", 5),
    ("INTERNATIONAL_PRIORITY", "FedEx International Priority", "32.00", "4.00", 2),
)


# =============================================================================
# Response schemas
# =============================================================================

class FedExRatedShipmentDetail(BaseModel):
    rate_type: Optional[str] = Field(default=None, alias="rateType")
    total_net_charge: float = Field(alias="totalNetCharge")
    currency: str


class FedExDateDetail(BaseModel):
    day_format: Optional[str] = Field(default=None, alias="dayFormat")


class FedExTransitDays(BaseModel):
    minimum_transit_time: Optional[str] = Field(default=None, alias="minimumTransitTime")


class FedExCommit(BaseModel):
    date_detail: Optional[FedExDateDetail] = Field(default=None, alias="dateDetail")
    transit_days: Optional[FedExTransitDays] = Field(default=None, alias="transitDays")


class FedExOperationalDetail(BaseModel):
    transit_time: Optional[str] = Field(default=None, alias="transitTime")
    delivery_date: Optional[str] = Field(default=None, alias="deliveryDate")


class FedExRateReplyDetail(BaseModel):
    service_type: str = Field(alias="serviceType")
    service_name: Optional[str] = Field(default=None, alias="serviceName")
    rated_shipment_details: Annotated[List[FedExRatedShipmentDetail], BeforeValidator(ensure_list)] = Field(
        default=[], alias="ratedShipmentDetails"
    )
    commit: Optional[FedExCommit] = None
    operational_detail: Optional[FedExOperationalDetail] = Field(default=None, alias="operationalDetail")


class FedExRateOutput(BaseModel):
    rate_reply_details: Annotated[List[FedExRateReplyDetail], BeforeValidator(ensure_list)] = Field(
        default=[], alias="rateReplyDetails"
    )


class FedExRateResponse(BaseModel):
    output: FedExRateOutput


class FedExPackageDocument(BaseModel):
    url: Optional[str] = None
    encoded_label: Optional[str] = Field(default=None, alias="encodedLabel")
    doc_type: Optional[str] = Field(default=None, alias="docType")


class FedExPieceResponse(BaseModel):
    tracking_number: str = Field(alias="trackingNumber")
    package_documents: Annotated[List[FedExPackageDocument], BeforeValidator(ensure_list)] = Field(
        default=[], alias="packageDocuments"
    )


class FedExShipmentRateDetail(BaseModel):
    total_net_charge: float = Field(alias="totalNetCharge")
    currency: str


class FedExShipmentRating(BaseModel):
    shipment_rate_details: Annotated[List[FedExShipmentRateDetail], BeforeValidator(ensure_list)] = Field(
        default=[], alias="shipmentRateDetails"
    )


class FedExCompletedShipmentDetail(BaseModel):
    shipment_rating: Optional[FedExShipmentRating] = Field(default=None, alias="shipmentRating")


class FedExTransactionShipment(BaseModel):
    master_tracking_number: str = Field(alias="masterTrackingNumber")
    service_type: Optional[str] = Field(default=None, alias="serviceType")
    piece_responses: Annotated[List[FedExPieceResponse], BeforeValidator(ensure_list)] = Field(
        default=[], alias="pieceResponses"
    )
    completed_shipment_detail: Optional[FedExCompletedShipmentDetail] = Field(
        default=None, alias="completedShipmentDetail"
    )


class FedExShipOutput(BaseModel):
    transaction_shipments: Annotated[List[FedExTransactionShipment], BeforeValidator(ensure_list)] = Field(
        alias="transactionShipments"
    )


class FedExShipResponse(BaseModel):
    output: FedExShipOutput


class FedExScanLocation(BaseModel):
    city: Optional[str] = None
    state_or_province_code: Optional[str] = Field(default=None, alias="stateOrProvinceCode")
    country_code: Optional[str] = Field(default=None, alias="countryCode")


class FedExScanEvent(BaseModel):
    date: str
    event_type: Optional[str] = Field(default=None, alias="eventType")
    event_description: str = Field(default="", alias="eventDescription")
    derived_status_code: Optional[str] = Field(default=None, alias="derivedStatusCode")
    scan_location: Optional[FedExScanLocation] = Field(default=None, alias="scanLocation")


class FedExTrackError(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None


class FedExTrackResult(BaseModel):
    scan_events: Annotated[List[FedExScanEvent], BeforeValidator(ensure_list)] = Field(
        default=[], alias="scanEvents"
    )
    error: Optional[FedExTrackError] = None


class FedExCompleteTrackResult(BaseModel):
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")
    track_results: Annotated[List[FedExTrackResult], BeforeValidator(ensure_list)] = Field(
        default=[], alias="trackResults"
    )


class FedExTrackOutput(BaseModel):
    complete_track_results: Annotated[List[FedExCompleteTrackResult], BeforeValidator(ensure_list)] = Field(
        default=[], alias="completeTrackResults"
    )


class FedExTrackResponse(BaseModel):
    output: FedExTrackOutput


def fedex_error_message(data: Any) -> Optional[str]:
    errors = (data or {}).get("errors", [])
    if errors:
        first = errors[0]
        return f"{first.get('code', '')}: {first.get('message', '')}".strip(": ")
    return None


# =============================================================================
# Carrier
# =============================================================================

@register_carrier(CarrierCode.FEDEX)
class FedExCarrier(BaseCarrier):
    """FedEx shipping carrier implementation."""

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
                services=FEDEX_SANDBOX_SERVICES,
                currency=config.currency,
                tracking_prefix="7",
                tracking_url=self.tracking_url,
                clock=self._clock,
            )
            return

        base_url = config.base_url or (FEDEX_SANDBOX_URL if config.use_sandbox else FEDEX_PRODUCTION_URL)
        self._http = CarrierHTTPClient(
            self.carrier_id,
            base_url,
            timeout=config.timeout_seconds,
            transport=transport,
            default_headers={"Content-Type": "application/json", "X-locale": "en_US"},
        )
        self._credentials = OAuth2CredentialProvider(
            self.carrier_id,
            client_credentials_fetcher(
                self._http,
                OAUTH_TOKEN_PATH,
                config.client_id or "",
                config.secret("client_secret"),
                style="form",
            ),
            refresh_margin_seconds=config.token_refresh_margin_seconds,
            clock=self._clock,
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.FEDEX

    @property
    def carrier_id(self) -> str:
        return self._config.resolved_carrier_id

    @property
    def carrier_name(self) -> str:
        return "FedEx"

    def tracking_url(self, tracking_number: str) -> str:
        return f"https://www.fedex.com/fedextrack/?trknbr={tracking_number}"

    async def close(self) -> None:
        if self._http:
            await self._http.close()

    # ==================== Request building ====================

    def _party(self, party: ShippingParty) -> Dict:
        address: Dict[str, Any] = {
            "postalCode": party.postal_code,
            "countryCode": party.country_code,
        }
        if party.city:
            address["city"] = party.city
        if party.street_lines:
            address["streetLines"] = list(party.street_lines)[:2]
        if party.region:
            address["stateOrProvinceCode"] = party.region
        return address

    def _contact(self, party: ShippingParty) -> Dict:
        contact = {"personName": party.name, "phoneNumber": party.phone or ""}
        if party.company:
            contact["companyName"] = party.company
        if party.email:
            contact["emailAddress"] = party.email
        return contact

    def _package(self, parcel: ParcelSpec) -> Dict:
        package: Dict[str, Any] = {
            "weight": {"units": "KG", "value": round(parcel.weight_kg, 2)},
        }
        dims = parcel.dimensions_cm
        if dims:
            package["dimensions"] = {
                "length": round(dims.length),
                "width": round(dims.width),
                "height": round(dims.height),
                "units": "CM",
            }
        return package

    async def _headers(self) -> Dict[str, str]:
        return {"Authorization": await self._credentials.authorization_header()}

    # ==================== Rating ====================

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        if self._sandbox:
            return await self._sandbox.quote_rates(origin, destination, parcel)

        request_data = {
            "accountNumber": {"value": self._config.account_number},
            "rateRequestControlParameters": {"returnTransitTimes": True},
            "requestedShipment": {
                "shipper": {"address": self._party(origin)},
                "recipient": {"address": self._party(destination)},
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "rateRequestType": ["ACCOUNT", "LIST"],
                "requestedPackageLineItems": [self._package(parcel)],
            },
        }

        data = await self._http.request_json(
            "POST",
            RATE_PATH,
            error_extractor=fedex_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        response = validate_schema(FedExRateResponse, data, self.carrier_id, "rate")

        quotes = []
        for detail in response.output.rate_reply_details:
            if not detail.rated_shipment_details:
                logger.warning(f"{self.carrier_id} service {detail.service_type} returned without a price")
                continue
            # Account rates first, list rates as fallback
            rated = next(
                (r for r in detail.rated_shipment_details if r.rate_type == "ACCOUNT"),
                detail.rated_shipment_details[0],
            )
            quotes.append(RateQuote(
                carrier_id=self.carrier_id,
                service_code=detail.service_type,
                service_name=FEDEX_SERVICE_NAMES.get(
                    detail.service_type, detail.service_name or detail.service_type
                ),
                cost=parse_money(rated.total_net_charge, rated.currency, self.carrier_id),
                estimated_delivery=self._delivery_date(detail),
                transit_days=self._transit_days(detail),
            ))

        logger.info(f"Got {len(quotes)} rates from {self.carrier_id}")
        return require_quotes(quotes, self.carrier_id)

    def _transit_days(self, detail: FedExRateReplyDetail) -> Optional[int]:
        words = None
        if detail.operational_detail and detail.operational_detail.transit_time:
            words = detail.operational_detail.transit_time
        elif detail.commit and detail.commit.transit_days:
            words = detail.commit.transit_days.minimum_transit_time
        return TRANSIT_DAY_WORDS.get((words or "").upper())

    def _delivery_date(self, detail: FedExRateReplyDetail) -> Optional[datetime]:
        value = None
        if detail.commit and detail.commit.date_detail:
            value = detail.commit.date_detail.day_format
        if not value and detail.operational_detail:
            value = detail.operational_detail.delivery_date
        return parse_timestamp(value, self.carrier_id) if value else None

    # ==================== Shipping ====================

    async def create_label(self, request: LabelRequest) -> LabelResult:
        if self._sandbox:
            return await self._sandbox.create_label(request)

        package = self._package(request.parcel)
        if request.reference:
            package["customerReferences"] = [
                {"customerReferenceType": "CUSTOMER_REFERENCE", "value": request.reference[:30]}
            ]

        request_data = {
            "labelResponseOptions": "LABEL",
            "accountNumber": {"value": self._config.account_number},
            "requestedShipment": {
                "shipper": {
                    "contact": self._contact(request.origin),
                    "address": self._party(request.origin),
                },
                "recipients": [{
                    "contact": self._contact(request.destination),
                    "address": self._party(request.destination),
                }],
                "serviceType": request.service_code,
                "packagingType": "YOUR_PACKAGING",
                "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
                "shippingChargesPayment": {"paymentType": "SENDER"},
                "labelSpecification": {
                    "imageType": "PDF",
                    "labelStockType": "PAPER_4X6",
                },
                "requestedPackageLineItems": [package],
            },
        }

        data = await self._http.request_json(
            "POST",
            SHIP_PATH,
            error_extractor=fedex_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        response = validate_schema(FedExShipResponse, data, self.carrier_id, "ship")

        if not response.output.transaction_shipments:
            raise ParseFailure(f"{self.carrier_id}: ship response has no shipment", carrier_code=self.carrier_id)
        shipment = response.output.transaction_shipments[0]
        tracking_number = require_field(shipment.master_tracking_number, self.carrier_id, "masterTrackingNumber")

        label_url = None
        label_data = None
        for piece in shipment.piece_responses:
            for doc in piece.package_documents:
                label_url = label_url or doc.url
                label_data = label_data or doc.encoded_label
        if not (label_url or label_data):
            raise ParseFailure(
                f"{self.carrier_id}: ship response has no label document",
                carrier_code=self.carrier_id,
                details={"field": "packageDocuments"},
            )

        logger.info(f"{self.carrier_id} label created: {tracking_number}")
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=tracking_number,
            tracking_number=tracking_number,
            cost=self._shipment_cost(shipment),
            label_url=label_url,
            label_data=label_data,
            tracking_url=self.tracking_url(tracking_number),
        )

    def _shipment_cost(self, shipment: FedExTransactionShipment) -> Optional[Money]:
        detail = shipment.completed_shipment_detail
        if not detail or not detail.shipment_rating:
            return None
        rating = next((r for r in detail.shipment_rating.shipment_rate_details if r.currency), None)
        if rating is None:
            return None
        return parse_money(rating.total_net_charge, rating.currency, self.carrier_id)

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        if self._sandbox:
            return ordered_events(await self._sandbox.track_shipment(tracking_number))

        request_data = {
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
        }
        data = await self._http.request_json(
            "POST",
            TRACK_PATH,
            error_extractor=fedex_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        response = validate_schema(FedExTrackResponse, data, self.carrier_id, "track")

        events = []
        for complete in response.output.complete_track_results:
            for result in complete.track_results:
                if result.error and not result.scan_events:
                    # Not yet in the FedEx system: no events, not a failure
                    logger.info(f"{self.carrier_id} has no scans for {tracking_number}: {result.error.code}")
                    continue
                for scan in result.scan_events:
                    location = scan.scan_location
                    events.append(TrackingEvent(
                        timestamp=parse_timestamp(scan.date, self.carrier_id),
                        description=scan.event_description,
                        status=map_status(FEDEX_STATUS_MAP, scan.event_type, self.carrier_id),
                        location=join_location(
                            location.city if location else None,
                            location.state_or_province_code if location else None,
                            location.country_code if location else None,
                        ),
                        carrier_status_code=scan.event_type,
                    ))

        return ordered_events(events)
