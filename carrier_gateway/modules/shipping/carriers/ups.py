"""
UPS Carrier Implementation

REST-JSON APIs with OAuth 2.0 client credentials (HTTP Basic client auth):
- Rating (Shop with time in transit)
- Shipping (create label)
- Tracking

UPS sends a single item as an object and several as an array; the response
schemas below normalize both before validation.
"""
import logging
from datetime import datetime, timezone
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
    join_location,
    map_status,
    ordered_events,
    parse_money,
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

# UPS API URLs
UPS_PRODUCTION_URL = "https://onlinetools.ups.com"
UPS_SANDBOX_URL = "https://wwwcie.ups.com"

OAUTH_TOKEN_PATH = "/security/v1/oauth/token"
RATING_PATH = "/api/rating/v2403/Shoptimeintransit"
SHIPPING_PATH = "/api/shipments/v2403/ship"
TRACKING_PATH = "/api/track/v1/details"

# Countries where UPS expects imperial units
IMPERIAL_COUNTRIES = ("US", "PR")

# UPS Service Codes Reference
UPS_SERVICE_CODES = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "12": "UPS 3 Day Select",
    "54": "UPS Worldwide Express Plus",
    "65": "UPS Saver",
}

# UPS activity status type -> TrackingStatus
UPS_STATUS_MAP = {
    "M": TrackingStatus.CREATED,
    "MV": TrackingStatus.CREATED,
    "P": TrackingStatus.PICKED_UP,
    "I": TrackingStatus.IN_TRANSIT,
    "O": TrackingStatus.OUT_FOR_DELIVERY,
    "D": TrackingStatus.DELIVERED,
    "X": TrackingStatus.EXCEPTION,
    "RS": TrackingStatus.EXCEPTION,
    "NA": TrackingStatus.UNKNOWN,
}

# Canned tiers for test mode: (code, name, base, per kg, transit days)
UPS_SANDBOX_SERVICES = sandbox_services(
    ("11", "UPS Standard", "15.00", "2.50", 5),
    ("08", "UPS Worldwide Expedited", "25.00", "3.50", 3),
    ("07", "UPS Worldwide Express", "35.00", "4.50", 2),
)


# =============================================================================
# Response schemas
# =============================================================================

class UPSCharges(BaseModel):
    currency_code: str = Field(alias="CurrencyCode")
    monetary_value: str = Field(alias="MonetaryValue")


class UPSCode(BaseModel):
    code: str = Field(alias="Code")
    description: Optional[str] = Field(default=None, alias="Description")


class UPSArrival(BaseModel):
    date: str = Field(alias="Date")
    time: Optional[str] = Field(default=None, alias="Time")


class UPSEstimatedArrival(BaseModel):
    arrival: Optional[UPSArrival] = Field(default=None, alias="Arrival")
    business_days_in_transit: Optional[int] = Field(default=None, alias="BusinessDaysInTransit")


class UPSServiceSummary(BaseModel):
    estimated_arrival: Optional[UPSEstimatedArrival] = Field(default=None, alias="EstimatedArrival")


class UPSTimeInTransit(BaseModel):
    service_summary: Optional[UPSServiceSummary] = Field(default=None, alias="ServiceSummary")


class UPSGuaranteedDelivery(BaseModel):
    business_days_in_transit: Optional[int] = Field(default=None, alias="BusinessDaysInTransit")


class UPSRatedShipment(BaseModel):
    service: UPSCode = Field(alias="Service")
    total_charges: UPSCharges = Field(alias="TotalCharges")
    time_in_transit: Optional[UPSTimeInTransit] = Field(default=None, alias="TimeInTransit")
    guaranteed_delivery: Optional[UPSGuaranteedDelivery] = Field(default=None, alias="GuaranteedDelivery")


class UPSRateResponseBody(BaseModel):
    rated_shipments: Annotated[List[UPSRatedShipment], BeforeValidator(ensure_list)] = Field(
        alias="RatedShipment"
    )


class UPSRateResponse(BaseModel):
    rate_response: UPSRateResponseBody = Field(alias="RateResponse")


class UPSShippingLabel(BaseModel):
    image_format: Optional[UPSCode] = Field(default=None, alias="ImageFormat")
    graphic_image: str = Field(alias="GraphicImage")


class UPSPackageResult(BaseModel):
    tracking_number: str = Field(alias="TrackingNumber")
    shipping_label: UPSShippingLabel = Field(alias="ShippingLabel")


class UPSShipmentCharges(BaseModel):
    total_charges: UPSCharges = Field(alias="TotalCharges")


class UPSShipmentResults(BaseModel):
    shipment_identification_number: str = Field(alias="ShipmentIdentificationNumber")
    shipment_charges: Optional[UPSShipmentCharges] = Field(default=None, alias="ShipmentCharges")
    package_results: Annotated[List[UPSPackageResult], BeforeValidator(ensure_list)] = Field(
        alias="PackageResults"
    )


class UPSShipmentResponseBody(BaseModel):
    shipment_results: UPSShipmentResults = Field(alias="ShipmentResults")


class UPSShipmentResponse(BaseModel):
    shipment_response: UPSShipmentResponseBody = Field(alias="ShipmentResponse")


class UPSActivityStatus(BaseModel):
    type: Optional[str] = None
    code: Optional[str] = None
    description: str = ""


class UPSActivityAddress(BaseModel):
    city: Optional[str] = None
    state_province: Optional[str] = Field(default=None, alias="stateProvince")
    country: Optional[str] = None


class UPSActivityLocation(BaseModel):
    address: Optional[UPSActivityAddress] = None


class UPSActivity(BaseModel):
    date: str
    time: Optional[str] = None
    gmt_date: Optional[str] = Field(default=None, alias="gmtDate")
    gmt_time: Optional[str] = Field(default=None, alias="gmtTime")
    status: UPSActivityStatus
    location: Optional[UPSActivityLocation] = None


class UPSTrackPackage(BaseModel):
    activity: Annotated[List[UPSActivity], BeforeValidator(ensure_list)] = []


class UPSTrackShipment(BaseModel):
    package: Annotated[List[UPSTrackPackage], BeforeValidator(ensure_list)] = []


class UPSTrackResponseBody(BaseModel):
    shipment: Annotated[List[UPSTrackShipment], BeforeValidator(ensure_list)] = []


class UPSTrackResponse(BaseModel):
    track_response: UPSTrackResponseBody = Field(alias="trackResponse")


def ups_error_message(data: Any) -> Optional[str]:
    """Extract the first error message from a UPS error body."""
    errors = (data or {}).get("response", {}).get("errors", [])
    if errors:
        return errors[0].get("message")
    return None


# =============================================================================
# Carrier
# =============================================================================

@register_carrier(CarrierCode.UPS)
class UPSCarrier(BaseCarrier):
    """UPS shipping carrier implementation."""

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
                services=UPS_SANDBOX_SERVICES,
                currency=config.currency,
                tracking_prefix="1Z",
                tracking_url=self.tracking_url,
                clock=self._clock,
            )
            return

        base_url = config.base_url or (UPS_SANDBOX_URL if config.use_sandbox else UPS_PRODUCTION_URL)
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
                style="basic",
            ),
            refresh_margin_seconds=config.token_refresh_margin_seconds,
            clock=self._clock,
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.UPS

    @property
    def carrier_id(self) -> str:
        return self._config.resolved_carrier_id

    @property
    def carrier_name(self) -> str:
        return "UPS"

    def tracking_url(self, tracking_number: str) -> str:
        """Get public UPS tracking URL."""
        return f"https://www.ups.com/track?tracknum={tracking_number}"

    async def close(self) -> None:
        if self._http:
            await self._http.close()

    # ==================== Request building ====================

    def _party(self, party: ShippingParty, with_account: bool = False) -> Dict:
        """Convert ShippingParty to UPS API format."""
        lines = list(party.street_lines) or [""]
        address = {
            "Name": (party.company or party.name)[:35],
            "Address": {
                "AddressLine": [line[:35] for line in lines[:3]],
                "City": party.city,
                "StateProvinceCode": (party.region or "")[:5],
                "PostalCode": party.postal_code,
                "CountryCode": party.country_code,
            },
        }
        if party.company:
            address["AttentionName"] = party.name[:35]
        if party.phone:
            address["Phone"] = {"Number": party.phone[:15]}
        if party.email:
            address["EMailAddress"] = party.email[:50]
        if with_account and self._config.account_number:
            address["ShipperNumber"] = self._config.account_number
        return address

    def _package(self, parcel: ParcelSpec, origin_country: str, packaging_key: str) -> Dict:
        """Package in the unit system UPS expects for the origin country."""
        imperial = origin_country in IMPERIAL_COUNTRIES
        weight = parcel.weight_lb if imperial else parcel.weight_kg
        package = {
            packaging_key: {"Code": "02", "Description": "Package"},  # Customer Supplied Package
            "PackageWeight": {
                "UnitOfMeasurement": {"Code": "LBS" if imperial else "KGS"},
                "Weight": f"{weight:.2f}",
            },
        }
        dims = parcel.dimensions_in if imperial else parcel.dimensions_cm
        if dims:
            package["Dimensions"] = {
                "UnitOfMeasurement": {"Code": "IN" if imperial else "CM"},
                "Length": f"{dims.length:.2f}",
                "Width": f"{dims.width:.2f}",
                "Height": f"{dims.height:.2f}",
            }
        if parcel.description:
            package["Description"] = parcel.description[:35]
        return package

    async def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": await self._credentials.authorization_header(),
            "transId": f"cg_{self._clock().strftime('%Y%m%d%H%M%S%f')}",
            "transactionSrc": "carrier-gateway",
        }

    # ==================== Rating ====================

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        """Get all UPS services for this parcel (Shop with time in transit)."""
        if self._sandbox:
            return await self._sandbox.quote_rates(origin, destination, parcel)

        request_data = {
            "RateRequest": {
                "Request": {
                    "RequestOption": "Shoptimeintransit",
                    "SubVersion": "2403",
                    "TransactionReference": {"CustomerContext": "Rate"},
                },
                "Shipment": {
                    "Shipper": self._party(origin, with_account=True),
                    "ShipTo": self._party(destination),
                    "ShipFrom": self._party(origin),
                    "Package": self._package(parcel, origin.country_code, "PackagingType"),
                    "DeliveryTimeInformation": {"PackageBillType": "03"},
                },
            }
        }

        data = await self._http.request_json(
            "POST",
            RATING_PATH,
            error_extractor=ups_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        response = validate_schema(UPSRateResponse, data, self.carrier_id, "rating")

        quotes = []
        for rs in response.rate_response.rated_shipments:
            code = rs.service.code
            transit_days = None
            estimated = None

            summary = rs.time_in_transit.service_summary if rs.time_in_transit else None
            arrival = summary.estimated_arrival if summary else None
            if arrival:
                transit_days = arrival.business_days_in_transit
                if arrival.arrival:
                    estimated = self._parse_ups_datetime(arrival.arrival.date, arrival.arrival.time)
            if transit_days is None and rs.guaranteed_delivery:
                transit_days = rs.guaranteed_delivery.business_days_in_transit

            quotes.append(RateQuote(
                carrier_id=self.carrier_id,
                service_code=code,
                service_name=UPS_SERVICE_CODES.get(code, rs.service.description or f"UPS Service {code}"),
                cost=parse_money(
                    rs.total_charges.monetary_value,
                    rs.total_charges.currency_code,
                    self.carrier_id,
                ),
                estimated_delivery=estimated,
                transit_days=transit_days,
            ))

        logger.info(f"Got {len(quotes)} rates from {self.carrier_id}")
        return require_quotes(quotes, self.carrier_id)

    # ==================== Shipping (Label Creation) ====================

    async def create_label(self, request: LabelRequest) -> LabelResult:
        """Create a UPS shipment and PDF label. Single attempt."""
        if self._sandbox:
            return await self._sandbox.create_label(request)

        shipment = {
            "Description": (request.parcel.description or "Package")[:50],
            "Shipper": self._party(request.origin, with_account=True),
            "ShipTo": self._party(request.destination),
            "ShipFrom": self._party(request.origin),
            "PaymentInformation": {
                "ShipmentCharge": {
                    "Type": "01",  # Transportation
                    "BillShipper": {"AccountNumber": self._config.account_number},
                },
            },
            "Service": {"Code": request.service_code},
            "Package": self._package(request.parcel, request.origin.country_code, "Packaging"),
        }
        if request.reference:
            shipment["ReferenceNumber"] = {
                "Code": "01",  # Customer Reference
                "Value": request.reference[:35],
            }

        request_data = {
            "ShipmentRequest": {
                "Request": {
                    "RequestOption": "nonvalidate",
                    "SubVersion": "2403",
                    "TransactionReference": {"CustomerContext": request.reference or "Ship"},
                },
                "Shipment": shipment,
                "LabelSpecification": {
                    "LabelImageFormat": {"Code": "PDF", "Description": "PDF"},
                    "LabelStockSize": {"Height": "6", "Width": "4"},
                },
            }
        }

        data = await self._http.request_json(
            "POST",
            SHIPPING_PATH,
            error_extractor=ups_error_message,
            headers=await self._headers(),
            json=request_data,
        )
        results = validate_schema(
            UPSShipmentResponse, data, self.carrier_id, "shipment"
        ).shipment_response.shipment_results

        if not results.package_results:
            raise ParseFailure(f"{self.carrier_id}: shipment response has no package", carrier_code=self.carrier_id)
        package = results.package_results[0]
        tracking_number = require_field(package.tracking_number, self.carrier_id, "TrackingNumber")
        label_data = require_field(package.shipping_label.graphic_image, self.carrier_id, "GraphicImage")

        cost = None
        if results.shipment_charges:
            charges = results.shipment_charges.total_charges
            cost = parse_money(charges.monetary_value, charges.currency_code, self.carrier_id)

        logger.info(f"{self.carrier_id} label created: {tracking_number}")
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=results.shipment_identification_number,
            tracking_number=tracking_number,
            cost=cost,
            label_data=label_data,
            label_format=(
                package.shipping_label.image_format.code
                if package.shipping_label.image_format else "PDF"
            ),
            tracking_url=self.tracking_url(tracking_number),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        """Get UPS tracking events, oldest first."""
        if self._sandbox:
            return ordered_events(await self._sandbox.track_shipment(tracking_number))

        data = await self._http.request_json(
            "GET",
            f"{TRACKING_PATH}/{tracking_number}",
            error_extractor=ups_error_message,
            headers=await self._headers(),
            params={"locale": "en_US", "returnSignature": "false"},
        )
        response = validate_schema(UPSTrackResponse, data, self.carrier_id, "tracking")

        events = []
        for shipment in response.track_response.shipment:
            for package in shipment.package:
                for activity in package.activity:
                    address = activity.location.address if activity.location else None
                    events.append(TrackingEvent(
                        timestamp=self._activity_time(activity),
                        description=activity.status.description,
                        status=map_status(UPS_STATUS_MAP, activity.status.type, self.carrier_id),
                        location=join_location(
                            address.city if address else None,
                            address.state_province if address else None,
                            address.country if address else None,
                        ),
                        carrier_status_code=activity.status.code or activity.status.type,
                    ))

        return ordered_events(events)

    def _activity_time(self, activity: UPSActivity) -> datetime:
        # GMT fields carry the real instant; local date/time has no offset
        if activity.gmt_date and activity.gmt_time:
            return self._parse_ups_datetime(activity.gmt_date, activity.gmt_time.replace(":", ""))
        return self._parse_ups_datetime(activity.date, activity.time)

    def _parse_ups_datetime(self, date_str: str, time_str: Optional[str]) -> datetime:
        """UPS dates are YYYYMMDD, times HHMM or HHMMSS."""
        time_str = (time_str or "000000").ljust(6, "0")
        try:
            return datetime.strptime(f"{date_str} {time_str[:6]}", "%Y%m%d %H%M%S").replace(tzinfo=timezone.utc)
        except ValueError:
            raise ParseFailure(
                f"{self.carrier_id}: invalid date/time {date_str!r} {time_str!r}",
                carrier_code=self.carrier_id,
            )
