"""
Chronopost Carrier Implementation

SOAP-XML web services (Apache CXF, document/literal). The account number and
password travel inside every request body; there is no token exchange.
- Quickcost: calculateProducts
- Shipping: shippingMultiParcelV4
- Tracking: trackSkybillV2

Chronopost reports business errors inside a successful envelope through
``errorCode``/``errorMessage``; SOAP Faults are transport-level problems.
"""
import logging
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, Field

from carrier_gateway.core.exceptions import (
    AuthenticationError,
    ParseFailure,
    RateUnavailableError,
    TransportFailure,
)
from carrier_gateway.core.http_client import CarrierHTTPClient
from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.models.shipment import TrackingStatus
from carrier_gateway.modules.shipping import soap
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

logger = logging.getLogger(__name__)

CHRONOPOST_URL = "https://ws.chronopost.fr"

QUICKCOST_PATH = "/quickcost-cxf/QuickcostServiceWS"
SHIPPING_PATH = "/shipping-cxf/ShippingServiceWS"
TRACKING_PATH = "/tracking-cxf/TrackingServiceWS"

QUICKCOST_NS = "http://cxf.quickcost.soap.chronopost.fr/"
SHIPPING_NS = "http://cxf.shipping.soap.chronopost.fr/"
TRACKING_NS = "http://cxf.tracking.soap.chronopost.fr/"

# errorCode values with a dedicated meaning
ERROR_OK = "0"
ERROR_SYSTEM = "1"
ERROR_AUTHENTICATION = "3"

CHRONOPOST_PRODUCTS = {
    "01": ("Chrono 13", 1),
    "02": ("Chrono 10", 1),
    "16": ("Chrono 18", 1),
    "44": ("Chrono Classic", 4),
    "17": ("Chrono Express", 3),
}

CHRONOPOST_STATUS_MAP = {
    "DC": TrackingStatus.CREATED,           # Shipment prepared by the sender
    "SC": TrackingStatus.CREATED,
    "PC": TrackingStatus.PICKED_UP,         # Taken over by Chronopost
    "DB": TrackingStatus.PICKED_UP,         # Dropped at a relay point
    "TS": TrackingStatus.IN_TRANSIT,
    "TA": TrackingStatus.IN_TRANSIT,
    "TR": TrackingStatus.IN_TRANSIT,
    "SD": TrackingStatus.IN_TRANSIT,        # Customs
    "ET": TrackingStatus.IN_TRANSIT,        # Arrived at agency
    "TO": TrackingStatus.OUT_FOR_DELIVERY,
    "MD": TrackingStatus.OUT_FOR_DELIVERY,  # Out with courier
    "D": TrackingStatus.DELIVERED,
    "DI": TrackingStatus.DELIVERED,
    "D1": TrackingStatus.DELIVERED,
    "LI": TrackingStatus.DELIVERED,         # Collected at relay point
    "NA": TrackingStatus.EXCEPTION,         # Recipient absent
    "AV": TrackingStatus.EXCEPTION,         # Notice left
    "RE": TrackingStatus.EXCEPTION,         # Refused
    "NL": TrackingStatus.EXCEPTION,         # Not delivered
    "RG": TrackingStatus.EXCEPTION,         # Returned to sender
}

CHRONOPOST_SANDBOX_SERVICES = sandbox_services(
    ("44", "Chrono Classic", "22.00", "2.00", 4),
    ("17", "Chrono Express", "38.00", "4.00", 3),
)


# =============================================================================
# Response schemas (flattened XML)
# =============================================================================

class ChronopostProduct(BaseModel):
    product_code: str = Field(alias="productCode")
    amount_ttc: Optional[str] = Field(default=None, alias="amountTTC")
    amount: Optional[str] = None


class ChronopostQuickcostResult(BaseModel):
    error_code: str = Field(alias="errorCode")
    error_message: str = Field(default="", alias="errorMessage")
    product_list: Annotated[List[ChronopostProduct], BeforeValidator(ensure_list)] = Field(
        default=[], alias="productList"
    )


class ChronopostParcelResult(BaseModel):
    skybill_number: str = Field(alias="skybillNumber")
    pdf_etiquette: Optional[str] = Field(default=None, alias="pdfEtiquette")
    reservation_number: Optional[str] = Field(default=None, alias="reservationNumber")


class ChronopostShippingResult(BaseModel):
    error_code: str = Field(alias="errorCode")
    error_message: str = Field(default="", alias="errorMessage")
    result_multi_parcel_value: Annotated[List[ChronopostParcelResult], BeforeValidator(ensure_list)] = Field(
        default=[], alias="resultMultiParcelValue"
    )


class ChronopostEvent(BaseModel):
    code: str = ""
    event_date: str = Field(alias="eventDate")
    event_label: str = Field(default="", alias="eventLabel")
    office_label: str = Field(default="", alias="officeLabel")


class ChronopostEventList(BaseModel):
    events: Annotated[List[ChronopostEvent], BeforeValidator(ensure_list)] = []


def _empty_to_none(value: Any) -> Any:
    return None if value == "" else value


class ChronopostTrackingResult(BaseModel):
    error_code: str = Field(alias="errorCode")
    error_message: str = Field(default="", alias="errorMessage")
    list_event_info_comp: Annotated[Optional[ChronopostEventList], BeforeValidator(_empty_to_none)] = Field(
        default=None, alias="listEventInfoComp"
    )


# =============================================================================
# Carrier
# =============================================================================

@register_carrier(CarrierCode.CHRONOPOST)
class ChronopostCarrier(BaseCarrier):
    """Chronopost (SOAP) carrier implementation."""

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
                services=CHRONOPOST_SANDBOX_SERVICES,
                currency="EUR",
                tracking_prefix="XY",
                tracking_url=self.tracking_url,
                clock=self._clock,
            )
            return

        self._http = CarrierHTTPClient(
            self.carrier_id,
            config.base_url or CHRONOPOST_URL,
            timeout=config.timeout_seconds,
            transport=transport,
            default_headers={"Content-Type": soap.SOAP_CONTENT_TYPE},
        )
        self._credentials = StaticCredentialProvider(
            self.carrier_id,
            config.account_number or "",
            config.secret("api_secret"),
        )

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.CHRONOPOST

    @property
    def carrier_id(self) -> str:
        return self._config.resolved_carrier_id

    @property
    def carrier_name(self) -> str:
        return "Chronopost"

    def tracking_url(self, tracking_number: str) -> str:
        return f"https://www.chronopost.fr/tracking-no-cms/suivi-page?listeNumerosLT={tracking_number}"

    async def close(self) -> None:
        if self._http:
            await self._http.close()

    # ==================== SOAP plumbing ====================

    async def _call(self, path: str, namespace: str, operation: str, fields: Dict[str, Any]) -> Any:
        """POST one envelope and return the flattened ``<return>`` element."""
        response = await self._http.send(
            "POST",
            path,
            content=soap.build_envelope(namespace, operation, fields),
            headers={"SOAPAction": ""},
        )

        if response.status_code >= 400:
            # CXF sends Faults as XML with HTTP 500; parse_envelope raises for those
            if b"Fault" in response.content:
                soap.parse_envelope(response.content, self.carrier_id)
            self._http.raise_for_status(response, path)

        op_response = soap.parse_envelope(response.content, self.carrier_id)
        result = next(
            (child for child in op_response if soap.local_name(child.tag) == "return"),
            None,
        )
        if result is None:
            raise ParseFailure(
                f"{self.carrier_id}: {operation} response has no return element",
                carrier_code=self.carrier_id,
            )
        return soap.element_to_data(result)

    def _check_error(self, error_code: str, error_message: str, operation: str) -> None:
        code = (error_code or "").strip()
        if code == ERROR_OK:
            return

        message = f"{self.carrier_id}: {operation} error {code}: {error_message or 'no message'}"
        details = {"error_code": code, "operation": operation}
        if code == ERROR_AUTHENTICATION:
            raise AuthenticationError(message, carrier_code=self.carrier_id, details=details)
        if code == ERROR_SYSTEM:
            raise TransportFailure(message, carrier_code=self.carrier_id, details=details)
        if operation == "calculateProducts":
            raise RateUnavailableError(message, carrier_code=self.carrier_id, details=details)
        raise TransportFailure(message, carrier_code=self.carrier_id, details=details)

    async def _account(self):
        credential = await self._credentials.get_token()
        return credential.key, credential.secret

    # ==================== Quickcost ====================

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        if self._sandbox:
            return await self._sandbox.quote_rates(origin, destination, parcel)

        products = await self._calculate_products(origin, destination, parcel)
        quotes = []
        for product in products:
            name, transit_days = CHRONOPOST_PRODUCTS.get(
                product.product_code, (f"Chronopost {product.product_code}", None)
            )
            quotes.append(RateQuote(
                carrier_id=self.carrier_id,
                service_code=product.product_code,
                service_name=name,
                cost=parse_money(product.amount_ttc or product.amount, "EUR", self.carrier_id),
                transit_days=transit_days,
            ))

        logger.info(f"Got {len(quotes)} rates from {self.carrier_id}")
        return require_quotes(quotes, self.carrier_id)

    async def _calculate_products(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[ChronopostProduct]:
        account, password = await self._account()
        data = await self._call(QUICKCOST_PATH, QUICKCOST_NS, "calculateProducts", {
            "accountNumber": account,
            "password": password,
            "depCountryCode": origin.country_code,
            "depZipCode": origin.postal_code,
            "arrCountryCode": destination.country_code,
            "arrZipCode": destination.postal_code,
            "arrCity": destination.city,
            "type": "M",  # Parcel, not document
            "weight": f"{parcel.weight_kg:.2f}",
        })
        result = validate_schema(ChronopostQuickcostResult, data, self.carrier_id, "quickcost")
        self._check_error(result.error_code, result.error_message, "calculateProducts")
        return result.product_list

    # ==================== Shipping ====================

    def _party_fields(self, party: ShippingParty, prefix: str) -> Dict[str, Any]:
        lines = list(party.street_lines) or [""]
        return {
            f"{prefix}Civility": "M",
            f"{prefix}Name": (party.company or party.name)[:100],
            f"{prefix}Name2": party.name[:100],
            f"{prefix}Adress1": lines[0][:38],
            f"{prefix}Adress2": lines[1][:38] if len(lines) > 1 else "",
            f"{prefix}ZipCode": party.postal_code,
            f"{prefix}City": party.city,
            f"{prefix}CountryCode": party.country_code,
            f"{prefix}ContactName": party.name,
            f"{prefix}Email": party.email or "",
            f"{prefix}Phone": party.phone or "",
            f"{prefix}PreAlert": 0,
        }

    async def create_label(self, request: LabelRequest) -> LabelResult:
        if self._sandbox:
            return await self._sandbox.create_label(request)

        # Shipping does not return a price; take it from Quickcost
        products = await self._calculate_products(request.origin, request.destination, request.parcel)
        product = next((p for p in products if p.product_code == request.service_code), None)
        if product is None:
            raise RateUnavailableError(
                f"{self.carrier_id}: product {request.service_code} not offered for this route",
                carrier_code=self.carrier_id,
            )
        cost = parse_money(product.amount_ttc or product.amount, "EUR", self.carrier_id)

        account, password = await self._account()
        now = self._clock()
        dims = request.parcel.dimensions_cm
        skybill = {
            "productCode": request.service_code,
            "service": "0",
            "objectType": "MAR",
            "shipDate": now.strftime("%Y-%m-%dT%H:%M:%S"),
            "shipHour": now.hour,
            "weight": f"{request.parcel.weight_kg:.2f}",
            "weightUnit": "KGM",
            "length": f"{dims.length:.0f}" if dims else None,
            "width": f"{dims.width:.0f}" if dims else None,
            "height": f"{dims.height:.0f}" if dims else None,
            "content1": (request.parcel.description or "")[:45],
        }

        data = await self._call(SHIPPING_PATH, SHIPPING_NS, "shippingMultiParcelV4", {
            "headerValue": {
                "accountNumber": account,
                "idEmit": "CHRFR",
                "subAccount": "",
            },
            "shipperValue": self._party_fields(request.origin, "shipper"),
            "customerValue": self._party_fields(request.origin, "customer"),
            "recipientValue": self._party_fields(request.destination, "recipient"),
            "refValue": {
                "shipperRef": (request.reference or "")[:35],
                "recipientRef": (request.reference or "")[:35],
            },
            "skybillValue": skybill,
            "skybillParamsValue": {"mode": "PDF", "withReservation": 0},
            "password": password,
            "modeRetour": 1,
            "numberOfParcel": 1,
            "version": "2.0",
            "multiParcel": "N",
        })
        result = validate_schema(ChronopostShippingResult, data, self.carrier_id, "shipping")
        self._check_error(result.error_code, result.error_message, "shippingMultiParcelV4")

        if not result.result_multi_parcel_value:
            raise ParseFailure(
                f"{self.carrier_id}: shipping response has no parcel result",
                carrier_code=self.carrier_id,
            )
        parcel_result = result.result_multi_parcel_value[0]
        tracking_number = require_field(parcel_result.skybill_number, self.carrier_id, "skybillNumber")
        label_data = require_field(parcel_result.pdf_etiquette, self.carrier_id, "pdfEtiquette")

        logger.info(f"{self.carrier_id} label created: {tracking_number}")
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=parcel_result.reservation_number or tracking_number,
            tracking_number=tracking_number,
            cost=cost,
            label_data=label_data,
            tracking_url=self.tracking_url(tracking_number),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        if self._sandbox:
            return ordered_events(await self._sandbox.track_shipment(tracking_number))

        data = await self._call(TRACKING_PATH, TRACKING_NS, "trackSkybillV2", {
            "language": "fr_FR",
            "skybillNumber": tracking_number,
        })
        result = validate_schema(ChronopostTrackingResult, data, self.carrier_id, "tracking")
        self._check_error(result.error_code, result.error_message, "trackSkybillV2")

        if result.list_event_info_comp is None:
            return []

        events = [
            TrackingEvent(
                timestamp=parse_timestamp(event.event_date, self.carrier_id),
                description=event.event_label,
                status=map_status(CHRONOPOST_STATUS_MAP, event.code, self.carrier_id),
                location=event.office_label,
                carrier_status_code=event.code,
            )
            for event in result.list_event_info_comp.events
        ]
        return ordered_events(events)
