"""
Base Carrier Interface

All carriers implement the same three operations:
- quote_rates: every service the carrier offers for a route/parcel
- create_label: one shipment + label, exactly one attempt per call
- track_shipment: events ordered oldest to newest

The interface carries no state. Each adapter owns its own credential
provider, HTTP client and (in test mode) sandbox responder; transport logic
lives entirely inside the adapter module.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from carrier_gateway.core.exceptions import InvalidUnitError, ParseFailure, RateUnavailableError
from carrier_gateway.models.carrier import CarrierCode
from carrier_gateway.models.shipment import (
    Dimensions,
    Money,
    TrackingStatus,
    Weight,
    iso_or_none,
)
from carrier_gateway.modules.shipping import units

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass(frozen=True)
class ShippingParty:
    """Origin or destination. Value object, no identity beyond its fields."""
    name: str
    postal_code: str
    country_code: str
    city: str = ""
    street_lines: Tuple[str, ...] = ()
    region: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self):
        country = (self.country_code or "").strip().upper()
        if len(country) != 2 or not country.isalpha():
            raise ValueError(f"country_code must be ISO 3166-1 alpha-2, got {self.country_code!r}")
        object.__setattr__(self, "country_code", country)
        object.__setattr__(self, "street_lines", tuple(self.street_lines))

    @property
    def first_line(self) -> str:
        return self.street_lines[0] if self.street_lines else ""


@dataclass(frozen=True)
class ParcelSpec:
    """
    One parcel. Weight must be > 0; when dimensions are given all three
    sides must be > 0. Unit tags are checked on construction.
    """
    weight: Weight
    dimensions: Optional[Dimensions] = None
    declared_value: Optional[Money] = None
    description: Optional[str] = None

    def __post_init__(self):
        # Raise InvalidUnitError early, before any carrier is contacted
        units.to_kilograms(self.weight)
        if self.dimensions is not None:
            units.to_centimeters(self.dimensions)

    @property
    def weight_kg(self) -> float:
        return units.to_kilograms(self.weight)

    @property
    def weight_lb(self) -> float:
        return units.to_pounds(self.weight)

    @property
    def dimensions_cm(self) -> Optional[Dimensions]:
        return units.to_centimeters(self.dimensions) if self.dimensions else None

    @property
    def dimensions_in(self) -> Optional[Dimensions]:
        return units.to_inches(self.dimensions) if self.dimensions else None


@dataclass(frozen=True)
class RateQuote:
    """Shipping rate quote in integer minor units."""
    carrier_id: str
    service_code: str
    service_name: str
    cost: Money
    estimated_delivery: Optional[datetime] = None
    transit_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_id": self.carrier_id,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "cost": self.cost.to_dict(),
            "estimated_delivery": iso_or_none(self.estimated_delivery),
            "transit_days": self.transit_days,
        }


@dataclass(frozen=True)
class LabelRequest:
    """Request to create a shipment and label."""
    origin: ShippingParty
    destination: ShippingParty
    parcel: ParcelSpec
    service_code: str
    reference: Optional[str] = None


@dataclass(frozen=True)
class LabelResult:
    """
    Created shipment. Never partial: a tracking number and a label artifact
    (URL and/or base64 document) are always present.
    """
    carrier_id: str
    label_id: str
    tracking_number: str
    cost: Optional[Money] = None
    estimated_delivery: Optional[datetime] = None
    label_url: Optional[str] = None
    label_data: Optional[str] = None  # Base64 encoded
    label_format: str = "PDF"
    tracking_url: Optional[str] = None

    def __post_init__(self):
        if not self.tracking_number:
            raise ValueError("LabelResult requires a tracking number")
        if not (self.label_url or self.label_data):
            raise ValueError("LabelResult requires a label URL or label document")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_id": self.carrier_id,
            "label_id": self.label_id,
            "tracking_number": self.tracking_number,
            "cost": self.cost.to_dict() if self.cost else None,
            "estimated_delivery": iso_or_none(self.estimated_delivery),
            "label_url": self.label_url,
            "label_data": self.label_data,
            "label_format": self.label_format,
            "tracking_url": self.tracking_url,
        }


@dataclass(frozen=True)
class TrackingEvent:
    """A single tracking event."""
    timestamp: datetime
    description: str
    status: TrackingStatus
    location: str = ""
    carrier_status_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "location": self.location,
            "description": self.description,
            "status": self.status.value,
            "carrier_status_code": self.carrier_status_code,
        }


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Capability interface every carrier adapter implements.

    Errors leaving any method are always members of the gateway taxonomy
    (AuthenticationError, InvalidUnitError, TransportFailure, ParseFailure,
    RateUnavailableError).
    """

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return the carrier code enum value."""
        pass

    @property
    @abstractmethod
    def carrier_id(self) -> str:
        """Registry key for this adapter instance."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""
        pass

    @abstractmethod
    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        """
        Get every service the carrier offers for this parcel.

        Raises:
            RateUnavailableError: no valid quote could be produced
        """
        pass

    @abstractmethod
    async def create_label(self, request: LabelRequest) -> LabelResult:
        """Create a shipment and label. Single attempt, never retried here."""
        pass

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        """
        Get tracking events, oldest first.

        Returns an empty list when the carrier has no events yet.
        """
        pass

    @abstractmethod
    def tracking_url(self, tracking_number: str) -> str:
        """Public tracking page for a shipment."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


# =============================================================================
# Helpers shared by adapters (functions, not base-class state)
# =============================================================================

def validate_schema(
    schema: Type[SchemaT],
    data: Any,
    carrier_id: str,
    context: str,
) -> SchemaT:
    """Validate a decoded carrier payload, mapping failures to ParseFailure."""
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        logger.error(f"{carrier_id} {context} response failed validation: {e.error_count()} error(s)")
        raise ParseFailure(
            f"{carrier_id}: unexpected {context} response shape",
            carrier_code=carrier_id,
            details={"errors": e.errors(include_url=False, include_input=False)},
        )


def parse_timestamp(value: str, carrier_id: str, assume_tz=timezone.utc) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as ``assume_tz``."""
    if not isinstance(value, str):
        raise ParseFailure(
            f"{carrier_id}: timestamp must be a string, got {type(value).__name__}",
            carrier_code=carrier_id,
        )
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ParseFailure(
            f"{carrier_id}: invalid timestamp {value!r}",
            carrier_code=carrier_id,
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=assume_tz)
    return parsed


def map_status(
    status_map: Mapping[str, TrackingStatus],
    carrier_status: Optional[str],
    carrier_id: str,
) -> TrackingStatus:
    """Map a carrier status code to the shared enumeration (unknown if unmapped)."""
    code = (carrier_status or "").upper().strip()
    if code in status_map:
        return status_map[code]
    logger.warning(f"Unknown {carrier_id} status: {carrier_status}, defaulting to UNKNOWN")
    return TrackingStatus.UNKNOWN


def ordered_events(events: Iterable[TrackingEvent]) -> List[TrackingEvent]:
    """Oldest first; stable for equal timestamps."""
    return sorted(events, key=lambda e: e.timestamp)


def require_quotes(quotes: List[RateQuote], carrier_id: str) -> List[RateQuote]:
    if not quotes:
        raise RateUnavailableError(
            f"{carrier_id}: no service available for this route and parcel",
            carrier_code=carrier_id,
        )
    return quotes


def require_field(value: Optional[str], carrier_id: str, name: str) -> str:
    """A field the domain model cannot do without (e.g. tracking number)."""
    if not value:
        raise ParseFailure(
            f"{carrier_id}: response is missing {name}",
            carrier_code=carrier_id,
            details={"field": name},
        )
    return value


def join_location(*parts: Optional[str]) -> str:
    return ", ".join(p for p in parts if p)


def ensure_list(value: Any) -> Any:
    """Pydantic before-validator: carriers send one item as an object, many as an array."""
    if value is None or value == "":
        return []
    if isinstance(value, dict):
        return [value]
    return value


def parse_money(amount: Any, currency: Optional[str], carrier_id: str) -> Money:
    """Carrier amount (major units) -> Money; bad values are the carrier's fault."""
    try:
        return units.to_minor_units(amount, currency or "")
    except InvalidUnitError as e:
        raise ParseFailure(
            f"{carrier_id}: invalid amount {amount!r} {currency or ''}".rstrip(),
            carrier_code=carrier_id,
            details={"cause": e.message},
        )
