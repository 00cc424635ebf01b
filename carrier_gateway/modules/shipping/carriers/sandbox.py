"""
Test/Sandbox Responder

Deterministic stand-in used by an adapter constructed with test_mode=True.
No credentials are requested and no network call is made.

- Quotes: a fixed set of service tiers per carrier; cost depends only on the
  tier and the parcel weight, delivery date is now + transit days
- Labels: tracking number derived from the request, cost equal to the quote
  for the chosen tier, unknown tier -> RateUnavailableError
- Tracking: a number carrying this responder's check digits (every label it
  issues does) shows a single "created" event; any other number gets 0-4
  events picked from a hash of the number. No per-label state is kept.
"""
import hashlib
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_UP
from typing import Callable, List, Optional, Sequence

from carrier_gateway.core.exceptions import RateUnavailableError
from carrier_gateway.models.shipment import TrackingStatus
from carrier_gateway.modules.shipping import units
from carrier_gateway.modules.shipping.carriers.base import (
    LabelRequest,
    LabelResult,
    ParcelSpec,
    RateQuote,
    ShippingParty,
    TrackingEvent,
)

logger = logging.getLogger(__name__)

# Tracking number body: 14 hex digits from the request fingerprint + 2 check digits
TRACKING_BODY_LENGTH = 14
TRACKING_CHECK_LENGTH = 2

SANDBOX_LABEL_URL = "https://sandbox.invalid/labels/{tracking_number}.pdf"

# (hours before now, status, description, location)
_SANDBOX_JOURNEY = (
    (72, TrackingStatus.CREATED, "Shipment information received", "Dakar, SN"),
    (48, TrackingStatus.PICKED_UP, "Picked up by carrier", "Dakar, SN"),
    (24, TrackingStatus.IN_TRANSIT, "Departed facility", "Paris, FR"),
    (2, TrackingStatus.OUT_FOR_DELIVERY, "Out for delivery", "Paris, FR"),
)


@dataclass(frozen=True)
class SandboxService:
    """One canned service tier (amounts in major units)."""
    code: str
    name: str
    base_amount: Decimal
    per_kg_amount: Decimal
    transit_days: int


class SandboxResponder:
    def __init__(
        self,
        carrier_id: str,
        services: Sequence[SandboxService],
        currency: str,
        tracking_prefix: str,
        tracking_url: Callable[[str], str],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.carrier_id = carrier_id
        self.services = list(services)
        self.currency = units.normalize_currency(currency)
        self.tracking_prefix = tracking_prefix
        self._tracking_url = tracking_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sequence = itertools.count(1)

    def _price(self, service: SandboxService, parcel: ParcelSpec):
        # Bill per started half kilogram
        half_kilos = (Decimal(repr(parcel.weight_kg)) * 2).to_integral_value(rounding=ROUND_UP)
        amount = service.base_amount + service.per_kg_amount * half_kilos / 2
        return units.to_minor_units(amount, self.currency)

    def _quote(self, service: SandboxService, parcel: ParcelSpec) -> RateQuote:
        return RateQuote(
            carrier_id=self.carrier_id,
            service_code=service.code,
            service_name=service.name,
            cost=self._price(service, parcel),
            estimated_delivery=self._clock() + timedelta(days=service.transit_days),
            transit_days=service.transit_days,
        )

    async def quote_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
    ) -> List[RateQuote]:
        logger.debug(f"{self.carrier_id} sandbox quote {origin.country_code} -> {destination.country_code}")
        return [self._quote(service, parcel) for service in self.services]

    async def create_label(self, request: LabelRequest) -> LabelResult:
        service = next((s for s in self.services if s.code == request.service_code), None)
        if service is None:
            raise RateUnavailableError(
                f"{self.carrier_id}: sandbox has no service {request.service_code!r}",
                carrier_code=self.carrier_id,
            )

        sequence = next(self._sequence)
        fingerprint = "|".join([
            self.carrier_id,
            request.service_code,
            request.reference or "",
            request.destination.postal_code,
            request.destination.country_code,
            f"{request.parcel.weight_kg:.3f}",
            str(sequence),
        ])
        body = hashlib.sha256(fingerprint.encode()).hexdigest().upper()[:TRACKING_BODY_LENGTH]
        tracking_number = f"{self.tracking_prefix}{body}{self._check_digits(body)}"

        quote = self._quote(service, request.parcel)
        return LabelResult(
            carrier_id=self.carrier_id,
            label_id=f"{self.carrier_id.upper()}-SBX-{sequence:06d}",
            tracking_number=tracking_number,
            cost=quote.cost,
            estimated_delivery=quote.estimated_delivery,
            label_url=SANDBOX_LABEL_URL.format(tracking_number=tracking_number),
            label_format="PDF",
            tracking_url=self._tracking_url(tracking_number),
        )

    def _check_digits(self, body: str) -> str:
        return hashlib.sha256(f"{self.carrier_id}|{body}".encode()).hexdigest().upper()[:TRACKING_CHECK_LENGTH]

    def issued_here(self, tracking_number: str) -> bool:
        """True when the number has the shape and check digits of a label from this responder."""
        if not tracking_number.startswith(self.tracking_prefix):
            return False
        rest = tracking_number[len(self.tracking_prefix):]
        if len(rest) != TRACKING_BODY_LENGTH + TRACKING_CHECK_LENGTH:
            return False
        body, check = rest[:TRACKING_BODY_LENGTH], rest[TRACKING_BODY_LENGTH:]
        return check == self._check_digits(body)

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:
        now = self._clock()
        if self.issued_here(tracking_number):
            stages = 1
        else:
            digest = hashlib.sha256(tracking_number.encode()).digest()
            stages = digest[0] % (len(_SANDBOX_JOURNEY) + 1)

        return [
            TrackingEvent(
                timestamp=now - timedelta(hours=hours_ago),
                description=description,
                status=status,
                location=location,
                carrier_status_code=f"SBX-{status.value.upper()}",
            )
            for hours_ago, status, description, location in _SANDBOX_JOURNEY[:stages]
        ]


def sandbox_services(*tiers) -> List[SandboxService]:
    """Build tiers from (code, name, base, per_kg, days) tuples."""
    return [
        SandboxService(code, name, Decimal(base), Decimal(per_kg), days)
        for code, name, base, per_kg, days in tiers
    ]
