"""
Multi-Carrier Shipping Service

Gateway facade over the registered carrier adapters:
- Fans rate requests out to every requested carrier concurrently
- Best-effort aggregation: one carrier failing is logged and skipped; only
  total failure raises AllCarriersUnavailableError
- Deterministic ordering: grouped by currency, then cost, transit days
  and carrier id. Costs in different currencies are never compared.
- Label creation and tracking pass straight through to one adapter

Usage:
    async with MultiCarrierService.from_settings() as gateway:
        quotes = await gateway.quote_all(origin, destination, parcel)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from carrier_gateway.core.config import Settings, carrier_configs_from_settings
from carrier_gateway.core.exceptions import (
    AllCarriersUnavailableError,
    CarrierNotRegisteredError,
    ShippingGatewayError,
)
from carrier_gateway.core.http_client import RetryPolicy, retry_call
from carrier_gateway.models.carrier import CarrierConfig
from carrier_gateway.modules.shipping.carriers import CarrierFactory
from carrier_gateway.modules.shipping.carriers.base import (
    BaseCarrier,
    LabelRequest,
    LabelResult,
    ParcelSpec,
    RateQuote,
    ShippingParty,
    TrackingEvent,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierFailure:
    """One carrier's error, downgraded during rate shopping."""
    carrier_code: str
    error: ShippingGatewayError

    def to_dict(self) -> Dict[str, Any]:
        return {"carrier_code": self.carrier_code, "error": self.error.to_dict()}


@dataclass
class RateShoppingResult:
    """Sorted quotes plus the carriers that could not quote."""
    quotes: List[RateQuote] = field(default_factory=list)
    failures: List[CarrierFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quotes": [q.to_dict() for q in self.quotes],
            "failures": [f.to_dict() for f in self.failures],
        }


def quote_sort_key(quote: RateQuote):
    """
    Grouped by currency code, then cheapest first, then fastest (unknown
    transit last), then carrier id. There is no FX conversion.
    """
    transit = quote.transit_days if quote.transit_days is not None else float("inf")
    return (quote.cost.currency, quote.cost.amount_minor_units, transit, quote.carrier_id, quote.service_code)


class MultiCarrierService:
    """
    Service for multi-carrier shipping operations.

    Owns its adapters exclusively; close() (or leaving ``async with``)
    releases their HTTP clients.
    """

    def __init__(self, carriers: Optional[Iterable[BaseCarrier]] = None):
        self._carriers: Dict[str, BaseCarrier] = {}
        for carrier in carriers or []:
            self.register(carrier)

    @classmethod
    def from_configs(
        cls,
        configs: Iterable[CarrierConfig],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MultiCarrierService":
        """Build one adapter per config through the carrier factory."""
        return cls(CarrierFactory.create(config, transport=transport) for config in configs)

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "MultiCarrierService":
        """Build the gateway for every carrier enabled in settings."""
        return cls.from_configs(carrier_configs_from_settings(s))

    def register(self, carrier: BaseCarrier) -> None:
        if carrier.carrier_id in self._carriers:
            raise ValueError(f"Carrier already registered: {carrier.carrier_id}")
        self._carriers[carrier.carrier_id] = carrier
        logger.debug(f"Gateway registered carrier {carrier.carrier_id} ({carrier.carrier_name})")

    @property
    def carrier_ids(self) -> List[str]:
        return sorted(self._carriers)

    def get_carrier(self, carrier_id: str) -> BaseCarrier:
        carrier = self._carriers.get(carrier_id)
        if carrier is None:
            raise CarrierNotRegisteredError(
                f"Carrier not registered: {carrier_id}",
                carrier_code=carrier_id,
                details={"registered": self.carrier_ids},
            )
        return carrier

    def _select(self, carrier_ids: Optional[Sequence[str]]) -> List[BaseCarrier]:
        if not self._carriers:
            raise CarrierNotRegisteredError("No carrier is registered with the gateway", details={"registered": []})
        if not carrier_ids:
            return [self._carriers[cid] for cid in self.carrier_ids]
        # Unknown ids fail before any carrier is contacted
        return [self.get_carrier(cid) for cid in dict.fromkeys(carrier_ids)]

    # ==================== Rate shopping ====================

    async def _quote_one(
        self,
        carrier: BaseCarrier,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
        retry: Optional[RetryPolicy],
    ) -> List[RateQuote]:
        return await retry_call(
            lambda: carrier.quote_rates(origin, destination, parcel),
            retry,
            label=f"{carrier.carrier_id} quote_rates",
        )

    async def shop_rates(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
        carrier_ids: Optional[Sequence[str]] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> RateShoppingResult:
        """
        Get quotes from every requested carrier (all registered if None or empty).

        Returns:
            RateShoppingResult with quotes sorted by cost and one failure
            record per carrier that could not quote

        Raises:
            CarrierNotRegisteredError: an id in carrier_ids is unknown, or no
                carrier is registered at all
            AllCarriersUnavailableError: no requested carrier produced a quote
        """
        carriers = self._select(carrier_ids)
        logger.info(
            f"Rate shopping {origin.country_code} -> {destination.country_code} "
            f"across {len(carriers)} carrier(s)"
        )

        outcomes = await asyncio.gather(
            *(self._quote_one(c, origin, destination, parcel, retry) for c in carriers),
            return_exceptions=True,
        )

        result = RateShoppingResult()
        errors: Dict[str, ShippingGatewayError] = {}
        for carrier, outcome in zip(carriers, outcomes):
            if isinstance(outcome, ShippingGatewayError):
                logger.warning(
                    f"{carrier.carrier_id} unavailable for rate shopping "
                    f"({outcome.failure_class}): {outcome.message}"
                )
                errors[carrier.carrier_id] = outcome
                result.failures.append(CarrierFailure(carrier.carrier_id, outcome))
            elif isinstance(outcome, BaseException):
                # Not part of the gateway taxonomy: a bug, not a carrier outage
                raise outcome
            else:
                result.quotes.extend(outcome)

        if not result.quotes:
            logger.error(f"All {len(carriers)} carrier(s) failed to quote")
            raise AllCarriersUnavailableError(errors)

        result.quotes.sort(key=quote_sort_key)
        logger.info(
            f"Got {len(result.quotes)} quote(s), {len(result.failures)} carrier failure(s)"
        )
        return result

    async def quote_all(
        self,
        origin: ShippingParty,
        destination: ShippingParty,
        parcel: ParcelSpec,
        carrier_ids: Optional[Sequence[str]] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> List[RateQuote]:
        """
        Sorted union of every successful carrier's quotes.

        With ``timeout`` the whole fan-out is cancelled when it elapses and
        asyncio.TimeoutError is raised; no partial result is returned.
        """
        shopping = self.shop_rates(origin, destination, parcel, carrier_ids=carrier_ids, retry=retry)
        if timeout is None:
            result = await shopping
        else:
            result = await asyncio.wait_for(shopping, timeout)
        return result.quotes

    # ==================== Single-carrier pass-through ====================

    async def create_label(self, carrier_id: str, request: LabelRequest) -> LabelResult:
        """Create a label with one carrier. Exactly one attempt, errors propagate."""
        carrier = self.get_carrier(carrier_id)
        logger.info(f"Creating {carrier_id} label, service {request.service_code}")
        return await carrier.create_label(request)

    async def track_shipment(
        self,
        carrier_id: str,
        tracking_number: str,
        retry: Optional[RetryPolicy] = None,
    ) -> List[TrackingEvent]:
        carrier = self.get_carrier(carrier_id)
        return await retry_call(
            lambda: carrier.track_shipment(tracking_number),
            retry,
            label=f"{carrier_id} track_shipment",
        )

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        for carrier in self._carriers.values():
            await carrier.close()

    async def __aenter__(self) -> "MultiCarrierService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
