"""
Carrier Registry and Factory

- register_carrier() maps a CarrierCode to its adapter class
- CarrierFactory builds one adapter instance per CarrierConfig
- Adapter instances are owned by the gateway that created them; credential
  caches live inside each instance, never in this registry
"""
from datetime import datetime
from typing import Callable, Dict, List, Optional, Type
import logging

import httpx

from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.modules.shipping.carriers.base import BaseCarrier

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier(CarrierCode.UPS)
        class UPSCarrier(BaseCarrier):
            ...
    """
    def decorator(cls: Type[BaseCarrier]):
        _CARRIER_REGISTRY[carrier_code] = cls
        logger.debug(f"Registered carrier: {carrier_code.value} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """Factory for creating carrier adapter instances."""

    @classmethod
    def create(
        cls,
        config: CarrierConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> BaseCarrier:
        """
        Build the adapter for ``config``.

        Args:
            config: Carrier configuration (credentials, test mode, URLs)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Optional UTC clock used for token expiry and sandbox dates

        Raises:
            KeyError if no implementation is registered for the carrier code
        """
        carrier_cls = _CARRIER_REGISTRY.get(config.carrier_code)
        if not carrier_cls:
            raise KeyError(f"No implementation registered for carrier: {config.carrier_code.value}")
        return carrier_cls(config, transport=transport, clock=clock)

    @classmethod
    def get_registered_carriers(cls) -> List[CarrierCode]:
        """Get list of all registered carrier codes."""
        return list(_CARRIER_REGISTRY.keys())


def create_carrier(
    config: CarrierConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BaseCarrier:
    """Convenience function, equivalent to CarrierFactory.create()."""
    return CarrierFactory.create(config, transport=transport, clock=clock)


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from carrier_gateway.modules.shipping.carriers.ups import UPSCarrier  # noqa: E402, F401
from carrier_gateway.modules.shipping.carriers.fedex import FedExCarrier  # noqa: E402, F401
from carrier_gateway.modules.shipping.carriers.usps import USPSCarrier  # noqa: E402, F401
from carrier_gateway.modules.shipping.carriers.dhl import DHLExpressCarrier  # noqa: E402, F401
from carrier_gateway.modules.shipping.carriers.chronopost import ChronopostCarrier  # noqa: E402, F401
