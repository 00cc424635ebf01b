"""
Shipping Module

- Unit normalization, credential providers and SOAP helpers
- BaseCarrier interface for all carrier implementations
- CarrierFactory for building adapters from CarrierConfig
"""
from carrier_gateway.modules.shipping.carriers import CarrierFactory, create_carrier
from carrier_gateway.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "create_carrier",
    "BaseCarrier",
]
