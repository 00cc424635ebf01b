"""
Shipment value types shared by every carrier.

Measurements cross the gateway boundary as ``{value, unit}`` and money as
``{amount_minor_units, currency}``; conversion lives in
``carrier_gateway.modules.shipping.units``.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class TrackingStatus(str, enum.Enum):
    """Normalized tracking status shared by all carriers."""
    CREATED = "created"  # Label/manifest data received
    PICKED_UP = "picked_up"  # Carrier has package
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"  # Delivery issue
    UNKNOWN = "unknown"


class CredentialKind(str, enum.Enum):
    STATIC = "static"
    OAUTH2 = "oauth2"


# Closed set of unit tags accepted by the normalizer
WEIGHT_UNITS = ("kg", "lb")
DIMENSION_UNITS = ("cm", "mm", "in")


@dataclass(frozen=True)
class Weight:
    """Weight as given by the caller (kg or lb)."""
    value: float
    unit: str = "kg"

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class Dimensions:
    """Box dimensions, all three sides in the same unit (cm, mm or in)."""
    length: float
    width: float
    height: float
    unit: str = "cm"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "width": self.width,
            "height": self.height,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class Money:
    """Money as an integer count of minor currency units plus ISO-4217 code."""
    amount_minor_units: int
    currency: str

    def __post_init__(self):
        if not isinstance(self.amount_minor_units, int) or isinstance(self.amount_minor_units, bool):
            raise TypeError("Money.amount_minor_units must be an int")
        if self.amount_minor_units < 0:
            raise ValueError("Money.amount_minor_units must be >= 0")
        if not self.currency:
            raise ValueError("Money.currency is required")

    def to_dict(self) -> Dict[str, Any]:
        return {"amount_minor_units": self.amount_minor_units, "currency": self.currency}


def iso_or_none(value) -> Optional[str]:
    """ISO-8601 rendering used by the ``to_dict`` helpers."""
    return value.isoformat() if value is not None else None
