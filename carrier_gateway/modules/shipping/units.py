"""
Unit Normalizer

Pure conversions between caller units and carrier units:
- Weight: kg <-> lb (grams for carriers that want them)
- Dimensions: cm <-> mm <-> in
- Money: decimal amounts <-> integer minor units (exact, ISO-4217 exponents)

No I/O, no state. Unknown unit tags raise InvalidUnitError before any
network call is made.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from carrier_gateway.core.exceptions import InvalidUnitError
from carrier_gateway.models.shipment import (
    DIMENSION_UNITS,
    WEIGHT_UNITS,
    Dimensions,
    Money,
    Weight,
)

# Exact definitions (international yard and pound agreement)
KG_PER_LB = 0.45359237
CM_PER_IN = 2.54
CM_PER_MM = 0.1

_TO_CM = {"cm": 1.0, "mm": CM_PER_MM, "in": CM_PER_IN}
_TO_KG = {"kg": 1.0, "lb": KG_PER_LB}

# ISO-4217 currencies whose minor unit is not 1/100
CURRENCY_EXPONENTS = {
    # Zero-decimal
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    # Three-decimal
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}
DEFAULT_CURRENCY_EXPONENT = 2

AmountLike = Union[Decimal, str, int, float]


def normalize_unit(unit: str, allowed: tuple) -> str:
    """Lower-case a unit tag and check it against the closed set."""
    tag = (unit or "").strip().lower()
    if tag not in allowed:
        raise InvalidUnitError(
            f"Unsupported unit {unit!r}, expected one of {', '.join(allowed)}",
            unit=unit,
        )
    return tag


def _positive(value: float, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidUnitError(f"{what} must be a number, got {value!r}")
    if number <= 0:
        raise InvalidUnitError(f"{what} must be greater than 0, got {value!r}")
    return number


# ==================== Weight ====================

def to_kilograms(weight: Weight) -> float:
    unit = normalize_unit(weight.unit, WEIGHT_UNITS)
    return _positive(weight.value, "Weight") * _TO_KG[unit]


def to_pounds(weight: Weight) -> float:
    return to_kilograms(weight) / KG_PER_LB


def to_grams(weight: Weight) -> int:
    """Whole grams, rounded half-up (carriers that bill by the gram)."""
    grams = Decimal(repr(to_kilograms(weight))) * 1000
    return int(grams.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_kilograms(kilograms: float, unit: str = "kg") -> Weight:
    """Inverse of to_kilograms: express ``kilograms`` in ``unit``."""
    tag = normalize_unit(unit, WEIGHT_UNITS)
    return Weight(value=_positive(kilograms, "Weight") / _TO_KG[tag], unit=tag)


def convert_weight(weight: Weight, unit: str) -> Weight:
    return from_kilograms(to_kilograms(weight), unit)


# ==================== Dimensions ====================

def to_centimeters(dimensions: Dimensions) -> Dimensions:
    unit = normalize_unit(dimensions.unit, DIMENSION_UNITS)
    factor = _TO_CM[unit]
    return Dimensions(
        length=_positive(dimensions.length, "Length") * factor,
        width=_positive(dimensions.width, "Width") * factor,
        height=_positive(dimensions.height, "Height") * factor,
        unit="cm",
    )


def from_centimeters(dimensions: Dimensions, unit: str = "cm") -> Dimensions:
    """Inverse of to_centimeters: ``dimensions`` must be in cm."""
    source = normalize_unit(dimensions.unit, DIMENSION_UNITS)
    if source != "cm":
        dimensions = to_centimeters(dimensions)
    tag = normalize_unit(unit, DIMENSION_UNITS)
    factor = _TO_CM[tag]
    return Dimensions(
        length=_positive(dimensions.length, "Length") / factor,
        width=_positive(dimensions.width, "Width") / factor,
        height=_positive(dimensions.height, "Height") / factor,
        unit=tag,
    )


def to_inches(dimensions: Dimensions) -> Dimensions:
    return from_centimeters(to_centimeters(dimensions), "in")


def convert_dimensions(dimensions: Dimensions, unit: str) -> Dimensions:
    return from_centimeters(to_centimeters(dimensions), unit)


# ==================== Money ====================

def currency_exponent(currency: str) -> int:
    code = normalize_currency(currency)
    return CURRENCY_EXPONENTS.get(code, DEFAULT_CURRENCY_EXPONENT)


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidUnitError(f"Invalid ISO-4217 currency code {currency!r}", unit=currency)
    return code


def to_minor_units(amount: AmountLike, currency: str) -> Money:
    """
    Convert a major-unit amount (e.g. "12.34" EUR) into Money (1234 EUR cents).

    Floats go through repr() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. Rounds half-up to the currency's minor unit.
    """
    code = normalize_currency(currency)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(
            repr(amount) if isinstance(amount, float) else str(amount).strip()
        )
    except InvalidOperation:
        raise InvalidUnitError(f"Invalid money amount {amount!r}", unit=code)
    if not value.is_finite():
        raise InvalidUnitError(f"Invalid money amount {amount!r}", unit=code)
    if value < 0:
        raise InvalidUnitError(f"Money amount must be >= 0, got {amount!r}", unit=code)
    scaled = value.scaleb(currency_exponent(code))
    return Money(
        amount_minor_units=int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        currency=code,
    )


def from_minor_units(money: Money) -> Decimal:
    """Inverse of to_minor_units: exact major-unit Decimal."""
    exponent = currency_exponent(money.currency)
    return Decimal(money.amount_minor_units).scaleb(-exponent)


def format_amount(money: Money) -> str:
    """Major-unit string with the currency's exact number of decimals."""
    exponent = currency_exponent(money.currency)
    return f"{from_minor_units(money):.{exponent}f}"
