"""
Carrier Gateway Exception Hierarchy

Every adapter maps carrier-native failures into this closed set before they
leave the adapter boundary. All exceptions include code, message, and details
for audit trail and debugging.

Exception Hierarchy:
    ShippingGatewayError
    ├── AuthenticationError
    ├── InvalidUnitError
    ├── TransportFailure
    ├── ParseFailure
    ├── RateUnavailableError
    ├── AllCarriersUnavailableError
    └── CarrierNotRegisteredError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ShippingGatewayError(Exception):
    """
    Base exception for all carrier gateway errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        carrier_code: Carrier the failure belongs to, when there is one
    """

    default_code: str = "SHIPPING_GATEWAY_ERROR"
    default_severity: str = "P2"
    failure_class: str = "error"

    def __init__(
        self,
        message: str,
        carrier_code: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.carrier_code = carrier_code
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "failure_class": self.failure_class,
            "carrier_code": self.carrier_code,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(carrier_code={self.carrier_code!r}, "
            f"code={self.code!r}, message={self.message!r})"
        )


class AuthenticationError(ShippingGatewayError):
    """Credential rejected by the carrier or token refresh failed. Never retried."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P0"
    failure_class = "auth"


class InvalidUnitError(ShippingGatewayError):
    """Unit tag or measurement the normalizer cannot handle. Raised before any network call."""
    default_code = "INVALID_UNIT"
    default_severity = "P3"
    failure_class = "invalid_input"

    def __init__(self, message: str, unit: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["unit"] = unit
        super().__init__(message, details=details, **kwargs)


class TransportFailure(ShippingGatewayError):
    """Network error, timeout, non-2xx HTTP status, or SOAP fault."""
    default_code = "CARRIER_TRANSPORT_FAILED"
    default_severity = "P1"
    failure_class = "transport"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details=details, **kwargs)


class ParseFailure(ShippingGatewayError):
    """Response received but could not be mapped into the domain model."""
    default_code = "CARRIER_RESPONSE_UNPARSEABLE"
    default_severity = "P1"
    failure_class = "parse"


class RateUnavailableError(ShippingGatewayError):
    """Carrier answered but offered no usable service for the route/weight."""
    default_code = "RATE_UNAVAILABLE"
    default_severity = "P3"
    failure_class = "unavailable"


class AllCarriersUnavailableError(ShippingGatewayError):
    """Every carrier asked for quotes failed. Carries each carrier's error."""
    default_code = "ALL_CARRIERS_UNAVAILABLE"
    default_severity = "P1"
    failure_class = "unavailable"

    def __init__(self, errors: Dict[str, ShippingGatewayError], **kwargs):
        self.errors = dict(errors)
        details = kwargs.pop("details", {})
        details["errors"] = {code: err.to_dict() for code, err in self.errors.items()}
        super().__init__(
            f"No shipping options available: {len(self.errors)} carrier(s) failed",
            details=details,
            **kwargs,
        )


class CarrierNotRegisteredError(ShippingGatewayError):
    """Requested carrier is not registered with the gateway."""
    default_code = "CARRIER_NOT_REGISTERED"
    default_severity = "P2"
    failure_class = "invalid_input"


# Codes that are safe to retry when the caller opts in
RETRYABLE_ERRORS = (TransportFailure,)
