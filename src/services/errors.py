from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from domain.pairs import UnsupportedPairError, supported_pairs_string

from .binance_client import BinanceAPIError
from .rate_service import FutureDateError, InvalidDateError, ServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorDescription:
    """Stable, caller-facing description of a failure."""

    code: str
    message: str
    status: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


def describe_error(exc: BaseException, *, debug: bool = False) -> ErrorDescription:
    """Map a terminal error to a code, message and status.

    Raw error text and exception class names are only included when ``debug``
    is set.
    """
    if isinstance(exc, UnsupportedPairError):
        description = ErrorDescription(
            code="validation_failed",
            message=f"Unsupported pair. Supported pairs are: {supported_pairs_string()}",
            status=400,
            details={"pair": exc.pair},
        )
    elif isinstance(exc, FutureDateError):
        description = ErrorDescription(
            code="validation_failed", message="Date cannot be in the future", status=400, details={"date": exc.value}
        )
    elif isinstance(exc, InvalidDateError):
        description = ErrorDescription(
            code="validation_failed", message="Invalid date format", status=400, details={"date": exc.value}
        )
    elif isinstance(exc, BinanceAPIError):
        description = ErrorDescription(
            code="external_api_error",
            message="Unable to fetch cryptocurrency data from external provider",
            status=502,
        )
    elif isinstance(exc, ServiceError):
        description = ErrorDescription(
            code="service_error", message="An error occurred while fetching rate data", status=500
        )
    else:
        logger.error("Unhandled error: %s (%s)", exc, type(exc).__name__)
        description = ErrorDescription(code="internal_error", message="An unexpected error occurred", status=500)

    if debug:
        debug_details = {"exception": type(exc).__name__, "original_message": str(exc)}
        if isinstance(exc, BinanceAPIError):
            debug_details["endpoint"] = exc.endpoint
            debug_details["status_code"] = exc.status_code
        return ErrorDescription(
            code=description.code,
            message=description.message,
            status=description.status,
            details={**description.details, "debug": debug_details},
        )
    return description


__all__ = ["ErrorDescription", "describe_error"]
