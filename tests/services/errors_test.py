from __future__ import annotations

from datetime import date

import pytest

from domain.pairs import UnsupportedPairError
from services.binance_client import ProtocolError, RetryExhaustedError
from services.errors import describe_error
from services.rate_service import FutureDateError, InvalidDateError, ServiceError, parse_day


@pytest.mark.parametrize(
    ("exc", "code", "status"),
    [
        (UnsupportedPairError("EUR/DOGE"), "validation_failed", 400),
        (InvalidDateError("bad date", value="2025-13-01"), "validation_failed", 400),
        (ProtocolError("HTTP 429", endpoint="/ticker/price", status_code=429), "external_api_error", 502),
        (RetryExhaustedError("gave up", endpoint="/ticker/price", attempts=3), "external_api_error", 502),
        (ServiceError("Failed to fetch"), "service_error", 500),
        (KeyError("boom"), "internal_error", 500),
    ],
)
def test_errors_map_to_stable_codes(exc: Exception, code: str, status: int) -> None:
    description = describe_error(exc)

    assert description.code == code
    assert description.status == status
    assert "debug" not in description.details


def test_unsupported_pair_lists_supported_pairs() -> None:
    payload = describe_error(UnsupportedPairError("EUR/DOGE")).to_payload()

    assert payload["error"] == "validation_failed"
    assert "EUR/BTC, EUR/ETH, EUR/LTC" in payload["message"]
    assert payload["details"] == {"pair": "EUR/DOGE"}


def test_raw_error_text_only_in_debug() -> None:
    exc = ProtocolError("HTTP 503 response from Binance: maintenance", endpoint="/ticker/price", status_code=503)

    plain = describe_error(exc).to_payload()
    debug = describe_error(exc, debug=True).to_payload()

    assert "maintenance" not in str(plain)
    assert debug["details"]["debug"] == {
        "exception": "ProtocolError",
        "original_message": "HTTP 503 response from Binance: maintenance",
        "endpoint": "/ticker/price",
        "status_code": 503,
    }


def test_malformed_and_future_dates_are_told_apart() -> None:
    with pytest.raises(InvalidDateError) as malformed:
        parse_day("2025-13-01", today=date(2025, 3, 14))
    with pytest.raises(FutureDateError) as future:
        parse_day("2025-03-15", today=date(2025, 3, 14))

    malformed_payload = describe_error(malformed.value).to_payload()
    future_payload = describe_error(future.value).to_payload()

    assert malformed_payload["message"] == "Invalid date format"
    assert future_payload == {
        "error": "validation_failed",
        "message": "Date cannot be in the future",
        "details": {"date": "2025-03-15"},
    }
    assert describe_error(future.value).status == 400
