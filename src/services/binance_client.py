from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from itertools import takewhile
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config
from domain.pairs import BINANCE_SYMBOLS, PAIRS_BY_SYMBOL, Pair, UnsupportedPairError

logger = logging.getLogger(__name__)

# API docs: https://developers.binance.com/docs/binance-spot-api-docs/rest-api/market-data-endpoints
TICKER_PRICE_PATH = "/ticker/price"
PING_PATH = "/ping"
USER_AGENT = "CryptoRates/1.0"


class BinanceAPIError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
        payload: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.payload = payload


class TransportError(BinanceAPIError):
    """Connectivity or timeout failure; the request may be retried."""


class RetryExhaustedError(TransportError):
    def __init__(self, message: str, *, endpoint: str, attempts: int) -> None:
        super().__init__(message, endpoint=endpoint)
        self.attempts = attempts


class ProtocolError(BinanceAPIError):
    """Non-success HTTP status."""


class DecodingError(BinanceAPIError):
    """Body could not be decoded into the expected JSON shape."""


class InvalidResponseError(BinanceAPIError):
    """Well-formed payload that does not carry a usable price."""


class LinearRetry(Retry):
    """Retry whose delay grows linearly: ``backoff_factor * n`` after the n-th consecutive error."""

    def get_backoff_time(self) -> float:
        errors = takewhile(lambda entry: entry.redirect_location is None, reversed(self.history))
        consecutive_errors = len(list(errors))
        if consecutive_errors == 0:
            return 0
        return float(min(self.backoff_max, self.backoff_factor * consecutive_errors))


def build_retry(max_attempts: int, retry_delay_seconds: float) -> LinearRetry:
    """Retry connection and read failures only; HTTP statuses are returned to the caller untouched."""
    retries = max_attempts - 1
    return LinearRetry(
        total=retries,
        connect=retries,
        read=retries,
        status=0,
        other=0,
        allowed_methods={"GET"},
        backoff_factor=retry_delay_seconds,
        raise_on_status=False,
        respect_retry_after_header=False,
    )


class BinanceClient:
    """Binance spot ticker client for the supported pairs.

    Transport failures (connection errors, read timeouts) are retried by a
    ``LinearRetry`` mounted on the session, waiting ``retry_delay_seconds * n``
    after the n-th failure. HTTP status and decoding failures surface immediately.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        settings = config()
        self.base_url = (base_url or settings.binance_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.binance_timeout
        self.max_attempts = max_attempts if max_attempts is not None else settings.binance_max_attempts
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.binance_retry_delay_seconds
        )
        if self.max_attempts <= 0:
            msg = "max_attempts must be > 0"
            raise ValueError(msg)

        self._session = session or requests.Session()
        adapter = HTTPAdapter(max_retries=build_retry(self.max_attempts, self.retry_delay_seconds))
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_current_price(self, pair: Pair | str) -> Decimal:
        symbol = self._symbol_for(pair)
        resolved = Pair(pair)
        logger.info("Fetching current price for %s (%s)", resolved, symbol)

        payload = self._request(TICKER_PRICE_PATH, params={"symbol": symbol})
        if not isinstance(payload, dict):
            raise DecodingError(
                "Binance returned unexpected payload type", endpoint=TICKER_PRICE_PATH, payload=payload
            )

        price = self._parse_price(payload.get("price"))
        if price is None:
            raise InvalidResponseError(
                f"Binance returned no valid price for {resolved}", endpoint=TICKER_PRICE_PATH, payload=payload
            )

        logger.info("Fetched price for %s: %s", resolved, price)
        return price

    def get_all_current_prices(self) -> dict[Pair, Decimal]:
        """Fetch every supported pair in one request.

        Entries without a usable price are dropped; the call fails only when
        nothing usable is left.
        """
        symbols = list(BINANCE_SYMBOLS.values())
        payload = self._request(TICKER_PRICE_PATH, params={"symbols": json.dumps(symbols, separators=(",", ":"))})
        if not isinstance(payload, list):
            raise DecodingError(
                "Binance returned unexpected payload type, expected a list",
                endpoint=TICKER_PRICE_PATH,
                payload=payload,
            )

        prices: dict[Pair, Decimal] = {}
        for item in payload:
            if not isinstance(item, dict) or "symbol" not in item:
                logger.warning("Ignoring malformed ticker entry: %r", item)
                continue

            pair = PAIRS_BY_SYMBOL.get(item["symbol"])
            if pair is None:
                continue

            price = self._parse_price(item.get("price"))
            if price is None:
                logger.warning("Ignoring invalid price for %s: %r", item["symbol"], item.get("price"))
                continue
            prices[pair] = price

        if not prices:
            raise InvalidResponseError(
                "No valid prices received from Binance", endpoint=TICKER_PRICE_PATH, payload=payload
            )

        logger.info("Fetched %d prices: %s", len(prices), ", ".join(pair.value for pair in prices))
        return prices

    def is_available(self) -> bool:
        try:
            self._request(PING_PATH)
        except Exception as exc:
            logger.warning("Binance availability check failed: %s", exc)
            return False
        return True

    @staticmethod
    def supported_pairs() -> list[Pair]:
        return list(BINANCE_SYMBOLS)

    @staticmethod
    def _symbol_for(pair: Pair | str) -> str:
        try:
            return BINANCE_SYMBOLS[Pair(pair)]
        except (KeyError, ValueError) as exc:
            raise UnsupportedPairError(str(pair)) from exc

    def _request(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                "GET",
                url,
                params=params,
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            message, payload = self._extract_error(resp)
            raise ProtocolError(message, endpoint=path, status_code=status_code, payload=payload) from exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.error("Transport error on %s after %d attempts: %s", path, self.max_attempts, exc)
            raise RetryExhaustedError(
                f"Transport error after {self.max_attempts} attempts: {exc}",
                endpoint=path,
                attempts=self.max_attempts,
            ) from exc
        except requests.RequestException as exc:
            raise TransportError(f"Binance request failed: {exc}", endpoint=path) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise DecodingError(
                "Binance returned invalid JSON",
                endpoint=path,
                status_code=response.status_code,
                payload=response.text,
            ) from exc

    @staticmethod
    def _parse_price(value: Any) -> Decimal | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            price = Decimal(str(value))
        except InvalidOperation:
            return None
        if not price.is_finite() or price <= 0:
            return None
        return price

    @staticmethod
    def _extract_error(response: requests.Response | None) -> tuple[str, Any | None]:
        message = "Binance request failed"
        payload: Any | None = None
        if response is None:
            return message, payload

        message = f"HTTP {response.status_code} response from Binance"
        try:
            payload = response.json()
            if isinstance(payload, dict) and payload.get("msg"):
                message = f"{message}: {payload['msg']}"
        except ValueError:
            payload = response.text
        return message, payload


__all__ = [
    "BinanceAPIError",
    "BinanceClient",
    "DecodingError",
    "InvalidResponseError",
    "LinearRetry",
    "ProtocolError",
    "RetryExhaustedError",
    "TransportError",
    "build_retry",
]
