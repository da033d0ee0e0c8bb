from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from typing import Mapping


class UnsupportedPairError(ValueError):
    def __init__(self, pair: str) -> None:
        super().__init__(f"Unsupported trading pair: {pair}. Supported pairs: {supported_pairs_string()}")
        self.pair = pair


class Pair(StrEnum):
    EUR_BTC = "EUR/BTC"
    EUR_ETH = "EUR/ETH"
    EUR_LTC = "EUR/LTC"

    @classmethod
    def parse(cls, value: str | Pair) -> Pair:
        try:
            return cls(value)
        except ValueError as exc:
            raise UnsupportedPairError(str(value)) from exc

    @property
    def base_currency(self) -> str:
        return self.value.split("/")[0]

    @property
    def quote_currency(self) -> str:
        return self.value.split("/")[1]


ALL_PAIRS: tuple[Pair, ...] = tuple(Pair)

BINANCE_SYMBOLS: Mapping[Pair, str] = MappingProxyType(
    {
        Pair.EUR_BTC: "BTCEUR",
        Pair.EUR_ETH: "ETHEUR",
        Pair.EUR_LTC: "LTCEUR",
    }
)
PAIRS_BY_SYMBOL: Mapping[str, Pair] = MappingProxyType({symbol: pair for pair, symbol in BINANCE_SYMBOLS.items()})


def supported_pairs_string() -> str:
    return ", ".join(pair.value for pair in Pair)


__all__ = ["ALL_PAIRS", "BINANCE_SYMBOLS", "PAIRS_BY_SYMBOL", "Pair", "UnsupportedPairError", "supported_pairs_string"]
