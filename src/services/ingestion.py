from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from threading import Event
from time import perf_counter
from typing import Callable, Iterable, Protocol

from domain.pairs import ALL_PAIRS, Pair, UnsupportedPairError
from domain.rates import PricePoint, as_utc, utcnow

from .rate_cache import RateCache

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    def get_all_current_prices(self) -> dict[Pair, Decimal]: ...


class RateStore(Protocol):
    def exists_for_pair_and_time(self, pair: Pair, recorded_at: datetime) -> bool: ...

    def save(self, point: PricePoint) -> bool: ...


@dataclass
class RunSummary:
    recorded_at: datetime
    succeeded: list[Pair] = field(default_factory=list)
    skipped: list[Pair] = field(default_factory=list)
    failed: dict[Pair | str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class FetchRatesMessage:
    """Asynchronous trigger for an ingestion run."""

    pairs: tuple[Pair, ...] = ALL_PAIRS
    invalidate_cache: bool = True
    requested_at: datetime | None = None


class RateIngestor:
    """Turns a trigger into persisted price points.

    Prices for every pending pair come from one batched fetch. A pair that
    fails is recorded in the summary and the others carry on; points already
    saved in the run are kept.
    """

    def __init__(
        self,
        *,
        source: PriceSource,
        store: RateStore,
        cache: RateCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.store = store
        self.cache = cache
        self._clock = clock

    def run(
        self,
        pairs: Iterable[Pair | str] | None = None,
        recorded_at: datetime | None = None,
        *,
        invalidate_cache: bool = True,
    ) -> RunSummary:
        started = perf_counter()
        ts = as_utc(recorded_at) if recorded_at is not None else self._clock().replace(microsecond=0)
        summary = RunSummary(recorded_at=ts)
        selected = self._resolve_pairs(ALL_PAIRS if pairs is None else pairs, summary)
        logger.info("Starting rate ingestion for %s at %s", ", ".join(selected), ts.isoformat())

        pending: list[Pair] = []
        for pair in selected:
            try:
                if self.store.exists_for_pair_and_time(pair, ts):
                    logger.info("Rate for %s at %s already exists, skipping", pair, ts.isoformat())
                    summary.skipped.append(pair)
                    continue
            except Exception as exc:
                self._record_failure(summary, pair, exc)
                continue
            pending.append(pair)

        if pending:
            try:
                prices = self.source.get_all_current_prices()
            except Exception as exc:
                logger.error("Batch price fetch failed: %s", exc)
                for pair in pending:
                    summary.failed[pair] = f"price fetch failed: {exc}"
                pending = []
                prices = {}

            for pair in pending:
                self._ingest_pair(pair, prices.get(pair), ts, summary, invalidate_cache=invalidate_cache)

        summary.duration_ms = round((perf_counter() - started) * 1000, 2)
        logger.info(
            "Rate ingestion finished: %d saved, %d skipped, %d failed in %.2fms",
            len(summary.succeeded),
            len(summary.skipped),
            len(summary.failed),
            summary.duration_ms,
        )
        return summary

    @staticmethod
    def _resolve_pairs(values: Iterable[Pair | str], summary: RunSummary) -> list[Pair]:
        """Supported pairs in request order without repeats; unsupported ones are recorded as failed."""
        selected: list[Pair] = []
        for value in values:
            try:
                pair = Pair.parse(value)
            except UnsupportedPairError as exc:
                logger.warning("Skipping unsupported pair %r", value)
                summary.failed[str(value)] = str(exc)
                continue
            if pair not in selected:
                selected.append(pair)
        return selected

    def _ingest_pair(
        self,
        pair: Pair,
        price: Decimal | None,
        recorded_at: datetime,
        summary: RunSummary,
        *,
        invalidate_cache: bool,
    ) -> None:
        if price is None:
            logger.warning("Price not available for %s", pair)
            summary.failed[pair] = "price not available"
            return

        try:
            point = PricePoint(pair=pair, price=price, recorded_at=recorded_at, created_at=self._clock())
            inserted = self.store.save(point)
        except Exception as exc:
            self._record_failure(summary, pair, exc)
            return

        if not inserted:
            summary.skipped.append(pair)
            return

        summary.succeeded.append(pair)
        logger.info("Saved rate for %s: %s at %s", pair, point.price, recorded_at.isoformat())
        if invalidate_cache and self.cache is not None:
            self.cache.invalidate(pair)

    @staticmethod
    def _record_failure(summary: RunSummary, pair: Pair, exc: Exception) -> None:
        logger.error("Failed to ingest rate for %s: %s (%s)", pair, exc, type(exc).__name__)
        summary.failed[pair] = str(exc) or type(exc).__name__


class FetchRatesHandler:
    def __init__(self, ingestor: RateIngestor) -> None:
        self.ingestor = ingestor

    def __call__(self, message: FetchRatesMessage) -> RunSummary:
        logger.info(
            "Processing fetch-rates message for %s (invalidate_cache=%s)",
            ", ".join(message.pairs),
            message.invalidate_cache,
        )
        return self.ingestor.run(
            message.pairs,
            message.requested_at,
            invalidate_cache=message.invalidate_cache,
        )


def run_periodically(
    ingestor: RateIngestor,
    *,
    interval_seconds: float,
    stop_event: Event | None = None,
    max_runs: int | None = None,
) -> list[RunSummary]:
    """Run ingestion every ``interval_seconds`` until stopped.

    A run that raises is logged and the loop continues with the next tick.
    """
    stop = stop_event or Event()
    summaries: list[RunSummary] = []
    runs = 0
    while not stop.is_set():
        runs += 1
        try:
            summaries.append(ingestor.run())
        except Exception:
            logger.exception("Scheduled rate ingestion failed")

        if max_runs is not None and runs >= max_runs:
            break
        stop.wait(interval_seconds)
    return summaries


__all__ = ["FetchRatesHandler", "FetchRatesMessage", "RateIngestor", "RunSummary", "run_periodically"]
