from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from db.repositories import RateRepository
from services.ingestion import RateIngestor
from services.rate_cache import InMemoryCacheBackend, RateCache
from services.rate_service import RateQueryService
from tests.constants import TEST_TTLS
from tests.helpers.clock import FrozenClock, MonotonicClock
from tests.helpers.price_sources import StubPriceSource

engine: Engine = create_engine(
    "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(scope="function")
def cache_clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture(scope="function")
def cache_backend(cache_clock: MonotonicClock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=cache_clock)


@pytest.fixture(scope="function")
def rate_cache(cache_backend: InMemoryCacheBackend, clock: FrozenClock) -> RateCache:
    return RateCache(cache_backend, ttls=TEST_TTLS, clock=clock)


@pytest.fixture(scope="function")
def repository(test_session: Session) -> RateRepository:
    return RateRepository(test_session)


@pytest.fixture(scope="function")
def price_source() -> StubPriceSource:
    return StubPriceSource({"EUR/BTC": "45000.00000000", "EUR/ETH": "3000.5", "EUR/LTC": "80.12345678"})


@pytest.fixture(scope="function")
def ingestor(
    price_source: StubPriceSource, repository: RateRepository, rate_cache: RateCache, clock: FrozenClock
) -> RateIngestor:
    return RateIngestor(source=price_source, store=repository, cache=rate_cache, clock=clock)


@pytest.fixture(scope="function")
def query_service(repository: RateRepository, rate_cache: RateCache, clock: FrozenClock) -> RateQueryService:
    return RateQueryService(repository=repository, cache=rate_cache, clock=clock)
