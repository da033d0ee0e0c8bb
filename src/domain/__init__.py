"""Domain models and types for the crypto rates service.

This package contains in-memory (Pydantic) models describing trading pairs,
price points and the statistics derived from them. They are independent from
persistence models so that business logic and testing can evolve without DB
coupling.
"""

__all__ = [
    "pairs",
    "rates",
]
