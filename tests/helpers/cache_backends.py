from __future__ import annotations


class FailingCacheBackend:
    """Cache backend whose every operation raises."""

    def __init__(self) -> None:
        self.calls = 0

    def get(self, key: str) -> tuple[object, bool]:
        self.calls += 1
        raise ConnectionError("cache down")

    def set(self, key: str, value: object, ttl: int) -> None:
        self.calls += 1
        raise ConnectionError("cache down")

    def delete(self, *keys: str) -> None:
        self.calls += 1
        raise ConnectionError("cache down")
