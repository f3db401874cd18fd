"""Key-value store with expiry, injected into adapters that cache responses.

Nothing in the reconciliation core depends on a particular backend; any
object with get/set/delete works.
"""

import time
from typing import Any, Callable, Protocol


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store; entries expire ``ttl`` seconds after they are set."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: dict[str, tuple[Any, float | None]] = {}

    def get(self, key: str) -> Any:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._items[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._items[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)
