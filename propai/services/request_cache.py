from __future__ import annotations

from typing import Any, Awaitable, Callable, Hashable


class RequestCache:
    """
    Read-through memo for one request.

    Created per request by `get_request_cache` and handed explicitly to the reads that use it,
    so nothing is shared between requests. Writers call `invalidate` for keys they touch.
    """

    def __init__(self) -> None:
        self._values: dict[Hashable, Any] = {}
        self.hits = 0

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._values:
            self.hits += 1
            return self._values[key]
        value = await loader()
        self._values[key] = value
        return value

    def invalidate(self, key: Hashable) -> None:
        self._values.pop(key, None)


async def get_request_cache() -> RequestCache:
    return RequestCache()
