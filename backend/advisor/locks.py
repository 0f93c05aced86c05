"""
Gap Advisor Backend — Per-key asyncio locks

Entries are reference counted and dropped once nobody holds or waits on
them, so the registries stay as small as the set of keys in use.
"""

import asyncio
from contextlib import asynccontextmanager


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


@asynccontextmanager
async def hold(registry: dict, key):
    """Serialize on `key` within `registry`."""
    entry = registry.get(key)
    if entry is None:
        entry = registry[key] = _Entry()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0 and registry.get(key) is entry:
            del registry[key]
