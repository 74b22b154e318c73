"""Per-run memoization cache shared by concurrently running detectors.

Detectors run as cooperative asyncio tasks on one thread, so plain
check-then-set is safe between awaits. The per-key lock only collapses
concurrent lookups of the same key into one computation; a port to
preemptive threads would need a threading lock here instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional


class SignatureCache:
    """Memo of code-signature assessments keyed by resolved file path."""

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._entries:
            self.hits += 1
            return self._entries[key]

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
            self.misses += 1
            value = await compute()
            self._entries[key] = value
            return value

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()
