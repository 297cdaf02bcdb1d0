"""
Async wrapper around JsonFileStore for safe concurrent access.

File IO runs in the default executor; an ``asyncio.Lock`` serializes every
load/save/mutate so a read-modify-write never interleaves with another
writer of the same file.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar

from lpguard.state.state import JsonFileStore

T = TypeVar("T")


class AtomicJsonStore:
    def __init__(self, path: str | Path) -> None:
        self._store = JsonFileStore(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.save(data))

    async def mutate(self, fn: Callable[[Dict[str, Any]], T]) -> T:
        """
        Re-read the file, apply ``fn`` to the loaded dict in place, persist it.

        Returns whatever ``fn`` returns. If ``fn`` raises, nothing is written.
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._store.load)
            result = fn(data)
            await loop.run_in_executor(None, lambda: self._store.save(data))
            return result
