from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from keycard.domain.messages import CARD_READER_MESSAGES
from keycard.exceptions import ReaderBusy


class ReaderLockRegistry:
    """One lock per physical reader. A second run on a held reader fails fast."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_busy(self, reader_key: str) -> bool:
        lock = self._locks.get(reader_key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, reader_key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(reader_key, asyncio.Lock())
        if lock.locked():
            raise ReaderBusy(CARD_READER_MESSAGES["reader_busy"])
        async with lock:
            yield
