from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from keycard.exceptions import ReaderNotConnected
from keycard.logging import log_event

from .drivers import READER_KEYWORDS, ReaderDriver


def is_card_reader(device: Dict[str, Any], keywords: Sequence[str] = READER_KEYWORDS) -> bool:
    product = str(device.get("product") or "").lower()
    return bool(product) and any(keyword in product for keyword in keywords)


class ReaderConnectionManager:
    """
    Owns the single open reader handle. Callers borrow it through ``acquire()``,
    which is exclusive: two cards are never driven through the reader at once.
    """

    def __init__(
        self,
        driver: ReaderDriver,
        *,
        keywords: Sequence[str] = READER_KEYWORDS,
        workspace: Optional[Path] = None,
    ) -> None:
        self.driver = driver
        self.keywords = tuple(keywords)
        self.workspace = workspace
        self.device: Optional[Dict[str, Any]] = None
        self._handle: Any = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._handle is not None

    def list_devices(self) -> List[Dict[str, Any]]:
        return self.driver.discover()

    def _select(self, devices: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for device in devices:
            if not self.driver.keyword_filter or is_card_reader(device, self.keywords):
                return device
        return None

    async def connect(self) -> bool:
        if self._handle is not None:
            return True
        try:
            devices = self.driver.discover()
            device = self._select(devices)
            if device is None:
                log_event(
                    "reader_not_found",
                    {"driver": self.driver.name, "devices": [d.get("product") for d in devices], "level": "warning"},
                    self.workspace,
                    role="bridge",
                )
                return False
            self._handle = await self.driver.open(device)
        except (ReaderNotConnected, OSError, RuntimeError) as exc:
            self._handle = None
            log_event("reader_connect_failed", {"driver": self.driver.name, "error": str(exc), "level": "error"}, self.workspace, role="bridge")
            return False
        self.device = device
        log_event("reader_connected", {"driver": self.driver.name, "device": device}, self.workspace, role="bridge")
        return True

    async def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.driver.close(handle)
            log_event("reader_closed", {"driver": self.driver.name}, self.workspace, role="bridge")
        self.device = None

    async def reconnect(self) -> bool:
        async with self._lock:
            await self.close()
            return await self.connect()

    def mark_disconnected(self, error: str) -> None:
        """Drop the handle after a hardware error; the next ``reconnect`` reopens it."""
        if self._handle is None:
            return
        self._handle = None
        log_event("reader_disconnected", {"driver": self.driver.name, "error": error, "level": "warning"}, self.workspace, role="bridge")

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "reader": {"connected": True, **(self.device or {})} if self.connected else None,
        }

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        async with self._lock:
            if self._handle is None:
                raise ReaderNotConnected("Card reader not connected")
            yield self._handle
