from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from keycard.core.types import SessionStatus
from keycard.exceptions import CardDetectionTimeout, EncodeFailure, ReaderNotConnected, StateConflict

from .drivers import ReaderDriver


class CardSession:
    """
    One physical card on the reader: idle -> detecting -> detected -> writing ->
    written | write_failed. Detection may instead end in detection_timeout.
    """

    def __init__(
        self,
        driver: ReaderDriver,
        handle: Any,
        *,
        detection_timeout: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.driver = driver
        self.handle = handle
        self.detection_timeout = detection_timeout
        self.poll_interval = poll_interval
        self.status = SessionStatus.IDLE
        self.uid: Optional[str] = None

    async def detect(self) -> str:
        if self.status != SessionStatus.IDLE:
            raise StateConflict(f"Cannot detect from session state '{self.status.value}'.")
        self.status = SessionStatus.DETECTING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.detection_timeout
        while True:
            try:
                uid = await self.driver.poll_uid(self.handle)
            except OSError as exc:
                self.status = SessionStatus.IDLE
                raise ReaderNotConnected(str(exc)) from exc
            if uid:
                self.uid = uid
                self.status = SessionStatus.DETECTED
                return uid
            if loop.time() >= deadline:
                self.status = SessionStatus.DETECTION_TIMEOUT
                raise CardDetectionTimeout("Card detection timeout")
            await asyncio.sleep(self.poll_interval)

    async def write(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Authenticate, write and verify as a single step."""
        if self.status != SessionStatus.DETECTED or not self.uid:
            raise StateConflict(f"Cannot write from session state '{self.status.value}'.")
        self.status = SessionStatus.WRITING
        try:
            written = await self.driver.write(self.handle, self.uid, payload)
        except EncodeFailure:
            self.status = SessionStatus.WRITE_FAILED
            raise
        except (OSError, RuntimeError, ValueError) as exc:
            self.status = SessionStatus.WRITE_FAILED
            raise EncodeFailure(str(exc)) from exc
        self.status = SessionStatus.WRITTEN
        return {"cardUID": self.uid, "bytesWritten": written}
