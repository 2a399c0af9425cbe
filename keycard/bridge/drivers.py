"""
Reader drivers.

A driver knows how to enumerate devices, open one, poll for a presented card
and write a payload to it. ``ReaderConnectionManager`` owns the handle a driver
returns; ``CardSession`` drives one physical card through poll and write.
"""
from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from keycard.exceptions import EncodeFailure, ReaderNotConnected

READER_KEYWORDS = ("nfc", "mifare", "card reader", "rfid")


class ReaderDriver(Protocol):
    name: str
    # Whether discovered devices must match READER_KEYWORDS (HID enumeration
    # lists keyboards and mice too; PC/SC lists card readers only).
    keyword_filter: bool

    def discover(self) -> List[Dict[str, Any]]: ...

    async def open(self, device: Dict[str, Any]) -> Any: ...

    async def close(self, handle: Any) -> None: ...

    async def poll_uid(self, handle: Any) -> Optional[str]: ...

    async def write(self, handle: Any, uid: str, payload: Dict[str, Any]) -> int: ...


def format_uid(raw: bytes | List[int]) -> str:
    return ":".join(f"{byte:02X}" for byte in raw)


def encode_card_data(payload: Dict[str, Any]) -> bytes:
    """Length-prefixed compact JSON, the byte image written to the card."""
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    if len(body) > 0xFFFF:
        raise EncodeFailure(f"Card payload too large ({len(body)} bytes).")
    return len(body).to_bytes(2, "big") + body


# ---------------------------------------------------------------------------
# Simulated hardware
# ---------------------------------------------------------------------------
@dataclass
class SimulatedHandle:
    device: Dict[str, Any]
    armed_at: Optional[float] = None
    written: Dict[str, bytes] = field(default_factory=dict)


class SimulatedReaderDriver:
    """
    In-process stand-in for a USB reader. A card "appears" ``detect_delay``
    seconds after polling starts; ``fail_on`` maps a payload ``type`` to the
    error raised when that payload is written.
    """

    name = "simulated"
    keyword_filter = True

    def __init__(
        self,
        *,
        detect_delay: float = 1.0,
        card_present: bool = True,
        attached: bool = True,
        fail_on: Optional[Dict[str, str]] = None,
        write_delay: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.detect_delay = max(0.0, float(detect_delay))
        self.card_present = card_present
        self.attached = attached
        self.fail_on = dict(fail_on or {})
        self.write_delay = max(0.0, float(write_delay))
        self._rng = rng or random.Random()
        self.writes: List[Dict[str, Any]] = []

    def discover(self) -> List[Dict[str, Any]]:
        if not self.attached:
            return []
        return [
            {
                "product": "Simulated NFC Reader",
                "manufacturer": "Keycard",
                "vendorId": 0x072F,
                "productId": 0x2200,
                "path": "sim://reader/0",
            }
        ]

    async def open(self, device: Dict[str, Any]) -> SimulatedHandle:
        if not self.attached:
            raise ReaderNotConnected("Simulated reader is detached.")
        return SimulatedHandle(device=dict(device))

    async def close(self, handle: SimulatedHandle) -> None:
        handle.armed_at = None

    def generate_uid(self) -> str:
        return format_uid([self._rng.randrange(256) for _ in range(8)])

    async def poll_uid(self, handle: SimulatedHandle) -> Optional[str]:
        if not self.attached:
            raise ReaderNotConnected("Simulated reader is detached.")
        if not self.card_present:
            return None
        now = asyncio.get_running_loop().time()
        if handle.armed_at is None:
            handle.armed_at = now
        if now - handle.armed_at < self.detect_delay:
            return None
        handle.armed_at = None
        return self.generate_uid()

    async def write(self, handle: SimulatedHandle, uid: str, payload: Dict[str, Any]) -> int:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        error = self.fail_on.get(str(payload.get("type")))
        if error:
            raise EncodeFailure(error)
        data = encode_card_data(payload)
        handle.written[uid] = data
        self.writes.append({"uid": uid, "payload": payload})
        return len(data)


# ---------------------------------------------------------------------------
# PC/SC hardware (pyscard)
# ---------------------------------------------------------------------------
APDU_OK = (0x90, 0x00)
GET_UID = [0xFF, 0xCA, 0x00, 0x00, 0x00]
DEFAULT_KEY = "FFFFFFFFFFFF"
FIRST_DATA_BLOCK = 4
LAST_BLOCK = 63  # MIFARE Classic 1K
BLOCK_SIZE = 16


def data_blocks() -> List[int]:
    return [block for block in range(FIRST_DATA_BLOCK, LAST_BLOCK + 1) if block % 4 != 3]


class PcscReaderDriver:
    """
    MIFARE Classic writer over PC/SC. Requires the ``pcsc`` extra (pyscard).
    pyscard calls block, so each one runs in a worker thread.
    """

    name = "pcsc"
    keyword_filter = False

    def __init__(self, *, key_hex: str = DEFAULT_KEY, key_type: int = 0x60) -> None:
        if len(key_hex) != 12:
            raise ValueError("Key must be 12 hex characters (6 bytes).")
        self.key = [int(key_hex[i:i + 2], 16) for i in range(0, 12, 2)]
        self.key_type = key_type

    def discover(self) -> List[Dict[str, Any]]:
        from smartcard.System import readers

        return [{"product": str(reader), "manufacturer": None, "path": str(reader)} for reader in readers()]

    async def open(self, device: Dict[str, Any]) -> Any:
        from smartcard.System import readers

        for reader in await asyncio.to_thread(readers):
            if str(reader) == device.get("path"):
                return reader
        raise ReaderNotConnected(f"Reader '{device.get('path')}' is no longer attached.")

    async def close(self, handle: Any) -> None:
        return None

    async def poll_uid(self, handle: Any) -> Optional[str]:
        return await asyncio.to_thread(self._poll_uid_blocking, handle)

    async def write(self, handle: Any, uid: str, payload: Dict[str, Any]) -> int:
        return await asyncio.to_thread(self._write_blocking, handle, uid, encode_card_data(payload))

    def _poll_uid_blocking(self, reader: Any) -> Optional[str]:
        from smartcard.Exceptions import CardConnectionException, NoCardException

        connection = reader.createConnection()
        try:
            connection.connect()
            data, sw1, sw2 = connection.transmit(GET_UID)
        except (NoCardException, CardConnectionException):
            return None
        finally:
            connection.disconnect()
        if (sw1, sw2) != APDU_OK:
            return None
        return format_uid(data)

    def _write_blocking(self, reader: Any, uid: str, data: bytes) -> int:
        from smartcard.Exceptions import CardConnectionException, NoCardException

        blocks = data_blocks()
        capacity = len(blocks) * BLOCK_SIZE
        if len(data) > capacity:
            raise EncodeFailure(f"Card payload ({len(data)} bytes) exceeds card capacity ({capacity} bytes).")
        padded = data + b"\x00" * (-len(data) % BLOCK_SIZE)
        chunks = [padded[i:i + BLOCK_SIZE] for i in range(0, len(padded), BLOCK_SIZE)]

        connection = reader.createConnection()
        try:
            connection.connect()
            _, sw1, sw2 = connection.transmit(GET_UID)
            if (sw1, sw2) != APDU_OK:
                raise EncodeFailure("Card removed before write.")
            _, sw1, sw2 = connection.transmit([0xFF, 0x82, 0x00, 0x00, 0x06, *self.key])
            if (sw1, sw2) != APDU_OK:
                raise EncodeFailure("Failed to load key.")
            for block, chunk in zip(blocks, chunks):
                _, sw1, sw2 = connection.transmit([0xFF, 0x86, 0x00, 0x00, 0x05, 0x01, 0x00, block, self.key_type, 0x00])
                if (sw1, sw2) != APDU_OK:
                    raise EncodeFailure(f"Authentication failed for block {block}.")
                _, sw1, sw2 = connection.transmit([0xFF, 0xD6, 0x00, block, BLOCK_SIZE, *chunk])
                if (sw1, sw2) != APDU_OK:
                    raise EncodeFailure(f"Write failed for block {block}.")
                readback, sw1, sw2 = connection.transmit([0xFF, 0xB0, 0x00, block, BLOCK_SIZE])
                if (sw1, sw2) != APDU_OK or bytes(readback) != chunk:
                    raise EncodeFailure("verify mismatch")
        except (NoCardException, CardConnectionException) as exc:
            raise EncodeFailure(str(exc)) from exc
        finally:
            connection.disconnect()
        return len(data)


def create_driver(name: str, **options: Any) -> ReaderDriver:
    if name == "simulated":
        return SimulatedReaderDriver(**options)
    if name == "pcsc":
        return PcscReaderDriver(**options)
    raise ValueError(f"Unknown reader driver '{name}'.")
