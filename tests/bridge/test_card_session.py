import re

import pytest

from keycard.bridge.drivers import SimulatedReaderDriver, encode_card_data
from keycard.bridge.reader import ReaderConnectionManager, is_card_reader
from keycard.bridge.session import CardSession
from keycard.core.types import SessionStatus
from keycard.exceptions import CardDetectionTimeout, EncodeFailure, ReaderNotConnected, StateConflict

UID_PATTERN = re.compile(r"^([0-9A-F]{2}:){7}[0-9A-F]{2}$")


@pytest.fixture
def driver():
    return SimulatedReaderDriver(detect_delay=0)


@pytest.fixture
async def handle(driver):
    return await driver.open(driver.discover()[0])


@pytest.mark.asyncio
async def test_detect_then_write(driver, handle):
    session = CardSession(driver, handle, detection_timeout=0.5, poll_interval=0.01)
    assert session.status == SessionStatus.IDLE
    uid = await session.detect()
    assert UID_PATTERN.match(uid)
    assert session.status == SessionStatus.DETECTED

    result = await session.write({"type": "clock", "timestamp": "ts", "timezone": "UTC"})
    assert session.status == SessionStatus.WRITTEN
    assert result["cardUID"] == uid
    assert result["bytesWritten"] == len(encode_card_data({"type": "clock", "timestamp": "ts", "timezone": "UTC"}))
    assert driver.writes[0]["uid"] == uid


@pytest.mark.asyncio
async def test_detection_timeout(handle):
    driver = SimulatedReaderDriver(card_present=False)
    session = CardSession(driver, handle, detection_timeout=0.05, poll_interval=0.01)
    with pytest.raises(CardDetectionTimeout):
        await session.detect()
    assert session.status == SessionStatus.DETECTION_TIMEOUT


@pytest.mark.asyncio
async def test_detached_reader_is_not_a_timeout(driver, handle):
    driver.attached = False
    session = CardSession(driver, handle, detection_timeout=0.05, poll_interval=0.01)
    with pytest.raises(ReaderNotConnected):
        await session.detect()


@pytest.mark.asyncio
async def test_write_failure(handle):
    driver = SimulatedReaderDriver(detect_delay=0, fail_on={"clock": "verify mismatch"})
    session = CardSession(driver, handle, poll_interval=0.01)
    await session.detect()
    with pytest.raises(EncodeFailure, match="verify mismatch"):
        await session.write({"type": "clock"})
    assert session.status == SessionStatus.WRITE_FAILED
    assert driver.writes == []


@pytest.mark.asyncio
async def test_write_requires_detected_card(driver, handle):
    session = CardSession(driver, handle)
    with pytest.raises(StateConflict):
        await session.write({"type": "clock"})


def test_reader_keyword_filter():
    assert is_card_reader({"product": "ACS NFC Reader"})
    assert is_card_reader({"product": "USB RFID Card Reader"})
    assert not is_card_reader({"product": "USB Keyboard"})
    assert not is_card_reader({"product": None})


class KeyboardOnlyDriver(SimulatedReaderDriver):
    def discover(self):
        return [{"product": "USB Keyboard", "path": "hid://1"}]


@pytest.mark.asyncio
async def test_manager_ignores_non_reader_devices(workspace):
    manager = ReaderConnectionManager(KeyboardOnlyDriver(), workspace=workspace)
    assert await manager.connect() is False
    assert manager.status() == {"connected": False, "reader": None}


@pytest.mark.asyncio
async def test_manager_acquire_and_reconnect(workspace):
    manager = ReaderConnectionManager(SimulatedReaderDriver(detect_delay=0), workspace=workspace)
    with pytest.raises(ReaderNotConnected):
        async with manager.acquire():
            pass

    assert await manager.connect() is True
    async with manager.acquire() as handle:
        assert handle.device["product"] == "Simulated NFC Reader"

    manager.mark_disconnected("usb unplugged")
    assert manager.connected is False
    assert await manager.reconnect() is True
    assert manager.status()["reader"]["connected"] is True
