"""
Card Reader Bridge.

Local FastAPI service that sits next to the USB reader. The front desk (or the
sequencing controller) calls it over HTTP; it owns the hardware handle and never
persists anything.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from keycard import __version__
from keycard.core.types import CardType
from keycard.exceptions import CardDetectionTimeout, InvalidBooking, KeycardError, ReaderNotConnected
from keycard.logging import log_event
from keycard.settings import KeycardConfig, load_keycard_config
from keycard.time_utils import utc_timestamp

from .drivers import ReaderDriver, SimulatedReaderDriver, create_driver
from .programmer import CardProgrammer
from .reader import ReaderConnectionManager


class ProgramCardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    card_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("cardType", "card_type"))
    booking_data: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("bookingData", "booking_data"))


class ProgramSequenceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_data: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("bookingData", "booking_data"))


class EncodeCardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    card_issue_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("cardIssueId", "card_issue_id"))
    card_payload: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("cardPayload", "card_payload"))
    hotel_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("hotelId", "hotel_id"))
    room_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("roomId", "room_id"))


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def create_bridge_app(
    manager: ReaderConnectionManager,
    config: Optional[KeycardConfig] = None,
    *,
    workspace: Optional[Path] = None,
    poll_interval: float = 0.1,
) -> FastAPI:
    config = config or KeycardConfig()
    programmer = CardProgrammer(manager, config, poll_interval=poll_interval, workspace=workspace)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await manager.connect()
        log_event("bridge_started", {"driver": manager.driver.name, "reader_connected": manager.connected}, workspace, role="bridge")
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(title="Keycard Card Reader Bridge", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
    app.state.manager = manager
    app.state.programmer = programmer

    @app.get("/health")
    async def health():
        return {"status": "ok", "readerConnected": manager.connected, "timestamp": utc_timestamp()}

    @app.get("/api/reader/status")
    async def reader_status():
        return manager.status()

    @app.post("/api/reader/reconnect")
    async def reader_reconnect():
        connected = await manager.reconnect()
        return {"success": connected, "connected": manager.connected}

    @app.post("/api/card/detect")
    async def card_detect():
        try:
            card = await programmer.detect()
        except CardDetectionTimeout as exc:
            return _failure(400, str(exc))
        except ReaderNotConnected as exc:
            return _failure(503, str(exc))
        return {"success": True, "card": card}

    @app.post("/api/card/program")
    async def card_program(request: ProgramCardRequest):
        if not request.card_type or not request.booking_data:
            return _failure(400, "Missing cardType or bookingData")
        try:
            card_type = CardType(request.card_type)
        except ValueError:
            return _failure(400, f"Unknown card type: {request.card_type}")
        try:
            result = await programmer.program_card(card_type, request.booking_data)
        except InvalidBooking as exc:
            return _failure(400, str(exc))
        except ReaderNotConnected as exc:
            return _failure(503, str(exc))
        except KeycardError as exc:
            return _failure(500, str(exc))
        return {"success": True, "result": result}

    @app.post("/api/card/program-sequence")
    async def card_program_sequence(request: ProgramSequenceRequest):
        if not request.booking_data:
            return _failure(400, "Missing bookingData")
        try:
            return await programmer.program_sequence(request.booking_data)
        except InvalidBooking as exc:
            return _failure(400, str(exc))

    @app.get("/api/devices")
    async def devices():
        try:
            found = manager.list_devices()
        except (OSError, RuntimeError) as exc:
            return JSONResponse(status_code=500, content={"error": str(exc)})
        return {"devices": found}

    @app.post("/encode-card")
    async def encode_card(request: EncodeCardRequest):
        if not request.card_issue_id or request.card_payload is None:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "result": None, "error": "Missing cardIssueId or cardPayload"},
            )
        try:
            result = await programmer.encode(request.card_payload)
        except KeycardError as exc:
            log_event(
                "encode_failed",
                {"card_issue_id": request.card_issue_id, "error": str(exc), "level": "warning"},
                workspace,
                role="bridge",
            )
            return {"ok": False, "result": None, "error": str(exc)}
        log_event(
            "encode_succeeded",
            {"card_issue_id": request.card_issue_id, "hotel_id": request.hotel_id, "card_uid": result["cardUID"]},
            workspace,
            role="bridge",
        )
        return {"ok": True, "result": result, "error": None}

    return app


def build_driver(name: str, config: KeycardConfig) -> ReaderDriver:
    if name == "simulated":
        return SimulatedReaderDriver(detect_delay=config.simulate_detect_delay)
    return create_driver(name)


def start_server(host: str = "127.0.0.1", port: Optional[int] = None, driver: str = "simulated"):
    """Run the bridge with uvicorn on ``port`` (``bridge_port`` from config by default)."""
    config = load_keycard_config()
    workspace = config.resolved_workspace()
    manager = ReaderConnectionManager(build_driver(driver, config), workspace=workspace)
    app = create_bridge_app(manager, config, workspace=workspace)
    port = port or config.bridge_port
    log_event("bridge_server", {"message": f"Starting card reader bridge on {host}:{port}", "driver": driver}, workspace, role="bridge")
    uvicorn.run(app, host=host, port=port, log_level="info")
