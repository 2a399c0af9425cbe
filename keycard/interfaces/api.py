from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from keycard import __version__
from keycard.adapters.storage.ledger_http_errors import LedgerClientError
from keycard.application.services.cancellation import CancellationToken
from keycard.application.services.reader_locks import ReaderLockRegistry
from keycard.application.services.retry_service import RetryService
from keycard.application.services.sequence_controller import CardAgent, SequenceController
from keycard.core.types import CardType, IssueStatus
from keycard.exceptions import (
    AgentUnavailable,
    CardIssueNotFound,
    InvalidBooking,
    KeycardError,
    ReaderBusy,
    ReaderNotConnected,
    StateConflict,
)
from keycard.logging import get_run_summary, log_event, setup_logging
from keycard.repositories import CardIssueRepository, DeviceLogRepository
from keycard.settings import KeycardConfig
from keycard.state import RunRegistry, runtime_state


class CreateCardIssueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hotel_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("hotelId", "hotel_id"))
    room_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("roomId", "room_id"))
    booking_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("bookingId", "booking_id"))
    card_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("cardType", "card_type"))
    payload: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: IssueStatus
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(default=None, validation_alias=AliasChoices("error_message", "errorMessage"))
    agent_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("agentId", "agent_id"))
    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceId", "device_id"))


class DeviceLogRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(validation_alias=AliasChoices("eventType", "event_type"))
    payload: Dict[str, Any] = Field(default_factory=dict)
    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceId", "device_id"))
    card_issue_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("cardIssueId", "card_issue_id"))


class CardSequenceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hotel_id: str = Field(validation_alias=AliasChoices("hotelId", "hotel_id"))
    room_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("roomId", "room_id"))
    booking: Dict[str, Any] = Field(validation_alias=AliasChoices("booking", "bookingData"))
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    run_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("runId", "run_id"))


API_ERRORS = (KeycardError, LedgerClientError)


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidBooking):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, CardIssueNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (StateConflict, ReaderBusy)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (AgentUnavailable, ReaderNotConnected)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, LedgerClientError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_api_app(
    ledger: CardIssueRepository,
    agent: CardAgent,
    config: Optional[KeycardConfig] = None,
    *,
    device_logs: Optional[DeviceLogRepository] = None,
    registry: Optional[RunRegistry] = None,
    locks: Optional[ReaderLockRegistry] = None,
    workspace: Optional[Path] = None,
) -> FastAPI:
    config = config or KeycardConfig()
    registry = registry or runtime_state
    locks = locks or ReaderLockRegistry()
    workspace = workspace or config.resolved_workspace()
    if device_logs is None and isinstance(ledger, DeviceLogRepository):
        device_logs = ledger
    controller = SequenceController(
        ledger, agent, config, locks=locks, registry=registry, device_logs=device_logs, workspace=workspace
    )
    retries = RetryService(ledger, agent, config, locks=locks, workspace=workspace)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        setup_logging(workspace)
        log_event("api_started", {"bridge_url": config.bridge_url, "agent_id": config.agent_id}, workspace, role="api")
        yield

    app = FastAPI(title="Keycard Ledger API", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.state.controller = controller
    app.state.retries = retries
    v1_router = APIRouter(prefix="/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "keycard-ledger", "version": __version__}

    # --- Card issues ---

    @v1_router.get("/card-issues")
    async def list_card_issues(
        hotel: Optional[str] = Query(default=None),
        status: Optional[IssueStatus] = Query(default=None),
        booking: Optional[str] = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        order: str = Query(default="desc", pattern="^(asc|desc)$"),
    ):
        if not hotel:
            raise HTTPException(status_code=400, detail="Hotel ID required")
        try:
            issues = await ledger.get_card_issues(
                hotel, status=status, booking_id=booking, limit=limit, offset=offset, oldest_first=order == "asc"
            )
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"cardIssues": [issue.model_dump(mode="json") for issue in issues]}

    @v1_router.post("/card-issues", status_code=201)
    async def create_card_issue(request: CreateCardIssueRequest):
        if not request.hotel_id or not request.card_type or request.payload is None:
            raise HTTPException(status_code=400, detail="Missing required fields: hotelId, cardType, payload")
        try:
            card_type = CardType(request.card_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown card type: {request.card_type}") from exc
        try:
            issue = await ledger.create_card_issue(
                request.hotel_id,
                request.room_id,
                request.booking_id,
                card_type,
                request.payload,
                user_id=request.user_id,
            )
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"cardIssue": issue.model_dump(mode="json")}

    @v1_router.post("/card-issues/replay")
    async def replay_card_issues(hotel: Optional[str] = Query(default=None), limit: int = Query(default=50, ge=1)):
        if not hotel:
            raise HTTPException(status_code=400, detail="Hotel ID required")
        try:
            return await retries.replay_pending(hotel, limit=limit)
        except API_ERRORS as exc:
            raise http_error(exc) from exc

    @v1_router.get("/card-issues/{issue_id}")
    async def get_card_issue(issue_id: str):
        try:
            issue = await ledger.get_card_issue(issue_id)
            if issue is None:
                raise CardIssueNotFound(f"Card issue '{issue_id}' not found")
            history = await ledger.get_issue_history(issue_id)
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {
            "cardIssue": issue.model_dump(mode="json"),
            "history": [event.model_dump(mode="json") for event in history],
        }

    @v1_router.patch("/card-issues/{issue_id}/status")
    async def update_card_issue_status(issue_id: str, request: StatusUpdateRequest):
        try:
            issue = await ledger.update_card_issue_status(
                issue_id,
                request.status,
                result=request.result,
                error_message=request.error_message,
                agent_id=request.agent_id,
                device_id=request.device_id,
            )
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"cardIssue": issue.model_dump(mode="json")}

    @v1_router.post("/card-issues/{issue_id}/retry")
    async def retry_card_issue(issue_id: str):
        try:
            issue = await ledger.retry_card_issue(issue_id)
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"cardIssue": issue.model_dump(mode="json")}

    # --- Card sequences ---

    @v1_router.post("/bookings/{booking_id}/card-sequence")
    async def run_card_sequence(booking_id: str, request: CardSequenceRequest):
        booking = {**request.booking, "booking_id": booking_id}
        booking.pop("bookingId", None)
        booking.pop("id", None)
        try:
            outcome = await controller.run_sequence(
                booking,
                request.hotel_id,
                request.room_id,
                token=CancellationToken(),
                run_id=request.run_id,
                user_id=request.user_id,
            )
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        body = outcome.model_dump(mode="json")
        body["succeeded"] = outcome.succeeded
        return body

    @v1_router.post("/bookings/{booking_id}/retry-failed")
    async def retry_failed_cards(booking_id: str, hotel: Optional[str] = Query(default=None)):
        if not hotel:
            raise HTTPException(status_code=400, detail="Hotel ID required")
        try:
            requeued = await retries.retry_failed(hotel, booking_id)
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"cardIssues": [issue.model_dump(mode="json") for issue in requeued]}

    @v1_router.get("/card-sequence/active")
    async def active_card_sequences():
        return {"runs": await registry.list_runs()}

    @v1_router.post("/card-sequence/{run_id}/cancel")
    async def cancel_card_sequence(run_id: str):
        if not await registry.cancel_run(run_id, "cancelled"):
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
        log_event("sequence_cancel_requested", {"run_id": run_id}, workspace, role="api")
        return {"ok": True, "run_id": run_id}

    @v1_router.get("/card-sequence/{run_id}/summary")
    async def card_sequence_summary(run_id: str):
        summary = get_run_summary(workspace, run_id)
        if not summary or (not summary.get("cards") and summary.get("outcome") is None):
            raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
        return summary

    # --- Agent device logs ---

    @v1_router.post("/agents/{agent_id}/log", status_code=201)
    async def post_device_log(agent_id: str, request: DeviceLogRequest):
        if device_logs is None:
            raise HTTPException(status_code=501, detail="Device logging is not configured")
        try:
            record = await device_logs.log_device_event(
                agent_id,
                request.event_type,
                request.payload,
                device_id=request.device_id,
                card_issue_id=request.card_issue_id,
            )
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"log": record.model_dump(mode="json")}

    @v1_router.get("/agents/{agent_id}/log")
    async def get_device_logs(agent_id: str, limit: int = Query(default=50, ge=1, le=500)):
        if device_logs is None:
            raise HTTPException(status_code=501, detail="Device logging is not configured")
        try:
            records = await device_logs.get_device_logs(agent_id, limit=limit)
        except API_ERRORS as exc:
            raise http_error(exc) from exc
        return {"logs": [record.model_dump(mode="json") for record in records]}

    app.include_router(v1_router)
    return app
