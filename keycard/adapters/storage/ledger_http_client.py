from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from keycard.core.types import CardType, IssueStatus
from keycard.domain.records import CardIssueRecord, DeviceLogRecord, IssueEventRecord
from keycard.exceptions import CardIssueNotFound, InvalidBooking, StateConflict
from keycard.repositories import CardIssueRepository, DeviceLogRepository

from .ledger_http_errors import (
    LedgerClientError,
    LedgerClientNetworkError,
    LedgerClientRateLimitError,
    LedgerClientTimeoutError,
)

logger = logging.getLogger("keycard.ledger_client")


class LedgerHTTPClient(CardIssueRepository, DeviceLogRepository):
    """Card issue ledger reached over the cloud Ledger API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.25,
        backoff_max_seconds: float = 2.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.transport = transport

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    async def _request_response(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.request(method, url, headers=self.headers, params=params, json=payload)
                response.raise_for_status()
                return response
        except httpx.TimeoutException as exc:
            self.log_failure("timeout", operation=f"{method} {path}", error=str(exc))
            raise LedgerClientTimeoutError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            detail = self.extract_detail(exc.response)
            self.log_failure("http_status", operation=f"{method} {path}", status_code=status_code, error=detail)
            raise self.classify_http_error(status_code=status_code, detail=detail) from exc
        except httpx.RequestError as exc:
            self.log_failure("network", operation=f"{method} {path}", error=str(exc))
            raise LedgerClientNetworkError(str(exc)) from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        attempts = 0
        while True:
            try:
                response = await self._request_response(method, path, params=params, payload=payload)
                break
            except (LedgerClientTimeoutError, LedgerClientNetworkError, LedgerClientRateLimitError):
                if attempts >= self.max_retries:
                    raise
                delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2**attempts))
                await asyncio.sleep(delay)
                attempts += 1
        if not response.text.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            self.log_failure("invalid_body", operation=f"{method} {path}", status_code=response.status_code, error=str(exc))
            raise LedgerClientError(f"Ledger API returned invalid JSON for {method} {path}.") from exc

    @staticmethod
    def extract_detail(response: Optional[httpx.Response]) -> str:
        if response is None:
            return ""
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or body)
        return str(body)

    @staticmethod
    def require_field(body: Any, key: str) -> Dict[str, Any]:
        value = body.get(key) if isinstance(body, dict) else None
        if not isinstance(value, dict):
            raise LedgerClientError(f"Ledger API response is missing '{key}'.")
        return value

    @staticmethod
    def require_items(body: Any, key: str) -> List[Any]:
        if body is None:
            return []
        value = body.get(key, []) if isinstance(body, dict) else None
        if not isinstance(value, list):
            raise LedgerClientError(f"Ledger API response has no '{key}' list.")
        return value

    @staticmethod
    def classify_http_error(*, status_code: Optional[int], detail: str) -> Exception:
        if status_code == 404:
            return CardIssueNotFound(detail)
        if status_code == 409:
            return StateConflict(detail)
        if status_code in {400, 422}:
            return InvalidBooking(detail)
        if status_code == 429:
            return LedgerClientRateLimitError(detail)
        return LedgerClientError(f"HTTP {status_code}: {detail}")

    @staticmethod
    def log_failure(failure_class: str, **fields: Any) -> None:
        record = {
            "event": "ledger_client_failure",
            "failure_class": failure_class,
            **fields,
        }
        logger.warning(json.dumps(record, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Card issues
    # ------------------------------------------------------------------
    async def create_card_issue(
        self,
        hotel_id: str,
        room_id: Optional[str],
        booking_id: Optional[str],
        card_type: CardType,
        payload: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
    ) -> CardIssueRecord:
        body = await self._request_json(
            "POST",
            "/v1/card-issues",
            payload={
                "hotelId": hotel_id,
                "roomId": room_id,
                "bookingId": booking_id,
                "cardType": CardType(card_type).value,
                "payload": payload,
                "userId": user_id,
            },
        )
        return CardIssueRecord.model_validate(self.require_field(body, "cardIssue"))

    async def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        agent_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> CardIssueRecord:
        body = await self._request_json(
            "PATCH",
            f"/v1/card-issues/{issue_id}/status",
            payload={
                "status": IssueStatus(status).value,
                "result": result,
                "error_message": error_message,
                "agentId": agent_id,
                "deviceId": device_id,
            },
        )
        return CardIssueRecord.model_validate(self.require_field(body, "cardIssue"))

    async def get_card_issues(
        self,
        hotel_id: str,
        *,
        status: Optional[IssueStatus] = None,
        booking_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[CardIssueRecord]:
        params: Dict[str, Any] = {
            "hotel": hotel_id,
            "limit": limit,
            "offset": offset,
            "order": "asc" if oldest_first else "desc",
        }
        if status is not None:
            params["status"] = IssueStatus(status).value
        if booking_id is not None:
            params["booking"] = booking_id
        body = await self._request_json("GET", "/v1/card-issues", params=params)
        return [CardIssueRecord.model_validate(item) for item in self.require_items(body, "cardIssues")]

    async def get_card_issue(self, issue_id: str) -> Optional[CardIssueRecord]:
        try:
            body = await self._request_json("GET", f"/v1/card-issues/{issue_id}")
        except CardIssueNotFound:
            return None
        return CardIssueRecord.model_validate(self.require_field(body, "cardIssue"))

    async def retry_card_issue(self, issue_id: str) -> CardIssueRecord:
        body = await self._request_json("POST", f"/v1/card-issues/{issue_id}/retry")
        return CardIssueRecord.model_validate(self.require_field(body, "cardIssue"))

    async def get_issue_history(self, issue_id: str) -> List[IssueEventRecord]:
        body = await self._request_json("GET", f"/v1/card-issues/{issue_id}")
        return [IssueEventRecord.model_validate(item) for item in self.require_items(body, "history")]

    # ------------------------------------------------------------------
    # Device logs
    # ------------------------------------------------------------------
    async def log_device_event(
        self,
        agent_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        device_id: Optional[str] = None,
        card_issue_id: Optional[str] = None,
    ) -> DeviceLogRecord:
        body = await self._request_json(
            "POST",
            f"/v1/agents/{agent_id}/log",
            payload={
                "eventType": event_type,
                "payload": payload,
                "deviceId": device_id,
                "cardIssueId": card_issue_id,
            },
        )
        return DeviceLogRecord.model_validate(self.require_field(body, "log"))

    async def get_device_logs(self, agent_id: str, limit: int = 50) -> List[DeviceLogRecord]:
        body = await self._request_json("GET", f"/v1/agents/{agent_id}/log", params={"limit": limit})
        return [DeviceLogRecord.model_validate(item) for item in self.require_items(body, "logs")]
