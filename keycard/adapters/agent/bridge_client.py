from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from keycard.core.types import CardType
from keycard.domain.records import Booking
from keycard.exceptions import CardDetectionTimeout, ReaderNotConnected

from .bridge_errors import (
    AgentClientError,
    AgentClientNetworkError,
    AgentClientRejectedError,
    AgentClientTimeoutError,
)

logger = logging.getLogger("keycard.agent_client")


class AgentClient:
    """HTTP client for the card-reader bridge running next to the hardware."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        *,
        timeout_seconds: float = 30.0,
        health_timeout_seconds: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self.transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=timeout if timeout is not None else self.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.request(method, url, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            self.log_failure("timeout", operation=f"{method} {path}", error=str(exc))
            raise AgentClientTimeoutError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            detail = self.extract_detail(exc.response)
            self.log_failure("http_status", operation=f"{method} {path}", status_code=status_code, error=detail)
            raise AgentClientRejectedError(status_code, detail) from exc
        except httpx.RequestError as exc:
            self.log_failure("network", operation=f"{method} {path}", error=str(exc))
            raise AgentClientNetworkError(str(exc)) from exc
        if not response.text.strip():
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            self.log_failure("invalid_body", operation=f"{method} {path}", status_code=response.status_code, error=str(exc))
            raise AgentClientRejectedError(response.status_code, "invalid JSON") from exc
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def extract_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or body)
        return str(body)

    @staticmethod
    def log_failure(failure_class: str, **fields: Any) -> None:
        record = {
            "event": "agent_client_failure",
            "failure_class": failure_class,
            **fields,
        }
        logger.warning(json.dumps(record, ensure_ascii=False))

    async def check_availability(self) -> Dict[str, bool]:
        """
        Never raises: a stopped bridge reports ``available = False`` and a bridge
        without hardware reports ``reader_connected = False``.
        """
        try:
            body = await self._request("GET", "/health", timeout=self.health_timeout_seconds)
        except AgentClientError:
            return {"available": False, "reader_connected": False}
        return {
            "available": True,
            "reader_connected": bool(body.get("readerConnected", False)),
        }

    async def encode(
        self,
        issue_id: str,
        payload: Dict[str, Any],
        hotel_id: str,
        room_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            body = await self._request(
                "POST",
                "/encode-card",
                payload={
                    "cardIssueId": issue_id,
                    "cardPayload": payload,
                    "hotelId": hotel_id,
                    "roomId": room_id,
                },
            )
        except AgentClientRejectedError as exc:
            return {"ok": False, "result": None, "error": exc.detail}
        return {
            "ok": bool(body.get("ok")),
            "result": body.get("result"),
            "error": body.get("error"),
        }

    async def reader_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/reader/status")

    async def reconnect_reader(self) -> Dict[str, Any]:
        return await self._request("POST", "/api/reader/reconnect")

    async def detect_card(self) -> Dict[str, Any]:
        try:
            body = await self._request("POST", "/api/card/detect")
        except AgentClientRejectedError as exc:
            if exc.status_code == 400:
                raise CardDetectionTimeout(exc.detail) from exc
            if exc.status_code == 503:
                raise ReaderNotConnected(exc.detail) from exc
            raise
        return body.get("card") or {}

    async def program_card(self, card_type: CardType, booking: Booking | Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/api/card/program",
            payload={"cardType": CardType(card_type).value, "bookingData": _booking_json(booking)},
        )

    async def program_sequence(self, booking: Booking | Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/api/card/program-sequence",
            payload={"bookingData": _booking_json(booking)},
        )

    async def list_devices(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/api/devices")
        return list(body.get("devices") or [])


def _booking_json(booking: Booking | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(booking, Booking):
        return booking.model_dump(mode="json")
    return dict(booking)
