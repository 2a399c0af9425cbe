from __future__ import annotations
import sqlite3
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from keycard.core.types import CardType, IssueStatus
from keycard.domain.records import CardIssueRecord, DeviceLogRecord, IssueEventRecord
from keycard.exceptions import KeycardError

class CardIssueRepository(ABC):
    """Port for the card issue ledger (one record per physical card)."""
    @abstractmethod
    async def create_card_issue(
        self,
        hotel_id: str,
        room_id: Optional[str],
        booking_id: Optional[str],
        card_type: CardType,
        payload: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
    ) -> CardIssueRecord: ...

    @abstractmethod
    async def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        agent_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> CardIssueRecord: ...

    @abstractmethod
    async def get_card_issues(
        self,
        hotel_id: str,
        *,
        status: Optional[IssueStatus] = None,
        booking_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[CardIssueRecord]: ...

    @abstractmethod
    async def get_card_issue(self, issue_id: str) -> Optional[CardIssueRecord]: ...

    @abstractmethod
    async def retry_card_issue(self, issue_id: str) -> CardIssueRecord: ...

    @abstractmethod
    async def get_issue_history(self, issue_id: str) -> List[IssueEventRecord]: ...

class DeviceLogRepository(ABC):
    """Port for agent/device event logs."""
    @abstractmethod
    async def log_device_event(
        self,
        agent_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        device_id: Optional[str] = None,
        card_issue_id: Optional[str] = None,
    ) -> DeviceLogRecord: ...

    @abstractmethod
    async def get_device_logs(self, agent_id: str, limit: int = 50) -> List[DeviceLogRecord]: ...

# Exception families a ledger adapter may raise; the controller records these
# as ledger write failures instead of letting them abort a run.
LEDGER_ERRORS = (KeycardError, RuntimeError, OSError, ValueError, sqlite3.Error)
