from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from keycard.adapters.agent.bridge_errors import AgentClientError
from keycard.core.types import IssueStatus
from keycard.domain.messages import CARD_READER_MESSAGES
from keycard.domain.records import CardIssueRecord
from keycard.exceptions import AgentUnavailable, KeycardError, ReaderNotConnected, StateConflict
from keycard.logging import log_event
from keycard.repositories import LEDGER_ERRORS, CardIssueRepository
from keycard.settings import KeycardConfig

from .reader_locks import ReaderLockRegistry
from .sequence_controller import CardAgent


class RetryService:
    """
    Re-queues failed card issues and replays pending ones through the bridge,
    one card at a time under the reader lock.
    """

    def __init__(
        self,
        ledger: CardIssueRepository,
        agent: CardAgent,
        config: Optional[KeycardConfig] = None,
        *,
        locks: Optional[ReaderLockRegistry] = None,
        workspace: Optional[Path] = None,
    ) -> None:
        self.ledger = ledger
        self.agent = agent
        self.config = config or KeycardConfig()
        self.locks = locks or ReaderLockRegistry()
        self.workspace = workspace

    async def retry_failed(self, hotel_id: str, booking_id: str) -> List[CardIssueRecord]:
        """Move every failed issue of a booking back to pending (retry_count + 1)."""
        failed = await self.ledger.get_card_issues(hotel_id, status=IssueStatus.FAILED, booking_id=booking_id)
        requeued = []
        for issue in failed:
            try:
                requeued.append(await self.ledger.retry_card_issue(issue.id))
            except StateConflict as exc:
                log_event(
                    "retry_skipped",
                    {"card_issue_id": issue.id, "card_type": issue.card_type.value, "error": str(exc), "level": "warning"},
                    self.workspace,
                    role="retry",
                )
        log_event(
            "retry_failed_completed",
            {"hotel_id": hotel_id, "booking_id": booking_id, "requeued": len(requeued), "failed": len(failed)},
            self.workspace,
            role="retry",
        )
        return requeued

    async def replay_pending(self, hotel_id: str, limit: int = 50) -> Dict[str, int]:
        """Encode every pending issue of a hotel, oldest first."""
        async with self.locks.hold(self.config.reader_id or hotel_id):
            availability = await self.agent.check_availability()
            if not availability.get("available"):
                raise AgentUnavailable(CARD_READER_MESSAGES["service_unavailable"])
            if not availability.get("reader_connected"):
                raise ReaderNotConnected(CARD_READER_MESSAGES["reader_not_connected"])

            pending = await self.ledger.get_card_issues(
                hotel_id, status=IssueStatus.PENDING, limit=limit, oldest_first=True
            )
            counts = {"success": 0, "failed": 0, "total": len(pending)}
            for issue in pending:
                if await self._replay_one(issue):
                    counts["success"] += 1
                else:
                    counts["failed"] += 1

        log_event("replay_completed", {"hotel_id": hotel_id, **counts}, self.workspace, role="retry")
        return counts

    async def _replay_one(self, issue: CardIssueRecord) -> bool:
        try:
            issue = await self.ledger.update_card_issue_status(
                issue.id, IssueStatus.IN_PROGRESS, agent_id=self.config.agent_id
            )
        except LEDGER_ERRORS as exc:
            log_event("replay_ledger_failed", {"card_issue_id": issue.id, "error": str(exc), "level": "error"}, self.workspace, role="retry")
            return False

        try:
            response = await asyncio.wait_for(
                self.agent.encode(issue.id, issue.payload, issue.hotel_id, issue.room_id),
                timeout=self.config.card_programming_timeout,
            )
        except asyncio.TimeoutError:
            response = {"ok": False, "error": "Card programming timed out"}
        except (AgentClientError, KeycardError) as exc:
            response = {"ok": False, "error": str(exc)}
        except Exception as exc:
            response = {"ok": False, "error": str(exc) or type(exc).__name__}

        try:
            if response.get("ok"):
                await self.ledger.update_card_issue_status(
                    issue.id, IssueStatus.DONE, result=response.get("result") or {}, agent_id=self.config.agent_id
                )
                return True
            await self.ledger.update_card_issue_status(
                issue.id,
                IssueStatus.FAILED,
                error_message=str(response.get("error") or CARD_READER_MESSAGES["programming_failed"]),
                agent_id=self.config.agent_id,
            )
        except LEDGER_ERRORS as exc:
            log_event("replay_ledger_failed", {"card_issue_id": issue.id, "error": str(exc), "level": "error"}, self.workspace, role="retry")
        return False
