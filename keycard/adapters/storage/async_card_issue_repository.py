"""
Async Card Issue Ledger.

aiosqlite-backed ledger for card issues, their audit trail and device logs.
Writes are serialized with a single asyncio lock so an upsert keyed by
(booking_id, card_type) cannot race with itself.
"""
from __future__ import annotations
import aiosqlite
import json
import asyncio
import uuid
from pathlib import Path
from typing import List, Dict, Any, Optional

from keycard.core.domain.state_machine import StateMachine
from keycard.core.types import CardType, IssueStatus
from keycard.domain.records import CardIssueRecord, DeviceLogRecord, IssueEventRecord
from keycard.exceptions import CardIssueNotFound
from keycard.repositories import CardIssueRepository, DeviceLogRepository
from keycard.time_utils import now_utc


class AsyncCardIssueRepository(CardIssueRepository, DeviceLogRepository):
    """
    Async implementation of the card issue ledger using aiosqlite.
    Hardened for concurrent write operations.
    """

    def __init__(self, db_path: str | Path, *, max_retries: Optional[int] = 3):
        self.db_path = str(db_path)
        self.max_retries = max_retries
        self._initialized = False
        self._lock = asyncio.Lock()

    async def _ensure_initialized(self, conn: aiosqlite.Connection):
        """Ensure database schema exists. Assumes already locked."""
        if self._initialized:
            return

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS card_issues (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                hotel_id TEXT NOT NULL,
                booking_id TEXT,
                room_id TEXT,
                user_id TEXT,
                agent_id TEXT,
                device_id TEXT,
                card_type TEXT NOT NULL,
                payload_json TEXT,
                status TEXT DEFAULT 'pending',
                result_json TEXT,
                error_message TEXT,
                retry_count INTEGER DEFAULT 0,
                max_retries INTEGER,
                created_at DATETIME,
                updated_at DATETIME,
                completed_at DATETIME
            )
        """)
        # At most one record per (booking, card type); retries reuse it.
        await conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_card_issues_booking_type
            ON card_issues (booking_id, card_type) WHERE booking_id IS NOT NULL
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_card_issues_hotel ON card_issues (hotel_id, status)")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS card_issue_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                issue_id TEXT,
                actor TEXT,
                action TEXT,
                timestamp DATETIME,
                FOREIGN KEY(issue_id) REFERENCES card_issues(id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS device_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                device_id TEXT,
                card_issue_id TEXT,
                event_type TEXT NOT NULL,
                payload_json TEXT,
                created_at DATETIME
            )
        """)
        self._initialized = True

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
        card_type = CardType(card_type)
        now = now_utc().isoformat()
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)

                existing = None
                if booking_id:
                    cursor = await conn.execute(
                        "SELECT * FROM card_issues WHERE booking_id = ? AND card_type = ?",
                        (booking_id, card_type.value),
                    )
                    row = await cursor.fetchone()
                    existing = self._to_record(row) if row else None

                if existing is None:
                    issue_id = str(uuid.uuid4())
                    await conn.execute(
                        """INSERT INTO card_issues
                           (id, hotel_id, booking_id, room_id, user_id, card_type, payload_json,
                            status, retry_count, max_retries, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
                        (issue_id, hotel_id, booking_id, room_id, user_id, card_type.value,
                         json.dumps(payload), IssueStatus.PENDING.value, self.max_retries, now, now),
                    )
                    await self._append_event(conn, issue_id, user_id or "system", f"Created {card_type.value} card issue")
                elif existing.status == IssueStatus.DONE:
                    # Never reopen a programmed card.
                    await self._append_event(conn, existing.id, user_id or "system", "Create skipped: card already programmed")
                    await conn.commit()
                    return existing
                elif existing.status == IssueStatus.FAILED:
                    StateMachine.validate_retry(existing.status, existing.retry_count, None)
                    issue_id = existing.id
                    await conn.execute(
                        """UPDATE card_issues SET status = ?, payload_json = ?, room_id = ?, result_json = NULL,
                           error_message = NULL, retry_count = retry_count + 1, updated_at = ? WHERE id = ?""",
                        (IssueStatus.PENDING.value, json.dumps(payload), room_id, now, issue_id),
                    )
                    await self._append_event(conn, issue_id, user_id or "system", "Re-queued failed card issue")
                else:
                    # Interrupted run: reuse the open record instead of spawning a duplicate.
                    issue_id = existing.id
                    await conn.execute(
                        """UPDATE card_issues SET status = ?, payload_json = ?, room_id = ?, updated_at = ? WHERE id = ?""",
                        (IssueStatus.PENDING.value, json.dumps(payload), room_id, now, issue_id),
                    )
                    await self._append_event(conn, issue_id, user_id or "system", f"Reopened {existing.status.value} card issue")

                await conn.commit()
                return await self._fetch(conn, issue_id)

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
        status = IssueStatus(status)
        now = now_utc().isoformat()
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                current = await self._fetch(conn, issue_id)
                StateMachine.validate_transition(current.status, status)

                fields: Dict[str, Any] = {"status": status.value, "updated_at": now}
                if status == IssueStatus.DONE:
                    fields["result_json"] = json.dumps(result or {})
                    fields["error_message"] = None
                elif status == IssueStatus.FAILED:
                    fields["error_message"] = error_message or "Unknown error"
                    fields["result_json"] = None
                if agent_id:
                    fields["agent_id"] = agent_id
                if device_id:
                    fields["device_id"] = device_id
                if StateMachine.is_terminal(status) and not current.completed_at:
                    fields["completed_at"] = now

                assignments = ", ".join(f"{column} = ?" for column in fields)
                await conn.execute(
                    f"UPDATE card_issues SET {assignments} WHERE id = ?",
                    (*fields.values(), issue_id),
                )
                await self._append_event(conn, issue_id, agent_id or "system", f"Set Status to '{status.value}'")
                await conn.commit()
                return await self._fetch(conn, issue_id)

    async def retry_card_issue(self, issue_id: str) -> CardIssueRecord:
        now = now_utc().isoformat()
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                current = await self._fetch(conn, issue_id)
                StateMachine.validate_retry(current.status, current.retry_count, current.max_retries)
                await conn.execute(
                    """UPDATE card_issues SET status = ?, retry_count = retry_count + 1, error_message = NULL,
                       result_json = NULL, updated_at = ? WHERE id = ?""",
                    (IssueStatus.PENDING.value, now, issue_id),
                )
                await self._append_event(conn, issue_id, "system", f"Retry #{current.retry_count + 1} queued")
                await conn.commit()
                return await self._fetch(conn, issue_id)

    async def get_card_issue(self, issue_id: str) -> Optional[CardIssueRecord]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute("SELECT * FROM card_issues WHERE id = ?", (issue_id,))
                row = await cursor.fetchone()
                if not row: return None
                return self._to_record(row)

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
        clauses = ["hotel_id = ?"]
        params: List[Any] = [hotel_id]
        if status is not None:
            clauses.append("status = ?")
            params.append(IssueStatus(status).value)
        if booking_id is not None:
            clauses.append("booking_id = ?")
            params.append(booking_id)
        params.extend([max(1, int(limit)), max(0, int(offset))])
        order = "ASC" if oldest_first else "DESC"
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    f"SELECT * FROM card_issues WHERE {' AND '.join(clauses)} ORDER BY seq {order} LIMIT ? OFFSET ?",
                    params,
                )
                rows = await cursor.fetchall()
                return [self._to_record(row) for row in rows]

    async def get_issue_history(self, issue_id: str) -> List[IssueEventRecord]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM card_issue_events WHERE issue_id = ? ORDER BY id ASC", (issue_id,)
                )
                rows = await cursor.fetchall()
                return [
                    IssueEventRecord(issue_id=row["issue_id"], actor=row["actor"], action=row["action"], timestamp=row["timestamp"])
                    for row in rows
                ]

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
        now = now_utc().isoformat()
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    """INSERT INTO device_logs (agent_id, device_id, card_issue_id, event_type, payload_json, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (agent_id, device_id, card_issue_id, event_type, json.dumps(payload or {}), now),
                )
                await conn.commit()
                return DeviceLogRecord(
                    id=cursor.lastrowid,
                    agent_id=agent_id,
                    device_id=device_id,
                    card_issue_id=card_issue_id,
                    event_type=event_type,
                    payload=payload or {},
                    created_at=now,
                )

    async def get_device_logs(self, agent_id: str, limit: int = 50) -> List[DeviceLogRecord]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await self._ensure_initialized(conn)
                cursor = await conn.execute(
                    "SELECT * FROM device_logs WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
                    (agent_id, max(1, int(limit))),
                )
                rows = await cursor.fetchall()
                return [
                    DeviceLogRecord(
                        id=row["id"],
                        agent_id=row["agent_id"],
                        device_id=row["device_id"],
                        card_issue_id=row["card_issue_id"],
                        event_type=row["event_type"],
                        payload=self._loads(row["payload_json"]) or {},
                        created_at=row["created_at"],
                    )
                    for row in rows
                ]

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------
    async def _fetch(self, conn: aiosqlite.Connection, issue_id: str) -> CardIssueRecord:
        cursor = await conn.execute("SELECT * FROM card_issues WHERE id = ?", (issue_id,))
        row = await cursor.fetchone()
        if not row:
            raise CardIssueNotFound(f"Card issue '{issue_id}' not found.")
        return self._to_record(row)

    async def _append_event(self, conn: aiosqlite.Connection, issue_id: str, actor: str, action: str) -> None:
        await conn.execute(
            "INSERT INTO card_issue_events (issue_id, actor, action, timestamp) VALUES (?, ?, ?, ?)",
            (issue_id, actor, action, now_utc().isoformat()),
        )

    @staticmethod
    def _loads(raw: Optional[str]) -> Any:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def _to_record(self, row: aiosqlite.Row) -> CardIssueRecord:
        data = dict(row)
        data.pop("seq", None)
        data["payload"] = self._loads(data.pop("payload_json", None)) or {}
        data["result"] = self._loads(data.pop("result_json", None))
        return CardIssueRecord.model_validate(data)
