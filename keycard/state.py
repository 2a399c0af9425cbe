# keycard/state.py
import asyncio
from typing import Dict, List

from keycard.application.services.cancellation import CancellationToken


class RunRegistry:
    """Process-wide registry of running card sequences and their cancel tokens."""
    def __init__(self):
        self.active_runs: Dict[str, CancellationToken] = {}
        self.run_bookings: Dict[str, str] = {}
        self._runs_lock = asyncio.Lock()

    async def add_run(self, run_id: str, token: CancellationToken, booking_id: str) -> None:
        async with self._runs_lock:
            self.active_runs[run_id] = token
            self.run_bookings[run_id] = booking_id

    async def remove_run(self, run_id: str) -> None:
        async with self._runs_lock:
            self.active_runs.pop(run_id, None)
            self.run_bookings.pop(run_id, None)

    async def cancel_run(self, run_id: str, reason: str = "cancelled") -> bool:
        async with self._runs_lock:
            token = self.active_runs.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def list_runs(self) -> List[Dict[str, str]]:
        async with self._runs_lock:
            return [{"run_id": run_id, "booking_id": self.run_bookings.get(run_id, "")} for run_id in self.active_runs]


runtime_state = RunRegistry()
