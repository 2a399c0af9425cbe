from typing import Dict, Set, Optional

from keycard.core.types import IssueStatus
from keycard.exceptions import StateConflict


class StateMachine:
    """
    Mechanical enforcer for CardIssue status transitions.
    Defines the allowed path for every card issue in the ledger.
    """

    _TRANSITIONS: Dict[IssueStatus, Set[IssueStatus]] = {
        IssueStatus.PENDING: {IssueStatus.QUEUED, IssueStatus.IN_PROGRESS, IssueStatus.FAILED},
        IssueStatus.QUEUED: {IssueStatus.PENDING, IssueStatus.IN_PROGRESS, IssueStatus.FAILED},
        IssueStatus.IN_PROGRESS: {IssueStatus.DONE, IssueStatus.FAILED},
        IssueStatus.FAILED: {IssueStatus.PENDING},  # Retry only
        IssueStatus.DONE: set(),  # Final State
    }

    TERMINAL = frozenset({IssueStatus.DONE, IssueStatus.FAILED})

    @staticmethod
    def validate_transition(current: IssueStatus, requested: IssueStatus) -> bool:
        allowed_next = StateMachine._TRANSITIONS.get(current, set())
        if requested not in allowed_next:
            raise StateConflict(f"Invalid card issue transition: {current.value} -> {requested.value}")
        return True

    @staticmethod
    def validate_retry(current: IssueStatus, retry_count: int, max_retries: Optional[int]) -> bool:
        """
        Retries re-queue failed issues only; a done card is never reopened.
        """
        if current != IssueStatus.FAILED:
            raise StateConflict(f"Only failed card issues can be retried (status is '{current.value}').")
        if max_retries is not None and retry_count >= max_retries:
            raise StateConflict(f"Retry limit reached ({retry_count}/{max_retries}).")
        return True

    @staticmethod
    def is_terminal(status: IssueStatus) -> bool:
        return status in StateMachine.TERMINAL
