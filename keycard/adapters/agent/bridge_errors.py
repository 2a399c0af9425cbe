from __future__ import annotations


class AgentClientError(RuntimeError):
    pass


class AgentClientTimeoutError(AgentClientError):
    pass


class AgentClientNetworkError(AgentClientError):
    pass


class AgentClientRejectedError(AgentClientError):
    """Bridge answered with a non-2xx status or an unreadable body; ``detail`` carries its error text."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
