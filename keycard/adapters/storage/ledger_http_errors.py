from __future__ import annotations


class LedgerClientError(RuntimeError):
    pass


class LedgerClientTimeoutError(LedgerClientError):
    pass


class LedgerClientNetworkError(LedgerClientError):
    pass


class LedgerClientRateLimitError(LedgerClientError):
    pass
