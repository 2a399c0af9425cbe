class KeycardError(Exception):
    """Base error for the key-card programming domain."""
    pass

class AgentUnavailable(KeycardError):
    """Raised when the local card-reader bridge cannot be reached."""
    pass

class ReaderNotConnected(KeycardError):
    """Raised when the bridge is up but no card reader is attached."""
    pass

class ReaderBusy(KeycardError):
    """Raised when another programming run already holds the reader."""
    pass

class CardDetectionTimeout(KeycardError):
    """Raised when no card is presented to the reader in time."""
    pass

class EncodeFailure(KeycardError):
    """Raised when writing or verifying a presented card fails."""
    pass

class LedgerWriteFailure(KeycardError):
    """Raised when a card issue record could not be created or updated."""
    pass

class StateConflict(KeycardError):
    """Raised when a card issue status transition is invalid."""
    pass

class CardIssueNotFound(KeycardError):
    """Raised when a card issue cannot be located."""
    pass

class InvalidBooking(KeycardError):
    """Raised when booking data cannot produce a card payload."""
    pass
