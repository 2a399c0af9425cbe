from enum import Enum

class CardType(str, Enum):
    AUTHORIZATION_1 = "authorization_1"
    INSTALLATION = "installation"
    AUTHORIZATION_2 = "authorization_2"
    CLOCK = "clock"
    ROOM = "room"

# Physical lock-programming order: arm, install, re-arm, set clock, issue guest key.
CARD_SEQUENCE = (
    CardType.AUTHORIZATION_1,
    CardType.INSTALLATION,
    CardType.AUTHORIZATION_2,
    CardType.CLOCK,
    CardType.ROOM,
)

class IssueStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"

class CardStateStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"         # Operator asked to place the card
    PROGRAMMING = "programming" # Ledger record open, encode in flight
    SUCCESS = "success"
    ERROR = "error"

class SessionStatus(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    DETECTED = "detected"
    WRITING = "writing"
    WRITTEN = "written"
    WRITE_FAILED = "write_failed"
    DETECTION_TIMEOUT = "detection_timeout"

class OutcomeStatus(str, Enum):
    FULL_SUCCESS = "full_success"
    PARTIAL_SUCCESS = "partial_success"
    TOTAL_FAILURE = "total_failure"
    CANCELLED = "cancelled"

class FailureKind(str, Enum):
    DETECTION_TIMEOUT = "card_detection_timeout"
    ENCODE_FAILURE = "encode_failure"
    READER_NOT_CONNECTED = "reader_not_connected"
    AGENT_UNAVAILABLE = "agent_unavailable"
    LEDGER_WRITE_FAILURE = "ledger_write_failure"
