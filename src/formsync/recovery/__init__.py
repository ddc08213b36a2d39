from .classifier import (
    Classification,
    ErrorClassifier,
    ErrorKind,
    RECOVERABLE_STATUS_CODES,
    user_message,
)
from .engine import (
    RecoveryContext,
    RecoveryEngine,
    RecoveryOutcome,
    RecoveryResult,
    SweepReport,
)

__all__ = [
    "Classification",
    "ErrorClassifier",
    "ErrorKind",
    "RECOVERABLE_STATUS_CODES",
    "user_message",
    "RecoveryContext",
    "RecoveryEngine",
    "RecoveryOutcome",
    "RecoveryResult",
    "SweepReport",
]
