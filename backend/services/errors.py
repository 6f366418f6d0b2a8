"""Exception taxonomy for progress resolution.

Only ``ValidationError`` and unremediated ``CorruptionDetected`` are
meant to reach an operator.  Everything else is logged and retried on
the next scheduled pass.
"""

from typing import Optional


class ProgressEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(ProgressEngineError):
    """Malformed or missing call data.  Never retried automatically."""


class DataUnavailable(ProgressEngineError):
    """Upstream market data missing, late, or failing."""


class RateLimited(DataUnavailable):
    """Provider throttling that outlasted the retry budget."""


class LockContention(ProgressEngineError):
    """Another reconciliation holds the token lock."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Token {token} is locked by another reconciliation")
        self.token = token


class CorruptionDetected(ProgressEngineError):
    """Stored progress is impossible given current and ATH data."""

    def __init__(self, call_id: str, reason: str, audit: Optional[object] = None) -> None:
        super().__init__(f"Call {call_id}: {reason}")
        self.call_id = call_id
        self.reason = reason
        self.audit = audit
