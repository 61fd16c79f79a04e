"""
Transient error classifications.

These exceptions describe failures the engine recovers from on its own:
they are logged and retried (or ignored), never raised to callers.
"""

from typing import Optional, Dict, Any


class TransientError(Exception):
    """Base class for failures that are absorbed with bounded retry."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = True


class TransientFetchError(TransientError):
    """Payment method snapshot fetch failed during reconciliation."""

    def __init__(self, message: str, account_id: Optional[str] = None,
                 consecutive_failures: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.account_id = account_id
        self.consecutive_failures = consecutive_failures


class VerificationError(TransientError):
    """Verification nudge failed or timed out. Always swallowed."""

    def __init__(self, message: str, reference: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reference = reference
