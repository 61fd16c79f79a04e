"""
Fatal error classifications.

These exceptions end the current operation and are raised to the caller.
"""

from typing import Optional, Dict, Any


class LinkEngineError(Exception):
    """Base class for errors surfaced by the card link engine."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = False


class InitiationError(LinkEngineError):
    """A link session could not be created. No session is recorded."""

    def __init__(self, message: str, account_id: Optional[str] = None,
                 user_message: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.account_id = account_id
        self.user_message = user_message or message


class StateTransitionError(LinkEngineError):
    """Requested status change violates the one-directional lifecycle."""

    def __init__(self, message: str, current_state: Optional[str] = None,
                 attempted_transition: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_state = current_state
        self.attempted_transition = attempted_transition


class ConfigurationError(LinkEngineError):
    """Merged configuration failed validation."""

    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []
