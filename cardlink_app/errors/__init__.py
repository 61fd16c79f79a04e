"""
Error classification for the card link engine.

Transient errors are absorbed inside the engine with bounded retry; fatal
errors end the attempt and reach the caller.
"""

from .transient import (
    TransientError,
    TransientFetchError,
    VerificationError,
)
from .fatal import (
    LinkEngineError,
    InitiationError,
    StateTransitionError,
    ConfigurationError,
)

__all__ = [
    # Absorbed inside the engine
    "TransientError",
    "TransientFetchError",
    "VerificationError",
    # Surfaced to callers
    "LinkEngineError",
    "InitiationError",
    "StateTransitionError",
    "ConfigurationError",
]
