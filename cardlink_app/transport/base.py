"""Base classes for the link session backend collaborator."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..session.models import LinkInitResult, PaymentMethodSnapshot


class BackendError(Exception):
    """Base exception for backend call failures."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class RetryableBackendError(BackendError):
    """Network failure, timeout or 5xx response. Safe to retry."""
    pass


class PermanentBackendError(BackendError):
    """Client error that should not be retried."""
    pass


def describe_error(exc: BaseException) -> str:
    """
    Extract a human-friendly message from a backend failure.

    Backend error bodies carry the reason under ``message``, ``error`` or
    ``detail``. Validation failures (HTTP 400) are shown as-is, other codes
    are prefixed with the status.
    """
    if isinstance(exc, BackendError):
        payload = exc.payload
        msg = None
        if isinstance(payload, dict):
            raw = payload.get("message") or payload.get("error") or payload.get("detail")
            msg = str(raw) if raw is not None else None
        elif isinstance(payload, str):
            msg = payload

        if msg and msg.strip():
            if exc.status_code == 400:
                return msg.strip()
            return f"Request failed ({exc.status_code or 'error'}): {msg.strip()}"

    return str(exc) or exc.__class__.__name__


class LinkBackend(ABC):
    """Backend operations consumed by the card link engine."""

    @abstractmethod
    async def ensure_customer(self, account_id: str, email: Optional[str] = None) -> None:
        """Create or update the payment customer for an account."""
        pass

    @abstractmethod
    async def create_link_session(self, account_id: str,
                                  email: Optional[str] = None) -> LinkInitResult:
        """Create a tokenize-only link session (POST /link-sessions)."""
        pass

    @abstractmethod
    async def verify_link_session(self, reference: str) -> Optional[str]:
        """Ask the backend to finalize a session early. Returns the backend status."""
        pass

    @abstractmethod
    async def list_payment_methods(self, account_id: str) -> PaymentMethodSnapshot:
        """Fetch the payment methods currently saved on an account."""
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        return None
