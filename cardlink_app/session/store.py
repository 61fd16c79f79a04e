"""
Single-slot holder for the in-flight link session.

The store is the only mutable state shared by the initiator, the poller and
the resume handler. Every read and write goes through the operations below,
which are serialized by a lock, and status changes go through
``compare_and_set_status`` so that concurrent probes cannot both win.
"""

import threading
from typing import Iterable, Optional

import structlog

from .models import LinkSession, LinkStatus

logger = structlog.get_logger(__name__)


class SessionStateStore:
    """Holds at most one link session."""

    def __init__(self):
        self.logger = logger
        self._lock = threading.Lock()
        self._session: Optional[LinkSession] = None

    def get(self) -> Optional[LinkSession]:
        """Return the held session, if any."""
        with self._lock:
            return self._session

    def set(self, session: LinkSession) -> None:
        """Replace the held session."""
        with self._lock:
            self._session = session

        self.logger.debug(
            "Stored link session",
            reference=session.reference,
            account_id=session.account_id,
            status=session.status.value
        )

    def clear(self) -> None:
        """Drop the held session."""
        with self._lock:
            cleared = self._session
            self._session = None

        if cleared is not None:
            self.logger.debug(
                "Cleared link session",
                reference=cleared.reference,
                status=cleared.status.value
            )

    def compare_and_set_status(
        self,
        reference: str,
        expected: Iterable[LinkStatus],
        new_status: LinkStatus
    ) -> Optional[LinkSession]:
        """
        Atomically move the held session to ``new_status``.

        The change only happens when the store still holds the session with
        ``reference`` and its status is one of ``expected``. A terminal
        ``new_status`` clears the slot.

        Returns:
            The updated session, or None when the compare failed
        """
        expected = frozenset(expected)
        with self._lock:
            current = self._session
            if current is None or current.reference != reference:
                return None
            if current.status not in expected:
                return None

            updated = current.with_status(new_status)
            self._session = None if new_status.is_terminal else updated

        return updated

    def is_active(self, reference: str) -> bool:
        """True while the store holds ``reference`` in a non-terminal status."""
        session = self.get()
        return session is not None and session.reference == reference and session.is_active
