"""
Best-effort verification nudges.

Verification asks the backend to finalize a link session without waiting
for the webhook. It is advisory only: every failure is logged and swallowed,
each call has its own timeout, and the detached tasks never share
cancellation with the poll loop.
"""

import asyncio
from typing import Optional

import structlog

from ..config.defaults import VerificationParams
from ..errors import VerificationError
from ..transport.base import LinkBackend

logger = structlog.get_logger(__name__)


class VerificationClient:
    """Fire-and-forget, idempotent verification of link sessions."""

    def __init__(self, backend: LinkBackend, params: Optional[VerificationParams] = None):
        self.logger = logger
        self.backend = backend
        self.params = params or VerificationParams()
        self._inflight: dict[str, asyncio.Task] = {}
        self._settled: set[str] = set()

    def verify(self, reference: Optional[str]) -> Optional[asyncio.Task]:
        """
        Schedule a verification nudge and return without waiting.

        A nudge already in flight for the same reference is reused, and
        settled references are ignored. Must be called from a running loop.

        Returns:
            The detached task, or None when nothing was scheduled
        """
        if not reference or reference in self._settled:
            return None

        existing = self._inflight.get(reference)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.verify_now(reference), name=f"verify-{reference}")
        self._inflight[reference] = task
        task.add_done_callback(lambda t, ref=reference: self._forget(ref, t))
        return task

    async def verify_now(self, reference: Optional[str]) -> Optional[str]:
        """
        Run one verification call within the verification timeout.

        Returns:
            The backend status, or None if skipped or failed
        """
        if not reference or reference in self._settled:
            return None

        try:
            status = await asyncio.wait_for(
                self.backend.verify_link_session(reference),
                timeout=self.params.timeout_seconds
            )
        except asyncio.TimeoutError:
            self._log_failure(VerificationError(
                f"Verification timed out after {self.params.timeout_seconds}s",
                reference=reference
            ))
            return None
        except Exception as e:
            self._log_failure(VerificationError(str(e), reference=reference))
            return None

        self.logger.debug("Verification nudge completed", reference=reference,
                          backend_status=status)
        return status

    def mark_settled(self, reference: str) -> None:
        """Stop nudging a reference whose session reached a terminal status."""
        self._settled.add(reference)

    def release(self, reference: str) -> None:
        """Forget a settled reference once its session bookkeeping is dropped."""
        self._settled.discard(reference)

    def is_settled(self, reference: str) -> bool:
        return reference in self._settled

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._inflight.values() if not task.done())

    async def drain(self) -> None:
        """Wait for every in-flight nudge to finish."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, reference: str, task: asyncio.Task) -> None:
        if self._inflight.get(reference) is task:
            del self._inflight[reference]

    def _log_failure(self, error: VerificationError) -> None:
        self.logger.warning(
            "Verification nudge failed",
            reference=error.reference,
            error=str(error)
        )
