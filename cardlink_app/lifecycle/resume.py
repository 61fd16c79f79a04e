"""
Foreground-resume handling for link sessions.

Users often finish the hosted checkout page in a browser and come back to
the app. On every resume the handler nudges verification and runs one
out-of-schedule reconciliation attempt through the poller's CAS, so it can
never produce a second confirmation. It does not run a loop of its own.
"""

import asyncio
from typing import Callable, Optional

import structlog

from ..config.defaults import LifecycleParams
from ..reconcile.poller import ReconciliationPoller
from ..reconcile.verification import VerificationClient
from ..session.models import AttemptOutcome, ProbeTrigger
from ..session.store import SessionStateStore
from .signals import LifecycleSignal

logger = structlog.get_logger(__name__)


class ResumeHandler:
    """Turns host resume signals into early reconciliation probes."""

    def __init__(
        self,
        store: SessionStateStore,
        poller: ReconciliationPoller,
        verification: VerificationClient,
        params: Optional[LifecycleParams] = None,
    ):
        self.logger = logger
        self.store = store
        self.poller = poller
        self.verification = verification
        self.params = params or LifecycleParams()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task] = set()

    def attach(self, signal: LifecycleSignal) -> None:
        """Subscribe to a lifecycle signal, replacing any previous subscription."""
        self.detach()
        self._unsubscribe = signal.subscribe(self.on_resumed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_resumed(self) -> Optional[asyncio.Task]:
        """Signal callback: schedule a resume probe on the running loop."""
        session = self.store.get()
        if session is None or not session.is_active:
            self.logger.debug("Resume with no active link session")
            return None

        task = asyncio.create_task(self.handle_resume(), name="resume-probe")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_resume(self) -> Optional[AttemptOutcome]:
        """
        Reconcile the active session once, right now.

        Returns:
            The attempt outcome, or None when there was nothing to reconcile
        """
        session = self.store.get()
        if session is None or not session.is_active:
            return None

        self.logger.info("Host resumed, probing link session",
                         reference=session.reference, status=session.status.value)

        self.verification.verify(session.reference)

        outcome = await self.poller.probe(session, ProbeTrigger.RESUME)

        if (self.params.resume_ensures_polling
                and outcome != AttemptOutcome.CONFIRMED
                and self.store.is_active(session.reference)):
            self.poller.start(session)

        return outcome

    async def drain(self) -> None:
        """Wait for scheduled resume probes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
