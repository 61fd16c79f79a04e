"""
Card link engine coordinator.

Wires the session store, initiator, verification client, reconciliation
poller and resume handler together and exposes the commands and events the
presentation layer uses.

Flow:
Initiate → Checkout (external) → Poll / Resume probes → Confirmed | TimedOut | Cancelled
"""

from pathlib import Path
from typing import Callable, Optional

import structlog

from .config.defaults import DefaultConfig
from .config.loader import ConfigLoader
from .events import LinkEventHub, MethodsListener, StatusListener
from .lifecycle.resume import ResumeHandler
from .lifecycle.signals import LifecycleSignal
from .reconcile.poller import ReconciliationPoller
from .reconcile.verification import VerificationClient
from .session.initiator import LinkSessionInitiator
from .session.models import (
    AttemptOutcome,
    CheckoutResult,
    LinkSession,
    LinkStatus,
    ProbeTrigger,
)
from .session.store import SessionStateStore
from .transport.base import LinkBackend
from .transport.http_backend import HttpLinkBackend
from .utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)


class CardLinkEngine:
    """
    Main coordinator for linking a card to an account.

    The engine owns no global state: every collaborator is constructed here
    or injected, so tests can substitute in-memory fakes.
    """

    def __init__(
        self,
        backend: Optional[LinkBackend] = None,
        config: Optional[DefaultConfig] = None,
        config_dir: Optional[Path] = None,
        store: Optional[SessionStateStore] = None,
        lifecycle_signal: Optional[LifecycleSignal] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.logger = logger
        self.config = config or ConfigLoader.create(config_dir).load()

        self._owns_backend = backend is None
        self.backend = backend or HttpLinkBackend(self.config.transport)

        self.store = store or SessionStateStore()
        self.events = LinkEventHub()
        self.verification = VerificationClient(self.backend, self.config.verification)
        self.poller = ReconciliationPoller(
            store=self.store,
            verification=self.verification,
            fetch_snapshot=self.backend.list_payment_methods,
            events=self.events,
            params=self.config.reconciliation,
            clock=clock,
        )
        self.initiator = LinkSessionInitiator(
            store=self.store,
            backend=self.backend,
            params=self.config.reconciliation,
            initiation=self.config.initiation,
            events=self.events,
            clock=clock,
        )
        self.resume_handler = ResumeHandler(
            store=self.store,
            poller=self.poller,
            verification=self.verification,
            params=self.config.lifecycle,
        )

        self.lifecycle_signal = lifecycle_signal or LifecycleSignal()
        self.resume_handler.attach(self.lifecycle_signal)

        self.logger.info(
            "Card link engine initialized",
            poll_interval=self.config.reconciliation.poll_interval,
            timeout_budget=self.config.reconciliation.timeout_budget
        )

    async def initiate_link(self, account_id: str,
                            contact_email: Optional[str] = None) -> LinkSession:
        """Start a link session. Raises InitiationError on failure."""
        self.poller.prune_finished()
        return await self.initiator.initiate(account_id, contact_email)

    def cancel_link(self) -> bool:
        """Cancel the active link session, if any."""
        session = self.current_session()
        if session is None or not session.is_active:
            return False

        cancelled = self.poller.cancel(session)
        if cancelled:
            self.logger.info("Link session cancelled by user", reference=session.reference)
        return cancelled

    async def handle_checkout_result(self, result: CheckoutResult) -> Optional[AttemptOutcome]:
        """
        React to the checkout executor finishing.

        An immediate completion gets one optimistic probe; in every case the
        poll loop is started (or left running) until the webhook lands.
        """
        session = self.current_session()
        if session is None or not session.is_active:
            self.logger.warning("Checkout result with no active link session",
                                completed_immediately=result.completed_immediately)
            return None

        outcome = None
        if result.completed_immediately:
            outcome = await self.poller.probe(session, ProbeTrigger.CHECKOUT)

        if self.store.is_active(session.reference):
            self.poller.start(session)

        return outcome

    def notify_resumed(self) -> None:
        """Forward a host foreground-resume to the resume handler."""
        self.lifecycle_signal.emit_resumed()

    def current_session(self) -> Optional[LinkSession]:
        """Return the active session, timing it out first if its deadline passed."""
        session = self.store.get()
        if session is not None and session.is_active and self.poller.expire_if_due(session):
            return None
        return session

    def on_session_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        return self.events.on_session_status_changed(listener)

    def on_new_method_detected(self, listener: MethodsListener) -> Callable[[], None]:
        return self.events.on_new_method_detected(listener)

    async def wait_for_outcome(self, reference: str) -> Optional[LinkStatus]:
        """Wait for the poll loop of ``reference`` and return the final status."""
        return await self.poller.wait_closed(reference)

    async def aclose(self) -> None:
        """Stop loops, let detached work finish and release the transport."""
        self.resume_handler.detach()
        await self.resume_handler.drain()
        await self.poller.shutdown()
        await self.verification.drain()
        await self.events.drain()
        if self._owns_backend:
            await self.backend.aclose()

        self.logger.info("Card link engine closed")
