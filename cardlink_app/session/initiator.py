"""
Starts new link sessions.

The backend calls (customer upsert, baseline snapshot, session creation)
all happen before the store is touched, so a failed initiation leaves the
store exactly as it was. Superseding the previous session and storing the
new one happen without a suspension point in between.
"""

from datetime import timedelta
from typing import Optional

import structlog

from ..config.defaults import InitiationParams, ReconciliationParams
from ..errors import InitiationError
from ..events import LinkEventHub
from ..logging.config import get_state_logger, log_state_transition
from ..transport.base import LinkBackend, describe_error
from ..utils.time import Clock, format_timestamp, utc_now
from .models import ACTIVE_STATUSES, LinkSession, LinkStatus
from .store import SessionStateStore

logger = structlog.get_logger(__name__)
state_logger = get_state_logger(__name__)


class LinkSessionInitiator:
    """Creates link sessions and enforces one active session at a time."""

    def __init__(
        self,
        store: SessionStateStore,
        backend: LinkBackend,
        params: Optional[ReconciliationParams] = None,
        initiation: Optional[InitiationParams] = None,
        events: Optional[LinkEventHub] = None,
        clock: Clock = utc_now,
    ):
        self.logger = logger
        self.store = store
        self.backend = backend
        self.params = params or ReconciliationParams()
        self.initiation = initiation or InitiationParams()
        self.events = events or LinkEventHub()
        self.clock = clock

    async def initiate(self, account_id: str, contact_email: Optional[str] = None) -> LinkSession:
        """
        Start a new link session for an account.

        Args:
            account_id: Resolved account identifier
            contact_email: Optional email forwarded to the backend

        Returns:
            The stored session, status PENDING

        Raises:
            InitiationError: account missing or backend failure; store unchanged
        """
        if not account_id or not str(account_id).strip():
            raise InitiationError("Account id is required to link a card",
                                  account_id=account_id,
                                  user_message="Please sign in first.")

        email = contact_email or self.initiation.default_email

        if self.initiation.ensure_customer:
            try:
                await self.backend.ensure_customer(account_id, email)
            except Exception as e:
                # Backend also upserts the customer when creating the session
                self.logger.warning("Customer upsert failed, continuing",
                                    account_id=account_id, error=str(e))

        try:
            baseline = await self.backend.list_payment_methods(account_id)
        except Exception as e:
            raise self._initiation_error("Could not load existing payment methods",
                                         account_id, e) from e

        try:
            init = await self.backend.create_link_session(account_id, email)
        except Exception as e:
            raise self._initiation_error("Could not create link session", account_id, e) from e

        now = self.clock()
        session = LinkSession(
            reference=init.reference,
            account_id=account_id,
            created_at=now,
            timeout_at=now + timedelta(seconds=self.params.timeout_budget),
            status=LinkStatus.PENDING,
            contact_email=email,
            checkout_token=init.checkout_token,
            authorization_url=init.authorization_url,
            expires_at=init.expires_at,
            baseline=baseline,
        )

        self._supersede(account_id)
        self.store.set(session)

        log_state_transition(
            state_logger,
            reference=session.reference,
            from_state="none",
            to_state=session.status.value,
            trigger="initiate",
            context={
                "account_id": account_id,
                "baseline_count": len(baseline),
                "timeout_at": format_timestamp(session.timeout_at),
            }
        )
        self.events.emit_status_changed(session)
        return session

    def _supersede(self, account_id: str) -> None:
        prior = self.store.get()
        if prior is None or not prior.is_active:
            return

        if prior.account_id != account_id:
            # Single slot: a session for another account cannot be kept either
            self.logger.warning(
                "Superseding link session of a different account",
                reference=prior.reference,
                prior_account_id=prior.account_id,
                account_id=account_id
            )

        cancelled = self.store.compare_and_set_status(
            prior.reference, ACTIVE_STATUSES, LinkStatus.CANCELLED
        )
        if cancelled is None:
            return

        log_state_transition(
            state_logger,
            reference=prior.reference,
            from_state=prior.status.value,
            to_state=LinkStatus.CANCELLED.value,
            trigger="superseded"
        )
        self.events.emit_status_changed(cancelled)

    def _initiation_error(self, message: str, account_id: str, cause: Exception) -> InitiationError:
        self.logger.error(message, account_id=account_id, error=str(cause))
        return InitiationError(
            f"{message}: {cause}",
            account_id=account_id,
            user_message=describe_error(cause),
            context={"cause": cause.__class__.__name__}
        )
