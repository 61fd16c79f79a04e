"""
In-memory link session backend.

Simulates the asynchronous part of the real system: once the user finishes
the checkout page, the card is only persisted when the (simulated) webhook
lands, a configurable number of list calls later, or immediately when a
verification nudge arrives and ``verify_persists`` is set.
"""

import asyncio
import itertools
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from ..session.models import LinkInitResult, PaymentMethod, PaymentMethodSnapshot
from ..utils.time import Clock, utc_now
from .base import LinkBackend, PermanentBackendError, RetryableBackendError

logger = structlog.get_logger(__name__)


@dataclass
class _PendingCard:
    account_id: str
    method: PaymentMethod
    remaining_lists: int


class InMemoryLinkBackend(LinkBackend):
    """Scriptable backend used by demos and tests."""

    def __init__(
        self,
        reference_factory: Optional[Callable[[], str]] = None,
        verify_persists: bool = False,
        list_delay: float = 0.0,
        clock: Clock = utc_now,
    ):
        self.logger = logger
        counter = itertools.count(1)
        self._next_reference = reference_factory or (lambda: f"R{next(counter)}")
        self.verify_persists = verify_persists
        self.list_delay = list_delay
        self.clock = clock

        self.methods: dict[str, dict[str, PaymentMethod]] = {}
        self.sessions: dict[str, str] = {}            # reference -> account_id
        self.customers: set[str] = set()
        self._pending: dict[str, _PendingCard] = {}   # reference -> card awaiting webhook

        # Failure injection
        self.fail_create = False
        self.fail_verify = False
        self.fail_customer = False
        self.fail_lists = 0

        # Call accounting
        self.create_calls = 0
        self.list_calls = 0
        self.verify_calls: dict[str, int] = {}

    def add_method(self, account_id: str, method: PaymentMethod) -> None:
        """Persist a method directly, as if a webhook had already landed."""
        self.methods.setdefault(account_id, {})[method.id] = method

    def complete_checkout(self, reference: str, method: PaymentMethod,
                          persist_after_lists: int = 0) -> None:
        """Record that the user finished the checkout page for ``reference``."""
        account_id = self.sessions[reference]
        self._pending[reference] = _PendingCard(
            account_id=account_id,
            method=method,
            remaining_lists=persist_after_lists,
        )

    def deliver_webhook(self, reference: str) -> bool:
        """Persist the pending card for ``reference`` now."""
        pending = self._pending.pop(reference, None)
        if pending is None:
            return False
        self.add_method(pending.account_id, pending.method)
        self.logger.debug("Simulated webhook persisted card", reference=reference,
                          method_id=pending.method.id)
        return True

    async def ensure_customer(self, account_id: str, email: Optional[str] = None) -> None:
        if self.fail_customer:
            raise RetryableBackendError("customer service unavailable", status_code=503)
        self.customers.add(account_id)

    async def create_link_session(self, account_id: str,
                                  email: Optional[str] = None) -> LinkInitResult:
        self.create_calls += 1
        if self.fail_create:
            raise RetryableBackendError("link session service unavailable", status_code=503,
                                        payload={"message": "Service unavailable"})

        reference = self._next_reference()
        self.sessions[reference] = account_id
        return LinkInitResult(
            reference=reference,
            checkout_token=f"tok_{reference}",
            authorization_url=f"https://checkout.example/{reference}",
            expires_at=self.clock() + timedelta(minutes=30),
        )

    async def verify_link_session(self, reference: str) -> Optional[str]:
        self.verify_calls[reference] = self.verify_calls.get(reference, 0) + 1
        if self.fail_verify:
            raise RetryableBackendError("verify unavailable", status_code=502)
        if reference not in self.sessions:
            raise PermanentBackendError("unknown reference", status_code=404,
                                        payload={"message": "Link session not found"})

        if reference in self._pending and self.verify_persists:
            self.deliver_webhook(reference)
            return "success"
        return "pending" if reference in self._pending else "success"

    async def list_payment_methods(self, account_id: str) -> PaymentMethodSnapshot:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.fail_lists > 0:
            self.fail_lists -= 1
            raise RetryableBackendError("payment method list unavailable", status_code=503)

        for reference, pending in list(self._pending.items()):
            if pending.account_id != account_id:
                continue
            if pending.remaining_lists <= 0:
                self.deliver_webhook(reference)
            else:
                pending.remaining_lists -= 1

        return PaymentMethodSnapshot(self.methods.get(account_id, {}).values())
