"""
Link session data models.

This module defines immutable data structures for link sessions, the payment
method snapshots they are reconciled against, and the ephemeral record of
each reconciliation attempt.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional

from ..errors import StateTransitionError


class LinkStatus(str, Enum):
    """Link session status."""
    PENDING = "pending"
    VERIFYING = "verifying"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def outcome_known(self) -> bool:
        """False while pending and after a client-side timeout."""
        return self in (LinkStatus.CONFIRMED, LinkStatus.FAILED, LinkStatus.CANCELLED)


ACTIVE_STATUSES = frozenset({LinkStatus.PENDING, LinkStatus.VERIFYING})
TERMINAL_STATUSES = frozenset({
    LinkStatus.CONFIRMED,
    LinkStatus.FAILED,
    LinkStatus.TIMED_OUT,
    LinkStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: dict[LinkStatus, frozenset] = {
    LinkStatus.PENDING: frozenset({LinkStatus.VERIFYING}) | TERMINAL_STATUSES,
    LinkStatus.VERIFYING: TERMINAL_STATUSES,
    LinkStatus.CONFIRMED: frozenset(),
    LinkStatus.FAILED: frozenset(),
    LinkStatus.TIMED_OUT: frozenset(),
    LinkStatus.CANCELLED: frozenset(),
}

_STATUS_DESCRIPTIONS = {
    LinkStatus.PENDING: "waiting for card details",
    LinkStatus.VERIFYING: "waiting for confirmation",
    LinkStatus.CONFIRMED: "card linked",
    LinkStatus.FAILED: "card could not be linked",
    LinkStatus.TIMED_OUT: "not yet confirmed",
    LinkStatus.CANCELLED: "cancelled",
}


def describe_status(status: LinkStatus) -> str:
    """User-facing wording for a status. A timeout is never reported as failure."""
    return _STATUS_DESCRIPTIONS[status]


class AttemptOutcome(str, Enum):
    """Outcome of a single reconciliation attempt."""
    NO_CHANGE = "no_change"
    CONFIRMED = "confirmed"
    FETCH_FAILED = "fetch_failed"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class ProbeTrigger(str, Enum):
    """What caused a reconciliation attempt."""
    SCHEDULE = "schedule"
    RESUME = "resume"
    CHECKOUT = "checkout"


@dataclass(frozen=True)
class PaymentMethod:
    """A tokenized payment instrument saved on the account."""
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    reusable: bool = True


class PaymentMethodSnapshot:
    """Unordered set of payment methods keyed by id."""

    __slots__ = ("_methods",)

    def __init__(self, methods: Iterable[PaymentMethod] = ()):
        self._methods: dict[str, PaymentMethod] = {m.id: m for m in methods}

    @classmethod
    def empty(cls) -> "PaymentMethodSnapshot":
        return cls()

    @property
    def ids(self) -> frozenset:
        return frozenset(self._methods)

    def get(self, method_id: str) -> Optional[PaymentMethod]:
        return self._methods.get(method_id)

    def new_since(self, baseline: "PaymentMethodSnapshot") -> list[PaymentMethod]:
        """Methods present here whose id is absent from the baseline, sorted by id."""
        return [
            self._methods[method_id]
            for method_id in sorted(self.ids - baseline.ids)
        ]

    def __sub__(self, baseline: "PaymentMethodSnapshot") -> "PaymentMethodSnapshot":
        return PaymentMethodSnapshot(self.new_since(baseline))

    def __contains__(self, method_id: object) -> bool:
        return method_id in self._methods

    def __iter__(self) -> Iterator[PaymentMethod]:
        return iter(self._methods.values())

    def __len__(self) -> int:
        return len(self._methods)

    def __bool__(self) -> bool:
        return bool(self._methods)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PaymentMethodSnapshot):
            return NotImplemented
        return self._methods == other._methods

    def __hash__(self) -> int:
        return hash(frozenset(self._methods.items()))

    def __repr__(self) -> str:
        return f"PaymentMethodSnapshot(ids={sorted(self._methods)})"


@dataclass(frozen=True)
class LinkSession:
    """One attempt to tokenize and attach a payment instrument to an account."""

    reference: str
    account_id: str
    created_at: datetime
    timeout_at: datetime
    status: LinkStatus = LinkStatus.PENDING

    # Backend session details
    contact_email: Optional[str] = None
    checkout_token: Optional[str] = None
    authorization_url: Optional[str] = None
    expires_at: Optional[datetime] = None

    # Methods known to exist when the session was created
    baseline: PaymentMethodSnapshot = field(default_factory=PaymentMethodSnapshot.empty)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def with_status(self, new_status: LinkStatus) -> "LinkSession":
        """Return a copy with a new status, enforcing the one-directional lifecycle."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise StateTransitionError(
                f"Illegal link session transition {self.status.value} -> {new_status.value}",
                current_state=self.status.value,
                attempted_transition=new_status.value,
                context={"reference": self.reference}
            )
        return replace(self, status=new_status)


@dataclass(frozen=True)
class LinkInitResult:
    """Backend response to a link session creation request."""
    reference: str
    checkout_token: Optional[str] = None
    authorization_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutResult:
    """Result reported by the external checkout executor."""
    completed_immediately: bool


@dataclass(frozen=True)
class ReconciliationAttempt:
    """Ephemeral record of one reconciliation attempt. Never persisted."""
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome
    trigger: ProbeTrigger = ProbeTrigger.SCHEDULE
