"""Pytest configuration and shared fixtures."""

from dataclasses import replace
from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio

from cardlink_app.config.defaults import (
    InitiationParams,
    ReconciliationParams,
    VerificationParams,
    get_default_config,
)
from cardlink_app.engine import CardLinkEngine
from cardlink_app.events import LinkEventHub
from cardlink_app.reconcile.poller import ReconciliationPoller
from cardlink_app.reconcile.verification import VerificationClient
from cardlink_app.session.models import (
    LinkSession,
    LinkStatus,
    PaymentMethod,
    PaymentMethodSnapshot,
)
from cardlink_app.session.store import SessionStateStore
from cardlink_app.transport.memory_backend import InMemoryLinkBackend
from cardlink_app.utils.time import utc_now


class EventRecorder:
    """Collects engine events for assertions."""

    def __init__(self, events: LinkEventHub):
        self.statuses: list[LinkSession] = []
        self.detections: list[tuple[list[PaymentMethod], LinkSession]] = []
        events.on_session_status_changed(self.statuses.append)
        events.on_new_method_detected(lambda methods, session: self.detections.append((methods, session)))

    def status_values(self, reference: Optional[str] = None) -> list[LinkStatus]:
        return [s.status for s in self.statuses if reference is None or s.reference == reference]


@pytest.fixture
def fast_params() -> ReconciliationParams:
    """Reconciliation timings short enough for tests."""
    return ReconciliationParams(
        poll_interval=0.02,
        verify_interval=60.0,
        timeout_budget=2.0,
        max_consecutive_failures=2,
    )


@pytest.fixture
def card() -> PaymentMethod:
    return PaymentMethod(id="pm_1", brand="visa", last4="4242", exp_month=12, exp_year=2030)


@pytest.fixture
def store() -> SessionStateStore:
    return SessionStateStore()


@pytest.fixture
def backend() -> InMemoryLinkBackend:
    return InMemoryLinkBackend()


@pytest.fixture
def events() -> LinkEventHub:
    return LinkEventHub()


@pytest.fixture
def recorder(events) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def verification(backend) -> VerificationClient:
    return VerificationClient(backend, VerificationParams(timeout_seconds=0.5))


@pytest.fixture
def make_session(store, backend):
    """Store an active session directly, bypassing the initiator."""

    def _make(
        reference: str = "R1",
        account_id: str = "acct_1",
        budget: float = 2.0,
        status: LinkStatus = LinkStatus.PENDING,
        baseline: Optional[PaymentMethodSnapshot] = None,
    ) -> LinkSession:
        now = utc_now()
        session = LinkSession(
            reference=reference,
            account_id=account_id,
            created_at=now,
            timeout_at=now + timedelta(seconds=budget),
            status=status,
            baseline=baseline if baseline is not None else PaymentMethodSnapshot.empty(),
        )
        backend.sessions[reference] = account_id
        store.set(session)
        return session

    return _make


@pytest_asyncio.fixture
async def poller(store, verification, backend, events, fast_params):
    poller = ReconciliationPoller(
        store=store,
        verification=verification,
        fetch_snapshot=backend.list_payment_methods,
        events=events,
        params=fast_params,
    )
    yield poller
    await poller.shutdown()
    await verification.drain()


@pytest_asyncio.fixture
async def engine(backend, fast_params):
    config = replace(
        get_default_config(),
        reconciliation=fast_params,
        verification=VerificationParams(timeout_seconds=0.5),
        initiation=InitiationParams(ensure_customer=True),
    )
    engine = CardLinkEngine(backend=backend, config=config)
    yield engine
    await engine.aclose()


@pytest.fixture
def engine_recorder(engine) -> EventRecorder:
    return EventRecorder(engine.events)
