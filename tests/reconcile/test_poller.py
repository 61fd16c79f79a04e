"""Tests for the reconciliation poll loop."""

import asyncio
from dataclasses import replace

import pytest

from cardlink_app.reconcile.poller import PollerState, ReconciliationPoller
from cardlink_app.reconcile.verification import VerificationClient
from cardlink_app.session.models import (
    AttemptOutcome,
    LinkStatus,
    PaymentMethod,
    PaymentMethodSnapshot,
    ProbeTrigger,
)
from cardlink_app.transport.base import RetryableBackendError


class TestPollerStart:
    """Test starting the poll loop."""

    @pytest.mark.asyncio
    async def test_start_moves_pending_to_verifying(self, poller, make_session, store, recorder):
        session = make_session()

        assert poller.start(session) is True

        assert store.get().status == LinkStatus.VERIFYING
        assert poller.state("R1") == PollerState.POLLING
        assert recorder.status_values() == [LinkStatus.VERIFYING]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, poller, make_session, fast_params):
        session = make_session()
        params = replace(fast_params, poll_interval=0.05)

        assert poller.start(session, config=params) is True
        assert poller.start(session, config=params) is False
        assert poller.start(session, config=params) is False

        loops = [t for t in asyncio.all_tasks() if t.get_name() == "poll-R1"]
        assert len(loops) == 1

        await asyncio.sleep(0.12)
        # Ticks at 0.05s and 0.10s from a single loop
        assert len(poller.attempts("R1")) == 2

    @pytest.mark.asyncio
    async def test_start_refuses_inactive_session(self, poller, make_session, store):
        session = make_session()
        store.clear()

        assert poller.start(session) is False
        assert poller.state("R1") == PollerState.IDLE


class TestPollerConfirmation:
    """Test confirmation on a newly appeared method."""

    @pytest.mark.asyncio
    async def test_confirms_when_webhook_lands(self, poller, make_session, backend, card,
                                               store, recorder):
        session = make_session()
        backend.complete_checkout("R1", card, persist_after_lists=2)

        poller.start(session)
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)

        assert final == LinkStatus.CONFIRMED
        assert store.get() is None
        assert recorder.status_values() == [LinkStatus.VERIFYING, LinkStatus.CONFIRMED]
        assert len(recorder.detections) == 1
        methods, confirmed = recorder.detections[0]
        assert methods == [card]
        assert confirmed.status == LinkStatus.CONFIRMED

        outcomes = [a.outcome for a in poller.attempts("R1")]
        assert outcomes == [AttemptOutcome.NO_CHANGE, AttemptOutcome.NO_CHANGE,
                            AttemptOutcome.CONFIRMED]
        assert poller.state("R1") == PollerState.CONFIRMED

    @pytest.mark.asyncio
    async def test_baseline_methods_do_not_confirm(self, poller, make_session, backend):
        existing = PaymentMethod(id="pm_old", brand="mastercard", last4="5555")
        backend.add_method("acct_1", existing)
        session = make_session(budget=0.15, baseline=PaymentMethodSnapshot([existing]))

        poller.start(session)
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)

        assert final == LinkStatus.TIMED_OUT

    @pytest.mark.asyncio
    async def test_confirmation_stops_verification(self, poller, make_session, backend, card,
                                                   verification):
        session = make_session()
        backend.complete_checkout("R1", card)

        poller.start(session)
        await poller.wait_closed("R1")

        assert verification.is_settled("R1")
        assert verification.verify("R1") is None


class TestPollerTimeout:
    """Test the absolute deadline."""

    @pytest.mark.asyncio
    async def test_deadline_times_out_not_fails(self, poller, make_session, backend, store,
                                                recorder):
        session = make_session(budget=0.1)

        poller.start(session)
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)

        assert final == LinkStatus.TIMED_OUT
        assert LinkStatus.FAILED not in recorder.status_values()
        assert store.get() is None
        assert poller.state("R1") == PollerState.TIMED_OUT

        calls = backend.list_calls
        await asyncio.sleep(0.1)
        assert backend.list_calls == calls

    @pytest.mark.asyncio
    async def test_per_session_config_override(self, poller, make_session, fast_params):
        session = make_session(budget=10.0)
        slow = replace(fast_params, poll_interval=5.0)

        poller.start(session, config=slow)
        await asyncio.sleep(0.1)

        assert poller.attempts("R1") == []


class TestPollerCancellation:
    """Test cancellation latency."""

    @pytest.mark.asyncio
    async def test_cancel_clears_store_immediately(self, poller, make_session, backend, store,
                                                   recorder):
        session = make_session()
        poller.start(session)
        await asyncio.sleep(0.05)

        assert poller.cancel(store.get()) is True
        assert store.get() is None
        calls = backend.list_calls

        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=1)
        await asyncio.sleep(0.1)

        assert final == LinkStatus.CANCELLED
        assert backend.list_calls == calls
        assert recorder.status_values()[-1] == LinkStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_wakes_long_interval(self, poller, make_session, fast_params):
        session = make_session(budget=30.0)
        poller.start(session, config=replace(fast_params, poll_interval=20.0))

        poller.cancel(session)

        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=1)
        assert final == LinkStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_twice(self, poller, make_session):
        session = make_session()
        poller.start(session)

        assert poller.cancel(session) is True
        assert poller.cancel(session) is False

    @pytest.mark.asyncio
    async def test_confirmation_ignored_after_cancel(self, poller, make_session, backend, card,
                                                     recorder):
        session = make_session()
        poller.cancel(session)
        backend.add_method("acct_1", card)

        outcome = await poller.probe(session, ProbeTrigger.RESUME)

        assert outcome == AttemptOutcome.SUPERSEDED
        assert recorder.detections == []


class TestPollerFetchFailures:
    """Test bounded tolerance of snapshot fetch failures."""

    @pytest.mark.asyncio
    async def test_consecutive_failures_end_as_timeout(self, poller, make_session, backend,
                                                       recorder):
        session = make_session()
        backend.fail_lists = 10

        poller.start(session)
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)

        # max_consecutive_failures=2, so the third failure in a row gives up
        assert final == LinkStatus.TIMED_OUT
        assert backend.list_calls == 3
        assert all(a.outcome == AttemptOutcome.FETCH_FAILED for a in poller.attempts("R1"))
        assert LinkStatus.FAILED not in recorder.status_values()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, store, verification, events, fast_params,
                                                make_session, card):
        script = ["fail", "fail", "ok", "fail", "fail", "card"]

        async def fetch(account_id):
            step = script.pop(0) if script else "card"
            if step == "fail":
                raise RetryableBackendError("unavailable", status_code=503)
            if step == "card":
                return PaymentMethodSnapshot([card])
            return PaymentMethodSnapshot.empty()

        poller = ReconciliationPoller(store, verification, fetch, events=events,
                                      params=fast_params)
        session = make_session()
        try:
            poller.start(session)
            final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)
        finally:
            await poller.shutdown()
            await verification.drain()

        assert final == LinkStatus.CONFIRMED
        assert len(poller.attempts("R1")) == 6


class TestPollerRaceSafety:
    """Test concurrent attempts against the same session."""

    @pytest.mark.asyncio
    async def test_concurrent_probes_confirm_once(self, store, verification, events, recorder,
                                                  fast_params, make_session, card):
        gate = asyncio.Event()
        arrived = []

        async def gated_fetch(account_id):
            arrived.append(account_id)
            await gate.wait()
            return PaymentMethodSnapshot([card])

        poller = ReconciliationPoller(store, verification, gated_fetch, events=events,
                                      params=fast_params)
        session = make_session()

        first = asyncio.create_task(poller.probe(session, ProbeTrigger.SCHEDULE))
        second = asyncio.create_task(poller.probe(session, ProbeTrigger.RESUME))
        while len(arrived) < 2:
            await asyncio.sleep(0)
        gate.set()
        outcomes = await asyncio.gather(first, second)

        assert sorted(o.value for o in outcomes) == ["confirmed", "superseded"]
        assert recorder.status_values().count(LinkStatus.CONFIRMED) == 1
        assert len(recorder.detections) == 1
        assert store.get() is None

    @pytest.mark.asyncio
    async def test_probe_while_loop_running(self, poller, make_session, backend, card, recorder):
        session = make_session()
        poller.start(session)
        await asyncio.sleep(0.03)

        backend.add_method("acct_1", card)
        outcome = await poller.probe(session, ProbeTrigger.RESUME)
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=1)

        assert outcome == AttemptOutcome.CONFIRMED
        assert final == LinkStatus.CONFIRMED
        assert len(recorder.detections) == 1
        assert recorder.status_values() == [LinkStatus.VERIFYING, LinkStatus.CONFIRMED]


class TestPollerVerification:
    """Test verification nudges from the loop."""

    @pytest.mark.asyncio
    async def test_verify_failure_does_not_abort_polling(self, poller, make_session, backend,
                                                         card, fast_params):
        session = make_session()
        backend.fail_verify = True
        backend.complete_checkout("R1", card, persist_after_lists=2)

        poller.start(session, config=replace(fast_params, verify_interval=0.0))
        final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)

        assert final == LinkStatus.CONFIRMED
        assert backend.verify_calls.get("R1", 0) >= 1

    @pytest.mark.asyncio
    async def test_verification_can_persist_card(self, store, events, fast_params, make_session,
                                                 backend, card):
        backend.verify_persists = True
        verification = VerificationClient(backend)
        poller = ReconciliationPoller(store, verification, backend.list_payment_methods,
                                      events=events, params=replace(fast_params, verify_interval=0.0))
        session = make_session()
        backend.complete_checkout("R1", card, persist_after_lists=100)

        try:
            poller.start(session)
            final = await asyncio.wait_for(poller.wait_closed("R1"), timeout=2)
        finally:
            await poller.shutdown()
            await verification.drain()

        assert final == LinkStatus.CONFIRMED


class TestPollerShutdown:
    """Test stopping loops without a status change."""

    @pytest.mark.asyncio
    async def test_shutdown_leaves_session_active(self, poller, make_session, store):
        session = make_session()
        poller.start(session)

        await poller.shutdown()

        assert store.get().status == LinkStatus.VERIFYING
        assert poller.state("R1") == PollerState.IDLE
        assert poller.start(store.get()) is True


class TestPollerBookkeeping:
    """Test pruning of finished sessions."""

    @pytest.mark.asyncio
    async def test_prune_finished(self, poller, make_session, backend, card):
        session = make_session()
        backend.complete_checkout("R1", card)
        poller.start(session)
        await poller.wait_closed("R1")

        other = make_session(reference="R2")
        poller.start(other)

        assert poller.prune_finished() == 1
        assert poller.attempts("R1") == []
        assert poller.is_polling("R2")

    @pytest.mark.asyncio
    async def test_prune_settles_superseded_probe_track(self, poller, make_session, store):
        session = make_session()
        await poller.probe(session, ProbeTrigger.RESUME)

        # Replaced by a newer session outside the poller
        make_session(reference="R2")

        assert poller.prune_finished() == 1
        assert poller.attempts("R1") == []
        assert store.get().reference == "R2"

    @pytest.mark.asyncio
    async def test_prune_releases_settled_reference(self, poller, make_session, backend, card,
                                                    verification):
        session = make_session()
        backend.complete_checkout("R1", card)
        await poller.probe(session, ProbeTrigger.CHECKOUT)
        assert verification.is_settled("R1")

        poller.prune_finished()

        assert not verification.is_settled("R1")


class TestPollerDeadlineOnProbe:
    """Test that out-of-schedule attempts honour the absolute deadline."""

    @pytest.mark.asyncio
    async def test_probe_after_deadline_times_out_without_fetch(self, poller, make_session,
                                                                 backend, card, store, recorder):
        session = make_session(budget=0.05)
        await asyncio.sleep(0.1)
        backend.add_method("acct_1", card)

        outcome = await poller.probe(session, ProbeTrigger.CHECKOUT)

        assert outcome == AttemptOutcome.EXPIRED
        assert backend.list_calls == 0
        assert store.get() is None
        assert recorder.status_values() == [LinkStatus.TIMED_OUT]
        assert recorder.detections == []
        assert poller.state("R1") == PollerState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_expire_if_due(self, poller, make_session, store, recorder):
        session = make_session(budget=0.05)

        assert poller.expire_if_due(session) is False
        assert store.get() is not None

        await asyncio.sleep(0.1)

        assert poller.expire_if_due(session) is True
        assert poller.expire_if_due(session) is False
        assert store.get() is None
        assert recorder.status_values() == [LinkStatus.TIMED_OUT]
