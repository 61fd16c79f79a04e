"""
End-to-end link flow through the engine.

Initiate, hand off to checkout, then let the poll loop or a resume probe
discover the new card once the (simulated) webhook persists it.
"""

import asyncio
from dataclasses import replace

import pytest

from cardlink_app.config.defaults import LifecycleParams, VerificationParams, get_default_config
from cardlink_app.engine import CardLinkEngine
from cardlink_app.errors import InitiationError
from cardlink_app.lifecycle.signals import LifecycleSignal
from cardlink_app.session.models import (
    AttemptOutcome,
    CheckoutResult,
    LinkStatus,
    PaymentMethod,
)


class TestHappyPath:
    """Test confirmation after the webhook lands."""

    @pytest.mark.asyncio
    async def test_card_confirmed_on_third_attempt(self, engine, engine_recorder, backend, card):
        """Webhook persists the card after two list calls; the third attempt confirms."""
        session = await engine.initiate_link("acct_1")
        assert session.reference == "R1"
        assert session.status == LinkStatus.PENDING

        backend.complete_checkout("R1", card, persist_after_lists=2)
        outcome = await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        assert outcome is None

        final = await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=2)

        assert final == LinkStatus.CONFIRMED
        assert engine_recorder.status_values() == [
            LinkStatus.PENDING, LinkStatus.VERIFYING, LinkStatus.CONFIRMED
        ]
        assert len(engine_recorder.detections) == 1
        methods, confirmed = engine_recorder.detections[0]
        assert [m.id for m in methods] == ["pm_1"]
        assert confirmed.reference == "R1"
        assert engine.current_session() is None

        attempts = engine.poller.attempts("R1")
        assert len(attempts) == 3
        assert attempts[-1].outcome == AttemptOutcome.CONFIRMED

    @pytest.mark.asyncio
    async def test_full_status_sequence(self, engine, backend, card):
        """Listeners registered before initiation see every status."""
        seen = []
        engine.on_session_status_changed(lambda s: seen.append(s.status))

        await engine.initiate_link("acct_1")
        backend.complete_checkout("R1", card, persist_after_lists=2)
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=2)

        assert seen == [LinkStatus.PENDING, LinkStatus.VERIFYING, LinkStatus.CONFIRMED]

    @pytest.mark.asyncio
    async def test_immediate_completion_probes_once(self, engine, backend, card):
        """A checkout that finished in-app confirms without waiting for a tick."""
        seen = []
        engine.on_session_status_changed(lambda s: seen.append(s.status))
        await engine.initiate_link("acct_1")
        backend.complete_checkout("R1", card)

        outcome = await engine.handle_checkout_result(CheckoutResult(completed_immediately=True))

        assert outcome == AttemptOutcome.CONFIRMED
        assert engine.current_session() is None
        assert seen == [LinkStatus.PENDING, LinkStatus.CONFIRMED]
        assert not engine.poller.is_polling("R1")

    @pytest.mark.asyncio
    async def test_existing_cards_are_not_new(self, engine, engine_recorder, backend, card):
        """Cards saved before initiation never confirm a session."""
        backend.add_method("acct_1", PaymentMethod(id="pm_old"))
        await engine.initiate_link("acct_1")
        backend.complete_checkout("R1", card)

        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=2)

        methods, _ = engine_recorder.detections[0]
        assert [m.id for m in methods] == ["pm_1"]


class TestSingleActiveSession:
    """Test that at most one session is active."""

    @pytest.mark.asyncio
    async def test_second_initiation_supersedes_first(self, engine, engine_recorder):
        first = await engine.initiate_link("acct_1")
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))

        second = await engine.initiate_link("acct_1")
        final = await asyncio.wait_for(engine.wait_for_outcome(first.reference), timeout=1)

        assert final == LinkStatus.CANCELLED
        assert engine.current_session().reference == second.reference
        assert engine_recorder.status_values(first.reference)[-1] == LinkStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_initiation_keeps_store(self, engine, backend):
        previous = await engine.initiate_link("acct_1")
        backend.fail_create = True

        with pytest.raises(InitiationError) as exc_info:
            await engine.initiate_link("acct_1")

        assert engine.current_session() == previous
        assert "Service unavailable" in exc_info.value.user_message


class TestCancellation:
    """Test user cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_polling(self, engine, engine_recorder, backend):
        await engine.initiate_link("acct_1")
        await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
        await asyncio.sleep(0.05)

        assert engine.cancel_link() is True
        assert engine.current_session() is None
        calls = backend.list_calls

        final = await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=1)
        await asyncio.sleep(0.05)

        assert final == LinkStatus.CANCELLED
        assert backend.list_calls == calls
        assert engine_recorder.status_values()[-1] == LinkStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, engine):
        assert engine.cancel_link() is False

    @pytest.mark.asyncio
    async def test_checkout_result_without_session(self, engine):
        outcome = await engine.handle_checkout_result(CheckoutResult(completed_immediately=True))
        assert outcome is None


class TestTimeout:
    """Test the absolute timeout budget."""

    @pytest.mark.asyncio
    async def test_unconfirmed_session_times_out(self, backend, fast_params):
        config = replace(
            get_default_config(),
            reconciliation=replace(fast_params, timeout_budget=0.15),
            verification=VerificationParams(timeout_seconds=0.5),
        )
        engine = CardLinkEngine(backend=backend, config=config)
        try:
            await engine.initiate_link("acct_1")
            await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
            final = await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=2)
        finally:
            await engine.aclose()

        assert final == LinkStatus.TIMED_OUT
        assert engine.current_session() is None


class TestResume:
    """Test host resume handling through the engine."""

    @pytest.mark.asyncio
    async def test_resume_confirms_before_next_tick(self, backend, fast_params, card):
        signal = LifecycleSignal()
        config = replace(
            get_default_config(),
            reconciliation=replace(fast_params, poll_interval=30.0, timeout_budget=60.0),
            verification=VerificationParams(timeout_seconds=0.5),
            lifecycle=LifecycleParams(resume_ensures_polling=True),
        )
        engine = CardLinkEngine(backend=backend, config=config, lifecycle_signal=signal)
        try:
            await engine.initiate_link("acct_1")
            await engine.handle_checkout_result(CheckoutResult(completed_immediately=False))
            backend.complete_checkout("R1", card)

            engine.notify_resumed()
            final = await asyncio.wait_for(engine.wait_for_outcome("R1"), timeout=2)
        finally:
            await engine.aclose()

        assert final == LinkStatus.CONFIRMED
        assert engine.poller.attempts("R1")[0].outcome == AttemptOutcome.CONFIRMED

    @pytest.mark.asyncio
    async def test_resume_without_session_is_noop(self, engine, backend):
        engine.notify_resumed()
        await engine.resume_handler.drain()

        assert backend.list_calls == 0


class TestDeadlineWithoutLoop:
    """Test a session whose checkout never reported back."""

    @pytest.mark.asyncio
    async def test_stale_session_times_out(self, backend, fast_params, card):
        seen = []
        config = replace(
            get_default_config(),
            reconciliation=replace(fast_params, poll_interval=0.02, timeout_budget=0.05),
            verification=VerificationParams(timeout_seconds=0.5),
        )
        engine = CardLinkEngine(backend=backend, config=config)
        engine.on_session_status_changed(lambda s: seen.append(s.status))
        try:
            await engine.initiate_link("acct_1")
            await asyncio.sleep(0.1)
            backend.complete_checkout("R1", card)
            calls = backend.list_calls

            assert engine.current_session() is None
            outcome = await engine.handle_checkout_result(CheckoutResult(completed_immediately=True))
        finally:
            await engine.aclose()

        assert outcome is None
        assert backend.list_calls == calls
        assert seen == [LinkStatus.PENDING, LinkStatus.TIMED_OUT]
