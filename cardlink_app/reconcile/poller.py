"""
Reconciliation poll loop for link sessions.

The poller watches the account's payment methods until one appears that was
absent from the session's baseline snapshot. Confirmation, timeout and
cancellation are all compare-and-set operations on the session store, so a
scheduled tick racing a resume-triggered probe yields exactly one
confirmation and one ``new_method_detected`` event.

Loop per session:
    wait poll_interval (woken early by cancel)
    nudge verification every verify_interval (detached)
    fetch snapshot; new methods -> CONFIRMED
    fetch errors counted; too many in a row -> TIMED_OUT
    absolute deadline session.timeout_at -> TIMED_OUT
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..config.defaults import ReconciliationParams
from ..errors import TransientFetchError
from ..events import LinkEventHub
from ..logging.config import get_state_logger, log_state_transition
from ..session.models import (
    ACTIVE_STATUSES,
    AttemptOutcome,
    LinkSession,
    LinkStatus,
    PaymentMethodSnapshot,
    ProbeTrigger,
    ReconciliationAttempt,
)
from ..session.store import SessionStateStore
from ..utils.time import (
    Clock,
    format_timestamp,
    seconds_until,
    time_elapsed_seconds,
    utc_now,
)
from .verification import VerificationClient

logger = structlog.get_logger(__name__)
state_logger = get_state_logger(__name__)

SnapshotFetcher = Callable[[str], Awaitable[PaymentMethodSnapshot]]

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class PollerState(str, Enum):
    """Poller lifecycle for a single session."""
    IDLE = "idle"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_TERMINAL_POLLER_STATE = {
    LinkStatus.CONFIRMED: PollerState.CONFIRMED,
    LinkStatus.TIMED_OUT: PollerState.TIMED_OUT,
    LinkStatus.CANCELLED: PollerState.CANCELLED,
    LinkStatus.FAILED: PollerState.CANCELLED,
}


@dataclass
class _SessionTrack:
    """Per-session reconciliation bookkeeping."""
    session: LinkSession
    baseline: PaymentMethodSnapshot
    params: ReconciliationParams
    state: PollerState = PollerState.IDLE
    task: Optional[asyncio.Task] = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    attempts: list[ReconciliationAttempt] = field(default_factory=list)
    consecutive_failures: int = 0
    last_verify_at: datetime = _EPOCH
    final_status: Optional[LinkStatus] = None


class ReconciliationPoller:
    """Owns the polling state machine for link sessions."""

    def __init__(
        self,
        store: SessionStateStore,
        verification: VerificationClient,
        fetch_snapshot: SnapshotFetcher,
        events: Optional[LinkEventHub] = None,
        params: Optional[ReconciliationParams] = None,
        clock: Clock = utc_now,
    ):
        self.logger = logger
        self.store = store
        self.verification = verification
        self.fetch_snapshot = fetch_snapshot
        self.events = events or LinkEventHub()
        self.params = params or ReconciliationParams()
        self.clock = clock
        self._tracks: dict[str, _SessionTrack] = {}

    def start(
        self,
        session: LinkSession,
        baseline: Optional[PaymentMethodSnapshot] = None,
        config: Optional[ReconciliationParams] = None
    ) -> bool:
        """
        Begin polling a session.

        Idempotent: a session already polling (or already finished) is left
        alone and no second loop is spawned. Moves PENDING to VERIFYING.

        Returns:
            True if a new loop was started
        """
        reference = session.reference
        track = self._tracks.get(reference)
        if track is not None and track.state != PollerState.IDLE:
            self.logger.debug("Poller already started for session", reference=reference,
                              poller_state=track.state.value)
            return False

        if not self.store.is_active(reference):
            self.logger.warning("Refusing to poll inactive session", reference=reference)
            return False

        track = self._track(session, baseline, config)
        if config is not None:
            track.params = config
        track.state = PollerState.POLLING

        self._transition(track, {LinkStatus.PENDING}, LinkStatus.VERIFYING, "poll_started")

        track.task = asyncio.create_task(self._run(track), name=f"poll-{reference}")
        self.logger.info(
            "Started reconciliation poller",
            reference=reference,
            account_id=session.account_id,
            poll_interval=track.params.poll_interval,
            timeout_at=format_timestamp(session.timeout_at)
        )
        return True

    def cancel(self, session: LinkSession) -> bool:
        """
        Cancel a session.

        The store is cleared immediately; the loop exits at its next
        suspension point.

        Returns:
            True if this call cancelled the session
        """
        track = self._tracks.get(session.reference) or self._track(session, None, None)
        cancelled = self._transition(track, ACTIVE_STATUSES, LinkStatus.CANCELLED, "cancel")
        return cancelled is not None

    async def probe(self, session: LinkSession,
                    trigger: ProbeTrigger = ProbeTrigger.RESUME) -> AttemptOutcome:
        """Run one out-of-schedule reconciliation attempt through the same CAS."""
        track = self._track(session, None, None)
        return await self._reconcile(track, trigger)

    def expire_if_due(self, session: LinkSession) -> bool:
        """
        Time out an active session whose absolute deadline has passed.

        Covers sessions whose loop never started.

        Returns:
            True if this call timed the session out
        """
        if seconds_until(session.timeout_at, self.clock()) > 0:
            return False
        if not self.store.is_active(session.reference):
            return False
        track = self._track(session, None, None)
        return self._time_out(track, "deadline") is not None

    def state(self, reference: str) -> PollerState:
        track = self._tracks.get(reference)
        return track.state if track is not None else PollerState.IDLE

    def is_polling(self, reference: str) -> bool:
        return self.state(reference) == PollerState.POLLING

    def attempts(self, reference: str) -> list[ReconciliationAttempt]:
        track = self._tracks.get(reference)
        return list(track.attempts) if track is not None else []

    async def wait_closed(self, reference: str) -> Optional[LinkStatus]:
        """Wait for the session's loop to exit and return its final status."""
        track = self._tracks.get(reference)
        if track is None:
            return None
        if track.task is not None:
            await asyncio.gather(track.task, return_exceptions=True)
        return track.final_status

    async def shutdown(self) -> None:
        """Stop every running loop without touching session status."""
        running = [t for t in self._tracks.values() if t.task and not t.task.done()]
        for track in running:
            track.task.cancel()
        if running:
            await asyncio.gather(*(t.task for t in running), return_exceptions=True)
        # A task cancelled before its first step never reaches its finally block
        for track in running:
            self._settle_track(track)

    def prune_finished(self) -> int:
        """Drop bookkeeping for sessions that reached a terminal status."""
        for track in self._tracks.values():
            idle = track.task is None or track.task.done()
            if idle and track.final_status is None and not self.store.is_active(track.session.reference):
                # Probed or cancelled here but ended elsewhere, e.g. superseded
                self._settle_track(track)

        finished = [
            reference for reference, track in self._tracks.items()
            if track.final_status is not None and (track.task is None or track.task.done())
        ]
        for reference in finished:
            del self._tracks[reference]
            self.verification.release(reference)
        return len(finished)

    def _track(
        self,
        session: LinkSession,
        baseline: Optional[PaymentMethodSnapshot],
        config: Optional[ReconciliationParams]
    ) -> _SessionTrack:
        track = self._tracks.get(session.reference)
        if track is None:
            track = _SessionTrack(
                session=session,
                baseline=baseline if baseline is not None else session.baseline,
                params=config or self.params,
            )
            self._tracks[session.reference] = track
        elif baseline is not None and track.state == PollerState.IDLE:
            track.baseline = baseline
        return track

    async def _run(self, track: _SessionTrack) -> None:
        session = track.session
        reference = session.reference
        exhausted = False

        try:
            while self.store.is_active(reference):
                remaining = seconds_until(session.timeout_at, self.clock())
                if remaining <= 0:
                    break

                await self._wait(track, min(track.params.poll_interval, remaining))

                if not self.store.is_active(reference):
                    break
                if seconds_until(session.timeout_at, self.clock()) <= 0:
                    break

                self._maybe_verify(track)

                outcome = await self._reconcile(track, ProbeTrigger.SCHEDULE)
                if outcome in (AttemptOutcome.CONFIRMED, AttemptOutcome.SUPERSEDED,
                               AttemptOutcome.EXPIRED):
                    break
                if (outcome == AttemptOutcome.FETCH_FAILED
                        and track.consecutive_failures > track.params.max_consecutive_failures):
                    exhausted = True
                    self.logger.warning(
                        "Giving up after consecutive fetch failures",
                        reference=reference,
                        consecutive_failures=track.consecutive_failures,
                        max_consecutive_failures=track.params.max_consecutive_failures
                    )
                    break

            self._time_out(track, "fetch_failures" if exhausted else "deadline")
        except asyncio.CancelledError:
            self.logger.info("Reconciliation poller stopped", reference=reference)
            raise
        finally:
            self._settle_track(track)

    async def _wait(self, track: _SessionTrack, seconds: float) -> None:
        """Sleep for ``seconds`` or until the session is cancelled."""
        try:
            await asyncio.wait_for(track.wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _maybe_verify(self, track: _SessionTrack) -> None:
        now = self.clock()
        elapsed = (now - track.last_verify_at).total_seconds()
        if elapsed >= track.params.verify_interval and track.session.reference:
            track.last_verify_at = now
            self.verification.verify(track.session.reference)

    async def _reconcile(self, track: _SessionTrack, trigger: ProbeTrigger) -> AttemptOutcome:
        """
        One reconciliation attempt: fetch, diff against baseline, CAS on new methods.

        An attempt made after the absolute deadline times the session out
        instead of fetching.
        """
        session = track.session
        reference = session.reference
        started_at = self.clock()

        if not self.store.is_active(reference):
            return self._record(track, started_at, AttemptOutcome.SUPERSEDED, trigger)

        if seconds_until(session.timeout_at, started_at) <= 0:
            self._time_out(track, "deadline")
            return self._record(track, started_at, AttemptOutcome.EXPIRED, trigger)

        try:
            snapshot = await self.fetch_snapshot(session.account_id)
        except Exception as e:
            track.consecutive_failures += 1
            error = TransientFetchError(
                str(e),
                account_id=session.account_id,
                consecutive_failures=track.consecutive_failures
            )
            self.logger.warning(
                "Payment method fetch failed",
                reference=reference,
                trigger=trigger.value,
                consecutive_failures=error.consecutive_failures,
                error=str(error)
            )
            return self._record(track, started_at, AttemptOutcome.FETCH_FAILED, trigger)

        track.consecutive_failures = 0
        new_methods = snapshot.new_since(track.baseline)
        if not new_methods:
            return self._record(track, started_at, AttemptOutcome.NO_CHANGE, trigger)

        confirmed = self._transition(
            track, ACTIVE_STATUSES, LinkStatus.CONFIRMED, trigger.value,
            context={"new_method_ids": [m.id for m in new_methods]}
        )
        if confirmed is None:
            # Another probe confirmed first, or the session was cancelled
            return self._record(track, started_at, AttemptOutcome.SUPERSEDED, trigger)

        self.events.emit_new_method_detected(new_methods, confirmed)
        return self._record(track, started_at, AttemptOutcome.CONFIRMED, trigger)

    def _time_out(self, track: _SessionTrack, trigger: str) -> Optional[LinkSession]:
        session = track.session
        return self._transition(
            track, ACTIVE_STATUSES, LinkStatus.TIMED_OUT, trigger,
            context={
                "attempts": len(track.attempts),
                "elapsed_seconds": round(time_elapsed_seconds(session.created_at, self.clock()), 3),
                "timeout_at": format_timestamp(session.timeout_at),
            }
        )

    def _transition(
        self,
        track: _SessionTrack,
        expected: Any,
        new_status: LinkStatus,
        trigger: str,
        context: Optional[dict[str, Any]] = None
    ) -> Optional[LinkSession]:
        reference = track.session.reference
        before = self.store.get()
        updated = self.store.compare_and_set_status(reference, expected, new_status)
        if updated is None:
            return None

        log_state_transition(
            state_logger,
            reference=reference,
            from_state=before.status.value if before is not None else "none",
            to_state=new_status.value,
            trigger=trigger,
            context=context
        )

        track.session = updated
        if new_status.is_terminal:
            track.final_status = new_status
            track.state = _TERMINAL_POLLER_STATE[new_status]
            self.verification.mark_settled(reference)
            track.wake.set()

        self.events.emit_status_changed(updated)
        return updated

    def _settle_track(self, track: _SessionTrack) -> None:
        if track.final_status is not None:
            return
        if self.store.is_active(track.session.reference):
            # Loop stopped by shutdown; the session may be polled again
            track.state = PollerState.IDLE
            return
        # Cleared by someone else, e.g. superseded by a newer session
        track.final_status = LinkStatus.CANCELLED
        track.state = PollerState.CANCELLED
        self.verification.mark_settled(track.session.reference)

    def _record(
        self,
        track: _SessionTrack,
        started_at: datetime,
        outcome: AttemptOutcome,
        trigger: ProbeTrigger
    ) -> AttemptOutcome:
        attempt = ReconciliationAttempt(
            attempt_number=len(track.attempts) + 1,
            started_at=started_at,
            outcome=outcome,
            trigger=trigger,
        )
        track.attempts.append(attempt)
        self.logger.debug(
            "Reconciliation attempt",
            reference=track.session.reference,
            attempt_number=attempt.attempt_number,
            outcome=outcome.value,
            trigger=trigger.value
        )
        return outcome
