"""
Scan Controller

Bounded-retry state machine deciding, from a stream of analysis results,
when to trigger a capture, how long to back off between attempts and when
to give up.

    IDLE -> SAMPLING -> POSITIONED -> CAPTURING -> SUCCESS
                ^                          |
                +------ RETRYING <---------+-> FAILED
    (any active state) -> TIMED_OUT

The controller never captures or recognizes anything itself: a trigger is
returned to the caller as a CaptureRequest, and the caller reports back with
complete(). All session state lives here and is guarded by one lock.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from events import EventBus, ScanEvent
from models import (
    AnalysisResult,
    ExtractionResult,
    FailureKind,
    OutcomeStatus,
    ScanAttempt,
    ScanFailure,
    ScanOutcome,
    ScanState,
)
from settings import ScanSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureRequest:
    """One capture + extraction the caller must run and report back"""
    session_id: int
    attempt: int
    manual: bool = False


@dataclass
class ScanSession:
    session_id: int
    session_start: float
    max_attempts: int
    cooldown: float
    auto_entry_timeout: float
    state: ScanState = ScanState.SAMPLING
    attempts: int = 0
    last_scan_at: Optional[float] = None
    last_analysis: Optional[AnalysisResult] = None
    in_flight: Optional[CaptureRequest] = None

    @property
    def deadline(self) -> float:
        return self.session_start + self.auto_entry_timeout


class ScanController:
    """
    Owns the ScanSession and its transitions.

    Events are published after the lock is released, so listeners may call
    back into the controller.
    """

    def __init__(
        self,
        settings: Optional[ScanSettings] = None,
        quality_threshold: float = 0.5,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        on_finished: Optional[Callable[[ScanOutcome], None]] = None
    ):
        """
        Args:
            on_finished: Called with every terminal outcome of this controller,
                before SESSION_FINISHED is published on the (possibly shared) bus
        """
        self.settings = settings or ScanSettings()
        self.quality_threshold = quality_threshold
        self.events = events or EventBus()
        self.clock = clock
        self.on_finished = on_finished

        self._lock = threading.RLock()
        self._session: Optional[ScanSession] = None
        self._session_counter = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._session.state if self._session else ScanState.IDLE

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._session.attempts if self._session else 0

    @property
    def session_id(self) -> Optional[int]:
        with self._lock:
            return self._session.session_id if self._session else None

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._session is not None and not self._session.state.is_terminal

    def snapshot(self) -> Optional[ScanSession]:
        """Copy of the current session, safe to read from another thread."""
        with self._lock:
            return replace(self._session) if self._session else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> int:
        """Begin a new session in SAMPLING; any previous session is discarded."""
        with self._lock:
            self._session_counter += 1
            self._session = ScanSession(
                session_id=self._session_counter,
                session_start=self.clock(),
                max_attempts=self.settings.max_attempts,
                cooldown=self.settings.cooldown,
                auto_entry_timeout=self.settings.auto_entry_timeout,
            )
            session_id = self._session.session_id
        logger.info(
            f"Scan session {session_id} started (max attempts {self.settings.max_attempts}, "
            f"cooldown {self.settings.cooldown}s, timeout {self.settings.auto_entry_timeout}s)"
        )
        return session_id

    def stop(self) -> bool:
        """Return to IDLE. Idempotent; late results for the old session are dropped."""
        with self._lock:
            if self._session is None:
                return False
            session_id = self._session.session_id
            self._session = None
        logger.info(f"Scan session {session_id} stopped")
        return True

    def abort(self, failure: ScanFailure) -> bool:
        """End an active session immediately with an ABORTED outcome and return to IDLE."""
        with self._lock:
            session = self._session
            if session is None or session.state.is_terminal:
                return False
            outcome = ScanOutcome(
                session_id=session.session_id,
                status=OutcomeStatus.ABORTED,
                attempts=session.attempts,
                failure=failure,
                elapsed=self.clock() - session.session_start,
            )
            self._session = None
        logger.warning(f"Scan session {outcome.session_id} aborted: {failure.message}")
        self._finish(outcome)
        return True

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_analysis(self, result: AnalysisResult) -> Optional[CaptureRequest]:
        """
        Feed one analysis result.

        Returns a CaptureRequest when the trigger condition holds: document
        positioned with enough quality, nothing in flight, cooldown elapsed
        and attempts left.
        """
        pending: List[Tuple[ScanEvent, object]] = []
        request = None

        with self._lock:
            session = self._session
            if session is None or session.state.is_terminal:
                return None

            previous = session.last_analysis
            session.last_analysis = result

            pending.append((ScanEvent.ANALYSIS_COMPLETE, result))
            if result.has_document and not (previous and previous.has_document):
                pending.append((ScanEvent.DOCUMENT_DETECTED, result))
            if previous is None or previous.quality != result.quality:
                pending.append((ScanEvent.QUALITY_CHANGED, result))

            now = self.clock()
            ready = result.is_positioned and result.quality >= self.quality_threshold

            if session.state == ScanState.RETRYING and self._cooldown_elapsed(session, now):
                session.state = ScanState.SAMPLING

            if session.state == ScanState.SAMPLING and ready:
                session.state = ScanState.POSITIONED
                pending.append((ScanEvent.POSITIONED, result))
            elif session.state == ScanState.POSITIONED and not ready:
                session.state = ScanState.SAMPLING

            if session.state == ScanState.POSITIONED and self._can_trigger(session, now):
                request = self._begin_capture(session, now, manual=False)

        self._publish(pending)
        return request

    def manual_scan(self) -> Optional[CaptureRequest]:
        """
        Request a capture regardless of position and cooldown.

        Still counts as an attempt and is refused while a capture is in flight
        or when no attempts are left.
        """
        with self._lock:
            session = self._session
            if session is None or session.state.is_terminal:
                logger.info("Manual scan ignored: no active session")
                return None
            if session.state == ScanState.CAPTURING or session.in_flight is not None:
                logger.info("Manual scan ignored: capture already in progress")
                return None
            if session.attempts >= session.max_attempts:
                logger.info("Manual scan ignored: no attempts left")
                return None
            return self._begin_capture(session, self.clock(), manual=True)

    def complete(
        self,
        request: CaptureRequest,
        result: Optional[ExtractionResult] = None,
        failure: Optional[ScanFailure] = None
    ) -> bool:
        """
        Report the outcome of a capture attempt.

        Returns False when the request is stale (session stopped, restarted
        or already finished) and the result was dropped.
        """
        with self._lock:
            session = self._session
            if session is None or session.session_id != request.session_id or session.in_flight != request:
                logger.debug(f"Dropping stale result for session {request.session_id} attempt {request.attempt}")
                return False

            session.in_flight = None
            now = self.clock()
            outcome = None

            if failure is None and result is not None and result.confidence >= self.settings.success_threshold:
                session.state = ScanState.SUCCESS
                attempt = ScanAttempt(session.session_id, request.attempt, request.manual, result=result)
                outcome = ScanOutcome(
                    session_id=session.session_id,
                    status=OutcomeStatus.SUCCESS,
                    attempts=session.attempts,
                    result=result,
                    elapsed=now - session.session_start,
                )
                logger.info(
                    f"Scan attempt {request.attempt} succeeded "
                    f"(type={result.document_type.value}, confidence={result.confidence:.2f})"
                )
            else:
                if failure is None:
                    confidence = result.confidence if result is not None else 0.0
                    failure = ScanFailure(
                        FailureKind.LOW_CONFIDENCE,
                        f"Confidence {confidence:.2f} below {self.settings.success_threshold:.2f}"
                    )
                attempt = ScanAttempt(session.session_id, request.attempt, request.manual,
                                      result=result, failure=failure)
                logger.warning(
                    f"Scan attempt {request.attempt}/{session.max_attempts} failed: "
                    f"{failure.kind.value} {failure.message}"
                )

                if session.attempts >= session.max_attempts:
                    session.state = ScanState.FAILED
                    outcome = ScanOutcome(
                        session_id=session.session_id,
                        status=OutcomeStatus.FAILED,
                        attempts=session.attempts,
                        result=result,
                        failure=ScanFailure(
                            FailureKind.ATTEMPTS_EXHAUSTED,
                            f"No acceptable scan after {session.attempts} attempts, falling back to manual entry"
                        ),
                        elapsed=now - session.session_start,
                    )
                else:
                    session.state = ScanState.RETRYING
                    session.last_scan_at = now

        self.events.publish(ScanEvent.SCAN_COMPLETE, attempt)
        if outcome is not None:
            self._finish(outcome)
        return True

    def expire(self, session_id: Optional[int] = None) -> bool:
        """
        Fire the auto-entry timeout. Only the first call for an active session
        has any effect.
        """
        with self._lock:
            session = self._session
            if session is None or session.state.is_terminal:
                return False
            if session_id is not None and session.session_id != session_id:
                return False
            session.state = ScanState.TIMED_OUT
            session.in_flight = None
            outcome = ScanOutcome(
                session_id=session.session_id,
                status=OutcomeStatus.TIMED_OUT,
                attempts=session.attempts,
                failure=ScanFailure(FailureKind.TIMED_OUT, "Auto-scan timeout reached, defaulting to manual entry"),
                elapsed=self.clock() - session.session_start,
            )
        self._finish(outcome)
        return True

    def check_timeout(self) -> bool:
        """Expire the session if its deadline has passed."""
        with self._lock:
            session = self._session
            if session is None or session.state.is_terminal or self.clock() < session.deadline:
                return False
            session_id = session.session_id
        return self.expire(session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _cooldown_elapsed(session: ScanSession, now: float) -> bool:
        return session.last_scan_at is None or now - session.last_scan_at >= session.cooldown

    def _can_trigger(self, session: ScanSession, now: float) -> bool:
        return (
            session.state != ScanState.CAPTURING and
            session.in_flight is None and
            self._cooldown_elapsed(session, now) and
            session.attempts < session.max_attempts
        )

    @staticmethod
    def _begin_capture(session: ScanSession, now: float, manual: bool) -> CaptureRequest:
        session.attempts += 1
        session.last_scan_at = now
        session.state = ScanState.CAPTURING
        session.in_flight = CaptureRequest(session.session_id, session.attempts, manual)
        kind = "Manual" if manual else "Automatic"
        logger.info(f"{kind} scan triggered (attempt {session.attempts}/{session.max_attempts})")
        return session.in_flight

    def _finish(self, outcome: ScanOutcome) -> None:
        logger.info(
            f"Scan session {outcome.session_id} finished: {outcome.status.value} "
            f"after {outcome.attempts} attempt(s) in {outcome.elapsed:.1f}s"
        )
        if self.on_finished is not None:
            self.on_finished(outcome)
        self.events.publish(ScanEvent.SESSION_FINISHED, outcome)

    def _publish(self, pending: List[Tuple[ScanEvent, object]]) -> None:
        for event, payload in pending:
            self.events.publish(event, payload)
