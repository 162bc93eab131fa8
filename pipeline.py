"""
Pipeline Coordinator

Wires a frame source, the frame analyzer, the scan controller and the
extraction engine together:

- one daemon sampling thread analyses the latest frame every
  ``analysis_interval`` seconds and feeds the controller; overrun ticks are
  skipped, never queued
- capture + extraction runs on a single OCR worker thread so sampling keeps
  going while recognition is in flight
- an independent timer fires the auto-entry timeout exactly once
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from errors import (
    AnalysisError,
    CameraNotReadyError,
    CaptureError,
    ExtractionCancelled,
    ExtractionError,
    PermissionRevoked,
    RecognitionError,
)
from events import EventBus, ScanEvent
from extraction_engine import CancellationToken, ExtractionEngine
from frame_analyzer import FrameAnalyzer
from frame_sources import CameraReadiness, FrameSource
from models import (
    DocumentType,
    ExtractionResult,
    FailureKind,
    OutcomeStatus,
    ScanFailure,
    ScanOutcome,
    ScanState,
    ValidationResult,
)
from scan_controller import CaptureRequest, ScanController
from settings import ScanSettings

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[ScanOutcome], Any]


@dataclass(frozen=True)
class SessionHandle:
    session_id: int


@dataclass
class _ActiveSession:
    handle: SessionHandle
    source: FrameSource
    readiness: CameraReadiness
    on_timeout: Optional[TimeoutCallback]
    stop_event: threading.Event = field(default_factory=threading.Event)
    sampler: Optional[threading.Thread] = None
    timer: Optional[threading.Timer] = None
    token: Optional[CancellationToken] = None

    def halt(self) -> None:
        """Stop sampling, disarm the timer and cancel any in-flight extraction."""
        self.stop_event.set()
        if self.timer is not None:
            self.timer.cancel()
        if self.token is not None:
            self.token.cancel()


class ScanPipeline:
    """Runs one auto-scan session at a time"""

    def __init__(
        self,
        analyzer: FrameAnalyzer,
        engine: ExtractionEngine,
        settings: Optional[ScanSettings] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.analyzer = analyzer
        self.engine = engine
        self.settings = settings or ScanSettings()
        self.events = events or EventBus()
        self.controller = ScanController(
            self.settings,
            quality_threshold=analyzer.settings.quality_threshold,
            events=self.events,
            clock=clock,
            on_finished=self._on_session_finished,
        )

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="OCR_Worker")
        self._lock = threading.Lock()
        self._active: Optional[_ActiveSession] = None

    @property
    def state(self) -> ScanState:
        return self.controller.state

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def start(
        self,
        frame_source: FrameSource,
        on_timeout: Optional[TimeoutCallback] = None,
        readiness: Optional[CameraReadiness] = None
    ) -> SessionHandle:
        """
        Start sampling frames from ``frame_source``.

        ``on_timeout`` receives the TIMED_OUT outcome when the auto-entry
        timeout elapses without a successful scan. Readiness defaults to the
        frame source's own.

        Raises:
            CameraNotReadyError: the camera is not ready or permission is missing.
        """
        readiness = readiness or frame_source
        if not readiness.is_ready():
            raise CameraNotReadyError("Camera is not ready, refusing to start scanning")

        self.stop()

        session_id = self.controller.start()
        active = _ActiveSession(
            handle=SessionHandle(session_id),
            source=frame_source,
            readiness=readiness,
            on_timeout=on_timeout,
        )
        active.timer = threading.Timer(self.settings.auto_entry_timeout, self._on_deadline, args=(session_id,))
        active.timer.daemon = True
        active.sampler = threading.Thread(
            target=self._sample_loop,
            args=(active,),
            name=f"Frame_Sampler-{session_id}",
            daemon=True,
        )

        with self._lock:
            self._active = active
        active.timer.start()
        active.sampler.start()
        return active.handle

    def stop(self, handle: Optional[SessionHandle] = None) -> None:
        """Stop the session (the current one when ``handle`` is None). Idempotent."""
        with self._lock:
            active = self._active
            if active is None or (handle is not None and handle != active.handle):
                return
            self._active = None

        active.halt()
        if self.controller.session_id == active.handle.session_id:
            self.controller.stop()
        if active.sampler is not None and active.sampler is not threading.current_thread():
            active.sampler.join(timeout=max(1.0, self.settings.analysis_interval * 5))

    def manual_scan(self, handle: SessionHandle) -> Optional["Future[ExtractionResult]"]:
        """
        Capture right away, ignoring position and cooldown.

        Returns a Future for the extraction result, or None when the request
        was a no-op (capture in flight, no attempts left, session over).
        """
        active = self._get_active(handle)
        if active is None:
            logger.info(f"Manual scan ignored: session {handle.session_id} is not running")
            return None
        request = self.controller.manual_scan()
        if request is None:
            return None
        return self._submit(active, request)

    def validate(self, fields: Mapping[str, str], document_type: Union[DocumentType, str]) -> ValidationResult:
        return self.engine.validate(fields, document_type)

    def shutdown(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _sample_loop(self, active: _ActiveSession) -> None:
        interval = self.settings.analysis_interval
        next_tick = time.monotonic()

        while not active.stop_event.is_set():
            try:
                if not active.readiness.is_ready():
                    raise PermissionRevoked("Camera permission revoked")
                self._tick(active)
            except PermissionRevoked as e:
                logger.warning(f"Camera readiness lost during session {active.handle.session_id}: {e}")
                self.controller.abort(ScanFailure(FailureKind.PERMISSION_REVOKED, str(e)))
                break

            next_tick += interval
            now = time.monotonic()
            if now > next_tick:
                skipped = int((now - next_tick) // interval) + 1
                next_tick += skipped * interval
                logger.debug(f"Analysis overran the sampling interval, skipped {skipped} tick(s)")
            active.stop_event.wait(max(0.0, next_tick - now))

        logger.debug(f"Sampling stopped for session {active.handle.session_id}")

    def _tick(self, active: _ActiveSession) -> None:
        frame = active.source.next_frame()
        if frame is None:
            return
        try:
            result = self.analyzer.analyze(frame)
        except AnalysisError as e:
            logger.warning(f"Skipping frame: {e}")
            return

        if active.stop_event.is_set():
            return
        request = self.controller.on_analysis(result)
        if request is not None:
            self._submit(active, request)

    # ------------------------------------------------------------------
    # Capture + extraction
    # ------------------------------------------------------------------

    def _submit(self, active: _ActiveSession, request: CaptureRequest) -> "Future[ExtractionResult]":
        token = CancellationToken()
        active.token = token
        if active.stop_event.is_set():
            token.cancel()
        return self._executor.submit(self._run_attempt, active, request, token)

    def _run_attempt(
        self,
        active: _ActiveSession,
        request: CaptureRequest,
        token: CancellationToken
    ) -> ExtractionResult:
        """Worker body: capture, extract, report back. Runs on the OCR worker."""
        def progress(value: float) -> None:
            if not token.cancelled:
                self.events.publish(ScanEvent.SCAN_PROGRESS, value)

        try:
            token.raise_if_cancelled("before capture")
            try:
                image = active.source.capture_high_res()
            except CaptureError:
                raise
            except Exception as e:
                raise CaptureError(f"High resolution capture failed: {e}") from e

            result = self.engine.extract(image, cancel_token=token, on_progress=progress)
        except ExtractionCancelled as e:
            logger.info(f"Attempt {request.attempt} of session {request.session_id}: {e}")
            raise
        except (CaptureError, ExtractionError) as e:
            # Undecodable or malformed captures count against the camera, not OCR
            self.controller.complete(request, failure=ScanFailure(FailureKind.CAPTURE_ERROR, str(e)))
            raise
        except RecognitionError as e:
            self.controller.complete(request, failure=ScanFailure(FailureKind.RECOGNITION_ERROR, str(e)))
            raise
        except Exception as e:
            logger.error(f"Unexpected failure in scan attempt {request.attempt}: {e}", exc_info=True)
            self.controller.complete(request, failure=ScanFailure(FailureKind.RECOGNITION_ERROR, str(e)))
            raise

        if token.cancelled:
            raise ExtractionCancelled("Extraction cancelled after field extraction")
        self.controller.complete(request, result=result)
        return result

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    def _on_deadline(self, session_id: int) -> None:
        self.controller.expire(session_id)

    def _on_session_finished(self, outcome: ScanOutcome) -> None:
        active = self._get_active(SessionHandle(outcome.session_id))
        if active is None:
            return
        active.halt()
        if outcome.status == OutcomeStatus.TIMED_OUT and active.on_timeout is not None:
            try:
                active.on_timeout(outcome)
            except Exception as e:
                logger.error(f"Timeout callback failed for session {outcome.session_id}: {e}", exc_info=True)

    def _get_active(self, handle: SessionHandle) -> Optional[_ActiveSession]:
        with self._lock:
            if self._active is not None and self._active.handle == handle:
                return self._active
            return None
