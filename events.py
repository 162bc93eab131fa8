"""
Scan events and a small observer registry.

Any number of listeners can subscribe to each event. A failing listener is
logged and skipped; it never breaks the controller that published the event.
"""

import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class ScanEvent(Enum):
    DOCUMENT_DETECTED = "document_detected"   # AnalysisResult, first frame with a document
    POSITIONED = "positioned"                 # AnalysisResult, entry into POSITIONED
    QUALITY_CHANGED = "quality_changed"       # AnalysisResult, quality differs from previous
    ANALYSIS_COMPLETE = "analysis_complete"   # AnalysisResult, every analysed frame
    SCAN_PROGRESS = "scan_progress"           # float in [0, 1] during extraction
    SCAN_COMPLETE = "scan_complete"           # ScanAttempt, end of every capture attempt
    SESSION_FINISHED = "session_finished"     # ScanOutcome, exactly once per session


class EventBus:
    def __init__(self):
        self._listeners: Dict[ScanEvent, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: ScanEvent, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it again."""
        with self._lock:
            self._listeners[event].append(listener)
        return lambda: self.unsubscribe(event, listener)

    def unsubscribe(self, event: ScanEvent, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

    def publish(self, event: ScanEvent, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener for {event.value} failed: {e}", exc_info=True)

    def listener_count(self, event: ScanEvent) -> int:
        with self._lock:
            return len(self._listeners[event])

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
