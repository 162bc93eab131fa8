"""
Live ID Document Scanner

Runs an auto-scan session against a local webcam:
1. Frames are analysed for a centered, sharp, well-lit document
2. Once positioned, the document is captured and sent to OCR
3. Fields are extracted and validated for the detected document type
4. Low-confidence scans are retried with a cooldown, up to a maximum number
   of attempts, before falling back to manual entry

Run headless (default) or with --preview for an OpenCV window showing the
detected document box and positioning guidance.
"""

import argparse
import json
import logging
import sys
import threading
from typing import Any, Dict, Optional

import cv2
import numpy as np

from errors import ConfigurationError
from events import ScanEvent
from extraction_engine import ExtractionEngine
from frame_analyzer import FrameAnalyzer
from frame_sources import OpenCVFrameSource
from models import AnalysisResult, OutcomeStatus, ScanAttempt, ScanOutcome
from pipeline import ScanPipeline
from recognition import SuryaRecognitionBackend
from settings import PRESETS

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

COLOR_SEARCHING = (200, 200, 200)   # Light gray
COLOR_DETECTED = (255, 255, 0)      # Yellow (RGB)
COLOR_READY = (0, 255, 0)           # Green


class LiveScanner:
    """
    Drives one scan session against a webcam and reports the terminal outcome.
    """

    def __init__(
        self,
        camera_id: Any = 0,
        width: int = 1280,
        height: int = 720,
        preset: str = "lenient",
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cooldown: Optional[float] = None,
        preview: bool = False
    ):
        """
        Initialize the live scanner.

        Args:
            camera_id: Camera device ID (int) or URL (str)
            width: Desired camera width
            height: Desired camera height
            preset: "lenient" or "strict" detection and confidence thresholds
            timeout: Auto-entry timeout in seconds (preset default if None)
            max_attempts: Maximum capture attempts (preset default if None)
            cooldown: Seconds between automatic attempts (preset default if None)
            preview: Show an OpenCV window with the detection overlay
        """
        analysis_settings, scan_settings = PRESETS[preset]
        overrides = {
            "auto_entry_timeout": timeout,
            "max_attempts": max_attempts,
            "cooldown": cooldown,
        }
        scan_settings = scan_settings.with_overrides(**{k: v for k, v in overrides.items() if v is not None})

        self.preview = preview
        self.source = OpenCVFrameSource(camera_id, width, height)
        self.analyzer = FrameAnalyzer(analysis_settings)
        self.engine = ExtractionEngine(SuryaRecognitionBackend())
        self.pipeline = ScanPipeline(self.analyzer, self.engine, scan_settings)

        self.finished = threading.Event()
        self.outcome: Optional[ScanOutcome] = None
        self.last_analysis: Optional[AnalysisResult] = None

        events = self.pipeline.events
        events.subscribe(ScanEvent.DOCUMENT_DETECTED, lambda r: logger.info("Document detected"))
        events.subscribe(ScanEvent.POSITIONED, lambda r: logger.info(f"Document positioned (quality {r.quality:.2f})"))
        events.subscribe(ScanEvent.ANALYSIS_COMPLETE, self._on_analysis)
        events.subscribe(ScanEvent.SCAN_COMPLETE, self._on_scan_complete)
        events.subscribe(ScanEvent.SESSION_FINISHED, self._on_finished)

    def _on_analysis(self, result: AnalysisResult) -> None:
        self.last_analysis = result

    def _on_scan_complete(self, attempt: ScanAttempt) -> None:
        if attempt.succeeded:
            logger.info(f"Attempt {attempt.attempt}: confidence {attempt.result.confidence:.2f}")
        else:
            logger.info(f"Attempt {attempt.attempt}: {attempt.failure.kind.value}")

    def _on_finished(self, outcome: ScanOutcome) -> None:
        self.outcome = outcome
        self.finished.set()

    def _draw_overlay(self, rgb: np.ndarray) -> np.ndarray:
        """Draw the detected document box and guidance text; returns a BGR image"""
        overlay = cv2.cvtColor(np.ascontiguousarray(rgb), cv2.COLOR_RGB2BGR)
        result = self.last_analysis
        if result is None:
            return overlay

        hint = self.analyzer.hint(result)
        color = COLOR_SEARCHING
        if result.has_document:
            color = COLOR_READY if result.is_positioned else COLOR_DETECTED
            box = result.bounding_box
            cv2.rectangle(overlay,
                          (int(box.x), int(box.y)),
                          (int(box.x + box.width), int(box.y + box.height)),
                          color[::-1], 3)

        h, w = overlay.shape[:2]
        cv2.rectangle(overlay, (0, 0), (w, 50), (0, 0, 0), -1)
        cv2.putText(overlay, hint, (20, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2)

        cv2.rectangle(overlay, (0, h - 30), (w, h), (0, 0, 0), -1)
        cv2.putText(overlay, f"Quality: {result.quality:.0%} | 's' scan now | 'q' quit",
                    (20, h - 10), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (150, 150, 150), 1)
        return overlay

    def run(self) -> Optional[ScanOutcome]:
        """Main loop - run one scan session until it finishes or the user quits"""
        if not self.source.open():
            logger.error("Failed to initialize camera. Exiting.")
            return None

        try:
            self.analyzer.settings.check_frame_size(self.source.frame_width, self.source.frame_height)
        except ConfigurationError as e:
            logger.error(f"Preset cannot detect documents on this camera: {e}")
            self.cleanup()
            return None

        try:
            handle = self.pipeline.start(self.source, on_timeout=lambda o: logger.info("Falling back to manual entry"))
            logger.info("Scanning started. Hold your ID document in front of the camera.")

            while not self.finished.is_set():
                if not self.preview:
                    self.finished.wait(0.2)
                    continue

                frame = self.source.next_frame()
                if frame is not None:
                    cv2.imshow("ID Document Scanner", self._draw_overlay(frame.data))
                key = cv2.waitKey(30) & 0xFF
                if key == ord('q'):
                    logger.info("Quit requested by user")
                    break
                elif key == ord('s'):
                    self.pipeline.manual_scan(handle)

        except KeyboardInterrupt:
            logger.info("Interrupted by user")

        finally:
            self.cleanup()

        return self.outcome

    def cleanup(self):
        """Clean up resources"""
        self.pipeline.shutdown()
        self.source.close()
        if self.preview:
            cv2.destroyAllWindows()
        logger.info("Cleanup complete")


def outcome_to_dict(outcome: ScanOutcome) -> Dict[str, Any]:
    data = {
        "session_id": outcome.session_id,
        "status": outcome.status.value,
        "attempts": outcome.attempts,
        "elapsed": round(outcome.elapsed, 2),
    }
    if outcome.failure is not None:
        data["failure"] = {"kind": outcome.failure.kind.value, "message": outcome.failure.message}
    if outcome.result is not None:
        data["result"] = outcome.result.to_dict()
    return data


def main():
    """Entry point for the live scanner"""
    parser = argparse.ArgumentParser(description="Live ID Document Auto-Scan")
    parser.add_argument("--camera", type=int, default=0, help="Camera index (default: 0)")
    parser.add_argument("--width", type=int, default=1280, help="Camera width (default: 1280)")
    parser.add_argument("--height", type=int, default=720, help="Camera height (default: 720)")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="lenient",
                        help="Detection and confidence thresholds (default: lenient)")
    parser.add_argument("--timeout", type=float, default=None, help="Auto-entry timeout in seconds")
    parser.add_argument("--attempts", type=int, default=None, help="Maximum capture attempts")
    parser.add_argument("--cooldown", type=float, default=None, help="Seconds between automatic attempts")
    parser.add_argument("--preview", action="store_true", help="Show a preview window")

    args = parser.parse_args()

    config = {
        "camera_id": args.camera,
        "width": args.width,
        "height": args.height,
        "preset": args.preset,
        "timeout": args.timeout,
        "max_attempts": args.attempts,
        "cooldown": args.cooldown,
        "preview": args.preview,
    }

    scanner = LiveScanner(**config)
    outcome = scanner.run()
    if outcome is None:
        return 1

    print(json.dumps(outcome_to_dict(outcome), indent=2))

    if outcome.result is not None:
        validation = scanner.pipeline.validate(outcome.result.fields, outcome.result.document_type)
        print(json.dumps({"validation": validation.to_dict()}, indent=2))

    return 0 if outcome.status == OutcomeStatus.SUCCESS else 1


if __name__ == "__main__":
    sys.exit(main())
