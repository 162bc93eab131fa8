"""
Text recognition backends.

The extraction engine treats OCR as a black box: an image goes in, raw text
and a confidence number in [0, 1] come out. Any engine can be plugged in by
implementing RecognitionBackend.

Surya OCR Modules Used:
-----------------------
- surya.foundation.FoundationPredictor: shared model backbone
- surya.detection.DetectionPredictor: finds text line bounding boxes
- surya.recognition.RecognitionPredictor: reads the text inside each box
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from PIL import Image

from errors import RecognitionError

logger = logging.getLogger(__name__)

try:
    from surya.foundation import FoundationPredictor
    from surya.recognition import RecognitionPredictor
    from surya.detection import DetectionPredictor
    SURYA_AVAILABLE = True
except ImportError as e:
    logger.warning(f"Surya OCR not available: {e}")
    SURYA_AVAILABLE = False


@dataclass(frozen=True)
class RecognitionOutput:
    text: str
    confidence: float


class RecognitionBackend(ABC):
    """Port: external OCR engine"""

    @abstractmethod
    def recognize(self, image: np.ndarray) -> RecognitionOutput:
        """
        Read the text in an image.

        Args:
            image: uint8 array, (H, W) grayscale or (H, W, 3) RGB.

        Returns:
            RecognitionOutput with the raw text and the engine's confidence.
        """
        ...

    def is_available(self) -> bool:
        return True


def to_pil_image(image: np.ndarray) -> Image.Image:
    """Convert a grayscale / RGB / RGBA uint8 array into an RGB PIL image."""
    array = np.asarray(image)
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    return Image.fromarray(array).convert("RGB")


class SuryaRecognitionBackend(RecognitionBackend):
    """Surya OCR: detection + recognition over the whole captured image"""

    def __init__(self):
        self.foundation_predictor = None
        self.recognition_predictor = None
        self.detection_predictor = None
        if not SURYA_AVAILABLE:
            return
        try:
            logger.info("Initializing Surya OCR models...")
            self.foundation_predictor = FoundationPredictor()
            self.recognition_predictor = RecognitionPredictor(self.foundation_predictor)
            self.detection_predictor = DetectionPredictor()
            logger.info("Surya OCR models initialized successfully.")
        except Exception as e:
            logger.error(f"Failed to initialize Surya OCR: {e}")
            self.recognition_predictor = None
            self.detection_predictor = None

    def is_available(self) -> bool:
        return self.recognition_predictor is not None and self.detection_predictor is not None

    def recognize(self, image: np.ndarray) -> RecognitionOutput:
        if not self.is_available():
            raise RecognitionError("Surya OCR is not available")

        predictions = self.recognition_predictor(
            [to_pil_image(image)],
            det_predictor=self.detection_predictor
        )
        lines = predictions[0].text_lines if predictions else []

        # One line per detected text box keeps line-anchored patterns working
        text = "\n".join(line.text for line in lines if line.text)
        confidences = [float(getattr(line, "confidence", 0.0) or 0.0) for line in lines]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        logger.info(f"OCR extracted {len(lines)} text lines with avg confidence {confidence:.2f}")
        return RecognitionOutput(text=text, confidence=confidence)
