"""
Value types shared by the frame analyzer, scan controller and extraction engine.

Everything handed between execution contexts is a frozen dataclass so that a
result can be passed to another thread without a second owner mutating it.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import numpy as np


class DocumentType(Enum):
    """Document classification driving which field schema is applied"""
    DRIVERS_LICENSE = "drivers_license"
    PASSPORT = "passport"
    NATIONAL_ID = "national_id"


class ScanState(Enum):
    """States for the scan controller state machine"""
    IDLE = "idle"                 # No session
    SAMPLING = "sampling"         # Analysing frames, document not ready yet
    POSITIONED = "positioned"     # Document centered and quality above threshold
    CAPTURING = "capturing"       # One capture + extraction in flight
    RETRYING = "retrying"         # Last attempt failed, cooldown running
    SUCCESS = "success"           # Extraction accepted
    FAILED = "failed"             # Attempts exhausted
    TIMED_OUT = "timed_out"       # Auto-entry timeout elapsed

    @property
    def is_terminal(self) -> bool:
        return self in (ScanState.SUCCESS, ScanState.FAILED, ScanState.TIMED_OUT)


class OutcomeStatus(Enum):
    """Terminal signal delivered exactly once per session"""
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


class FailureKind(Enum):
    LOW_CONFIDENCE = "low_confidence"
    CAPTURE_ERROR = "capture_error"
    RECOGNITION_ERROR = "recognition_error"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    TIMED_OUT = "timed_out"
    PERMISSION_REVOKED = "permission_revoked"


@dataclass(frozen=True)
class Frame:
    """
    Immutable pixel buffer from the video source.

    ``data`` is a row-major array: (H, W, 4) RGBA, (H, W, 3) RGB or (H, W) luma.
    The stored array is a read-only view, so the analyzer can never mutate it.
    """
    data: np.ndarray
    timestamp: float = 0.0

    def __post_init__(self):
        view = np.asarray(self.data).view()
        view.flags.writeable = False
        object.__setattr__(self, "data", view)

    @property
    def width(self) -> int:
        return int(self.data.shape[1]) if self.data.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.data.shape[0]) if self.data.ndim >= 2 else 0


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle estimating where a document lies in a frame"""
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self):
        return (self.x + self.width / 2, self.y + self.height / 2)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


EMPTY_BOX = BoundingBox()


@dataclass(frozen=True)
class AnalysisResult:
    has_document: bool
    is_positioned: bool
    quality: float
    bounding_box: BoundingBox
    sharpness: float
    contrast: float
    brightness: float
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_document": self.has_document,
            "is_positioned": self.is_positioned,
            "quality": self.quality,
            "bounding_box": self.bounding_box.to_dict(),
            "sharpness": self.sharpness,
            "contrast": self.contrast,
            "brightness": self.brightness,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ExtractionResult:
    raw_text: str
    document_type: DocumentType
    fields: Mapping[str, str]
    confidence: float

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_text": self.raw_text,
            "document_type": self.document_type.value,
            "fields": dict(self.fields),
            "confidence": self.confidence,
        }


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": dict(self.errors), "warnings": dict(self.warnings)}


@dataclass(frozen=True)
class ScanFailure:
    kind: FailureKind
    message: str = ""


@dataclass(frozen=True)
class ScanAttempt:
    """Outcome of a single capture attempt, published as SCAN_COMPLETE"""
    session_id: int
    attempt: int
    manual: bool = False
    result: Optional[ExtractionResult] = None
    failure: Optional[ScanFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None and self.result is not None


@dataclass(frozen=True)
class ScanOutcome:
    """The single terminal signal of a session"""
    session_id: int
    status: OutcomeStatus
    attempts: int
    result: Optional[ExtractionResult] = None
    failure: Optional[ScanFailure] = None
    elapsed: float = 0.0
