"""
Tunable settings for frame analysis, scan control and OCR preprocessing.

Defaults reproduce the lenient thresholds used for low-end / noisy cameras.
Every value is validated once, when the settings object is built.
"""

from dataclasses import dataclass, replace
from typing import Optional

from errors import ConfigurationError

# Candidate rectangle anchored at each dense block, as a fraction of the frame
CANDIDATE_WIDTH_RATIO = 0.6
CANDIDATE_HEIGHT_RATIO = 0.4
FALLBACK_WIDTH_RATIO = 0.7
FALLBACK_HEIGHT_RATIO = 0.5


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


@dataclass(frozen=True)
class AnalysisSettings:
    """Thresholds for the frame analyzer"""
    min_document_size: float = 0.15     # fraction of frame width/height
    max_document_size: float = 0.95
    min_contrast: float = 0.15
    min_sharpness: float = 0.3
    position_tolerance: float = 0.2     # fractional offset from frame center
    quality_threshold: float = 0.5      # minimum quality for auto-scan
    edge_threshold: float = 30
    block_size: int = 40
    min_edge_density: float = 0.15
    max_edge_density: float = 0.8
    # Pixel caps on the candidate and fallback rectangles; None scales with the frame
    candidate_max_width: Optional[float] = 300
    candidate_max_height: Optional[float] = 200
    fallback_max_width: Optional[float] = 350
    fallback_max_height: Optional[float] = 220
    fallback_min_contrast: float = 0.2

    def __post_init__(self):
        _require(0 < self.min_document_size <= self.max_document_size <= 1,
                 f"Document size bounds must satisfy 0 < min <= max <= 1 "
                 f"(got {self.min_document_size}, {self.max_document_size})")
        _require(self.min_contrast > 0, f"min_contrast must be positive (got {self.min_contrast})")
        _require(self.min_sharpness > 0, f"min_sharpness must be positive (got {self.min_sharpness})")
        _require(0 <= self.position_tolerance <= 0.5,
                 f"position_tolerance must be within [0, 0.5] (got {self.position_tolerance})")
        _require(0 <= self.quality_threshold <= 1,
                 f"quality_threshold must be within [0, 1] (got {self.quality_threshold})")
        _require(0 <= self.edge_threshold <= 255,
                 f"edge_threshold must be within [0, 255] (got {self.edge_threshold})")
        _require(isinstance(self.block_size, int) and self.block_size >= 4 and self.block_size % 2 == 0,
                 f"block_size must be an even integer >= 4 (got {self.block_size})")
        _require(0 <= self.min_edge_density < self.max_edge_density <= 1,
                 f"Edge density band must satisfy 0 <= min < max <= 1 "
                 f"(got {self.min_edge_density}, {self.max_edge_density})")
        caps = (self.candidate_max_width, self.candidate_max_height,
                self.fallback_max_width, self.fallback_max_height)
        _require(all(cap is None or cap > 0 for cap in caps),
                 "Candidate and fallback rectangle caps must be positive or None")

    def max_document_ratio(self, frame_width: int, frame_height: int) -> float:
        """Largest width or height ratio a candidate rectangle can reach on this frame size"""
        def ratio(fraction, cap, size):
            return fraction if cap is None else min(fraction, cap / size)

        return max(
            min(ratio(CANDIDATE_WIDTH_RATIO, self.candidate_max_width, frame_width),
                ratio(CANDIDATE_HEIGHT_RATIO, self.candidate_max_height, frame_height)),
            min(ratio(FALLBACK_WIDTH_RATIO, self.fallback_max_width, frame_width),
                ratio(FALLBACK_HEIGHT_RATIO, self.fallback_max_height, frame_height)),
        )

    def check_frame_size(self, frame_width: int, frame_height: int) -> None:
        """Raise ConfigurationError if no rectangle on this frame size can pass the size check"""
        reachable = self.max_document_ratio(frame_width, frame_height)
        _require(reachable >= self.min_document_size,
                 f"min_document_size {self.min_document_size} is unreachable at "
                 f"{frame_width}x{frame_height}: rectangle caps allow at most {reachable:.3f}")

    def with_overrides(self, **overrides) -> "AnalysisSettings":
        return replace(self, **overrides)


@dataclass(frozen=True)
class ScanSettings:
    """Timing and retry policy for the scan controller (seconds)"""
    analysis_interval: float = 0.1
    cooldown: float = 2.0
    max_attempts: int = 3
    success_threshold: float = 0.3
    auto_entry_timeout: float = 60.0

    def __post_init__(self):
        _require(self.analysis_interval > 0,
                 f"analysis_interval must be positive (got {self.analysis_interval})")
        _require(self.cooldown >= 0, f"cooldown must not be negative (got {self.cooldown})")
        _require(isinstance(self.max_attempts, int) and self.max_attempts >= 1,
                 f"max_attempts must be a positive integer (got {self.max_attempts})")
        _require(0 <= self.success_threshold <= 1,
                 f"success_threshold must be within [0, 1] (got {self.success_threshold})")
        _require(self.auto_entry_timeout > 0,
                 f"auto_entry_timeout must be positive (got {self.auto_entry_timeout})")

    def with_overrides(self, **overrides) -> "ScanSettings":
        return replace(self, **overrides)


@dataclass(frozen=True)
class PreprocessingOptions:
    """OCR preprocessing steps; each one can be switched off independently"""
    normalize: bool = True
    denoise: bool = True
    deskew: bool = True
    contrast: float = 1.2       # multiplicative gain, 1.0 = unchanged
    brightness: float = 0.1     # additive offset as a fraction of 255, 0.0 = unchanged
    grayscale: bool = True

    def __post_init__(self):
        _require(self.contrast > 0, f"contrast gain must be positive (got {self.contrast})")
        _require(-1 <= self.brightness <= 1,
                 f"brightness offset must be within [-1, 1] (got {self.brightness})")


# Two generations of thresholds exist for detection and for accepting a scan.
# Both are exposed; callers pick one.
LENIENT_ANALYSIS = AnalysisSettings()
STRICT_ANALYSIS = AnalysisSettings(
    min_document_size=0.3,
    min_contrast=0.3,
    min_sharpness=0.5,
    position_tolerance=0.1,
    quality_threshold=0.7,
    candidate_max_width=None,
    candidate_max_height=None,
    fallback_max_width=None,
    fallback_max_height=None,
)

LENIENT_SCAN = ScanSettings()
STRICT_SCAN = ScanSettings(success_threshold=0.7)

PRESETS = {
    "lenient": (LENIENT_ANALYSIS, LENIENT_SCAN),
    "strict": (STRICT_ANALYSIS, STRICT_SCAN),
}
