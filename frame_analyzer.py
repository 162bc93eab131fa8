"""
Frame Analyzer

Turns a raw video frame into document presence / position / quality metrics
using classical heuristics:
1. Luma conversion (0.299R + 0.587G + 0.114B)
2. Contrast, brightness and Laplacian sharpness
3. Sobel edge map and grid-based edge density to find document candidates
4. Fallback to a centered region when no candidate block is found
5. Weighted quality blend used to gate auto-capture

The analysis is a pure function of (frame, settings) and is safe to call from
any thread.
"""

import logging
import math
from typing import List, Optional

import cv2
import numpy as np

from errors import AnalysisError
from models import EMPTY_BOX, AnalysisResult, BoundingBox, Frame
from settings import (
    CANDIDATE_HEIGHT_RATIO,
    CANDIDATE_WIDTH_RATIO,
    FALLBACK_HEIGHT_RATIO,
    FALLBACK_WIDTH_RATIO,
    LENIENT_ANALYSIS,
    AnalysisSettings,
)

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def to_luma(data: np.ndarray) -> np.ndarray:
    """Convert an RGBA / RGB / luma buffer into a uint8 luma plane."""
    if data.ndim == 2:
        gray = data.astype(np.float64)
    elif data.ndim == 3 and data.shape[2] in (3, 4):
        gray = data[..., :3].astype(np.float64) @ LUMA_WEIGHTS
    else:
        raise AnalysisError(f"Unsupported frame shape {data.shape}")
    return np.clip(np.rint(gray), 0, 255).astype(np.uint8)


def calculate_contrast(gray: np.ndarray) -> float:
    """Standard deviation of luma normalized to 0-1."""
    return float(min(np.std(gray, dtype=np.float64) / 128.0, 1.0))


def calculate_brightness(gray: np.ndarray) -> float:
    return float(np.mean(gray, dtype=np.float64) / 255.0)


def calculate_sharpness(gray: np.ndarray) -> float:
    """
    Mean squared response of the 4-neighbour Laplacian over interior pixels,
    normalized to 0-1 (saturates at 10000).
    """
    laplacian = cv2.Laplacian(gray.astype(np.float64), cv2.CV_64F, ksize=1)
    interior = laplacian[1:-1, 1:-1]
    variance = float(np.mean(interior * interior))
    return min(variance / 10000.0, 1.0)


def detect_edges(gray: np.ndarray) -> np.ndarray:
    """Sobel gradient magnitude, clamped to 0-255; border pixels are zero."""
    src = gray.astype(np.float64)
    sobel_x = cv2.Sobel(src, cv2.CV_64F, 1, 0, ksize=3)
    sobel_y = cv2.Sobel(src, cv2.CV_64F, 0, 1, ksize=3)
    magnitude = np.sqrt(sobel_x * sobel_x + sobel_y * sobel_y)

    edges = np.zeros(gray.shape, dtype=np.uint8)
    edges[1:-1, 1:-1] = np.clip(np.rint(magnitude[1:-1, 1:-1]), 0, 255)
    return edges


def _capped(size: float, cap: Optional[float]) -> float:
    return size if cap is None else min(size, cap)


def find_candidate_regions(edges: np.ndarray, settings: AnalysisSettings) -> List[BoundingBox]:
    """
    Grid search for blocks whose edge density looks like printed text.

    Blocks overlap by 50%; each block is sampled every second pixel. A
    document-sized rectangle is anchored at the center of every block whose
    density falls strictly inside the configured band.
    """
    height, width = edges.shape
    block = settings.block_size
    half = block // 2
    mask = edges > settings.edge_threshold

    doc_width = _capped(width * CANDIDATE_WIDTH_RATIO, settings.candidate_max_width)
    doc_height = _capped(height * CANDIDATE_HEIGHT_RATIO, settings.candidate_max_height)

    candidates = []
    for y in range(block, height - block, half):
        for x in range(block, width - block, half):
            sample = mask[y - half:y + half:2, x - half:x + half:2]
            if sample.size == 0:
                continue
            density = float(sample.mean())
            if settings.min_edge_density < density < settings.max_edge_density:
                candidates.append(BoundingBox(x - doc_width / 2, y - doc_height / 2, doc_width, doc_height))
    return candidates


def region_contrast(gray: np.ndarray, box: BoundingBox) -> float:
    """Contrast of a sub-region, sampled every second pixel."""
    height, width = gray.shape
    start_x = max(0, math.floor(box.x))
    end_x = min(width, math.floor(box.x + box.width))
    start_y = max(0, math.floor(box.y))
    end_y = min(height, math.floor(box.y + box.height))

    region = gray[start_y:end_y:2, start_x:end_x:2]
    if region.size == 0:
        return 0.0
    return calculate_contrast(region)


def is_valid_document_size(box: BoundingBox, frame_width: int, frame_height: int,
                           settings: AnalysisSettings) -> bool:
    width_ratio = box.width / frame_width
    height_ratio = box.height / frame_height
    return (settings.min_document_size <= width_ratio <= settings.max_document_size and
            settings.min_document_size <= height_ratio <= settings.max_document_size)


def is_document_centered(box: BoundingBox, frame_width: int, frame_height: int,
                         settings: AnalysisSettings) -> bool:
    center_x, center_y = box.center
    x_offset = abs(center_x - frame_width / 2) / frame_width
    y_offset = abs(center_y - frame_height / 2) / frame_height
    return x_offset <= settings.position_tolerance and y_offset <= settings.position_tolerance


def score_candidate(box: BoundingBox, frame_width: int, frame_height: int) -> float:
    """0.7 * size score + 0.3 * position score"""
    size_score = min(box.area / (frame_width * frame_height * 0.3), 1.0)
    center_x, center_y = box.center
    center_distance = abs(center_x - frame_width / 2) + abs(center_y - frame_height / 2)
    position_score = max(0.0, 1.0 - center_distance / (frame_width + frame_height))
    return size_score * 0.7 + position_score * 0.3


def detect_document_bounds(gray: np.ndarray, settings: AnalysisSettings) -> Optional[BoundingBox]:
    """Return the best-scoring valid document rectangle, or None."""
    height, width = gray.shape
    candidates = find_candidate_regions(detect_edges(gray), settings)

    if not candidates:
        # No textured block: test a single centered rectangle instead
        doc_width = _capped(width * FALLBACK_WIDTH_RATIO, settings.fallback_max_width)
        doc_height = _capped(height * FALLBACK_HEIGHT_RATIO, settings.fallback_max_height)
        fallback = BoundingBox(width / 2 - doc_width / 2, height / 2 - doc_height / 2, doc_width, doc_height)
        if region_contrast(gray, fallback) > settings.fallback_min_contrast:
            candidates = [fallback]

    best_box = None
    best_score = 0.0
    for box in candidates:
        score = score_candidate(box, width, height)
        if score > best_score and is_valid_document_size(box, width, height, settings):
            best_score = score
            best_box = box
    return best_box


def calculate_quality(contrast: float, sharpness: float, brightness: float,
                      settings: AnalysisSettings) -> float:
    """Weighted blend of contrast, sharpness and brightness, clamped to 0-1."""
    contrast_score = min(contrast / settings.min_contrast, 1.0)
    sharpness_score = min(sharpness / settings.min_sharpness, 1.0)
    # Optimal brightness is middle gray
    brightness_score = 1.0 - abs(brightness - 0.5) * 2
    quality = contrast_score * 0.4 + sharpness_score * 0.4 + brightness_score * 0.2
    return float(min(max(quality, 0.0), 1.0))


def analyze(frame: Frame, settings: AnalysisSettings = LENIENT_ANALYSIS) -> AnalysisResult:
    """
    Analyze a single frame for document presence, positioning and quality.

    Raises:
        AnalysisError: if the frame is empty or not an image-shaped buffer.
    """
    data = frame.data
    if data.ndim not in (2, 3) or data.size == 0:
        raise AnalysisError(f"Malformed frame buffer with shape {data.shape}")
    height, width = data.shape[:2]
    if width < 3 or height < 3:
        raise AnalysisError(f"Frame too small to analyze ({width}x{height})")

    gray = to_luma(data)

    contrast = calculate_contrast(gray)
    brightness = calculate_brightness(gray)
    sharpness = calculate_sharpness(gray)

    bounds = detect_document_bounds(gray, settings)
    has_document = bounds is not None
    is_positioned = has_document and is_document_centered(bounds, width, height, settings)
    quality = calculate_quality(contrast, sharpness, brightness, settings)

    return AnalysisResult(
        has_document=has_document,
        is_positioned=is_positioned,
        quality=quality,
        bounding_box=bounds if has_document else EMPTY_BOX,
        sharpness=sharpness,
        contrast=contrast,
        brightness=brightness,
        timestamp=frame.timestamp,
    )


def positioning_hint(result: AnalysisResult, quality_threshold: float) -> str:
    """User-facing guidance text for the current analysis."""
    if not result.has_document:
        return "Position your ID document in front of the camera"
    if not result.is_positioned:
        return "Document detected! Center it in the frame"
    if result.quality < quality_threshold:
        return "Document detected but quality is low. Hold steady and ensure good lighting"
    return "Perfect! Document is ready for scanning"


class FrameAnalyzer:
    """Holds a settings object and analyzes frames against it"""

    def __init__(self, settings: Optional[AnalysisSettings] = None):
        self.settings = settings or LENIENT_ANALYSIS

    def analyze(self, frame: Frame) -> AnalysisResult:
        result = analyze(frame, self.settings)
        logger.debug(
            f"Analysis: document={result.has_document} positioned={result.is_positioned} "
            f"quality={result.quality:.2f} sharpness={result.sharpness:.2f} "
            f"contrast={result.contrast:.2f} brightness={result.brightness:.2f}"
        )
        return result

    def hint(self, result: AnalysisResult) -> str:
        return positioning_hint(result, self.settings.quality_threshold)
