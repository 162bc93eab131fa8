import numpy as np
import pytest

from conftest import document_frame, gray_frame
from errors import AnalysisError
from frame_analyzer import (
    FrameAnalyzer,
    analyze,
    calculate_brightness,
    calculate_contrast,
    calculate_quality,
    calculate_sharpness,
    detect_document_bounds,
    is_document_centered,
    positioning_hint,
    to_luma,
)
from models import EMPTY_BOX, AnalysisResult, BoundingBox, Frame
from settings import LENIENT_ANALYSIS, STRICT_ANALYSIS


def test_centered_document_is_detected_and_positioned():
    result = analyze(Frame(document_frame(), timestamp=12.5))

    assert result.has_document
    assert result.is_positioned
    assert result.quality >= 0.5
    assert result.timestamp == 12.5

    box = result.bounding_box
    center_x, center_y = box.center
    assert abs(center_x - 640) / 1280 <= LENIENT_ANALYSIS.position_tolerance
    assert abs(center_y - 360) / 720 <= LENIENT_ANALYSIS.position_tolerance
    assert box.area > 0


def test_uniform_gray_frame_has_no_document():
    result = analyze(Frame(gray_frame()))

    assert not result.has_document
    assert not result.is_positioned
    assert result.bounding_box == EMPTY_BOX
    assert result.contrast == 0.0
    assert result.sharpness == 0.0
    # Only the brightness component is left: 0.2 * (1 - 2 * |128/255 - 0.5|)
    expected = 0.2 * (1 - 2 * abs(128 / 255 - 0.5))
    assert result.quality == pytest.approx(expected)


def test_analyze_is_pure():
    frame = Frame(document_frame())
    assert analyze(frame) == analyze(frame)


def test_frame_data_is_read_only():
    frame = Frame(document_frame())
    with pytest.raises(ValueError):
        frame.data[0, 0, 0] = 1


@pytest.mark.parametrize("image", [
    document_frame(),
    gray_frame(),
    gray_frame(value=0),
    gray_frame(value=255),
    np.random.default_rng(7).integers(0, 256, size=(240, 320, 3), dtype=np.uint8),
    np.random.default_rng(8).integers(0, 256, size=(120, 160, 4), dtype=np.uint8),
])
def test_metrics_stay_in_range(image):
    result = analyze(Frame(image))

    for value in (result.quality, result.sharpness, result.contrast, result.brightness):
        assert 0.0 <= value <= 1.0
    if not result.has_document:
        assert result.bounding_box.area == 0


def test_grayscale_and_rgba_frames_match_rgb():
    rgb = document_frame(320, 240)
    rgba = np.dstack([rgb, np.full(rgb.shape[:2], 255, dtype=np.uint8)])
    luma = rgb[..., 0]

    assert analyze(Frame(rgba)) == analyze(Frame(rgb))
    assert analyze(Frame(luma)) == analyze(Frame(rgb))


@pytest.mark.parametrize("data", [
    np.zeros((0, 0, 3), dtype=np.uint8),
    np.zeros((2, 2, 3), dtype=np.uint8),
    np.zeros((10,), dtype=np.uint8),
    np.zeros((10, 10, 2), dtype=np.uint8),
])
def test_malformed_frames_raise_analysis_error(data):
    with pytest.raises(AnalysisError):
        analyze(Frame(data))


def test_to_luma_weights():
    pixel = np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255]]], dtype=np.uint8)
    assert to_luma(pixel).tolist() == [[76, 150, 29]]


def test_contrast_brightness_and_sharpness_of_flat_image():
    gray = np.full((20, 20), 51, dtype=np.uint8)
    assert calculate_contrast(gray) == 0.0
    assert calculate_brightness(gray) == pytest.approx(0.2)
    assert calculate_sharpness(gray) == 0.0


def test_sharpness_saturates_on_checkerboard():
    gray = (np.indices((40, 40)).sum(axis=0) % 2 * 255).astype(np.uint8)
    assert calculate_sharpness(gray) == 1.0


def test_quality_is_clamped_and_weighted():
    assert calculate_quality(1.0, 1.0, 0.5, LENIENT_ANALYSIS) == pytest.approx(1.0)
    assert calculate_quality(0.0, 0.0, 0.0, LENIENT_ANALYSIS) == 0.0
    # Half of min_contrast and min_sharpness, brightness at the optimum
    half = calculate_quality(0.075, 0.15, 0.5, LENIENT_ANALYSIS)
    assert half == pytest.approx(0.5 * 0.4 + 0.5 * 0.4 + 0.2)


def test_fallback_region_used_without_textured_blocks():
    # Smooth horizontal gradient: no edges, but enough contrast in the center
    ramp = np.tile(np.linspace(0, 255, 640), (480, 1)).astype(np.uint8)
    bounds = detect_document_bounds(ramp, LENIENT_ANALYSIS)

    assert bounds is not None
    assert bounds.width == pytest.approx(350)
    assert bounds.height == pytest.approx(220)
    assert bounds.center == pytest.approx((320, 240))


def test_strict_settings_detect_document_at_default_resolution():
    result = analyze(Frame(document_frame(1280, 720)), STRICT_ANALYSIS)

    assert result.has_document
    assert result.is_positioned
    # Uncapped candidates scale with the frame: 60% x 40%
    assert result.bounding_box.width == pytest.approx(768)
    assert result.bounding_box.height == pytest.approx(288)
    assert result.bounding_box.center == pytest.approx((640, 360))


def test_strict_size_bound_rejects_capped_rectangles():
    # Textured patch in the center; 128x72 rectangles are 10% of the frame
    image = gray_frame(1280, 720, value=40)
    rows = np.arange(324, 396)
    image[324:396, 576:704] = np.where((rows // 4) % 2 == 0, 255, 0).astype(np.uint8)[:, None, None]

    assert analyze(Frame(image), LENIENT_ANALYSIS).has_document
    assert analyze(Frame(image), STRICT_ANALYSIS.with_overrides(candidate_max_width=128,
                                                                candidate_max_height=72)).has_document is False


def test_off_center_box_is_not_positioned():
    box = BoundingBox(0, 0, 300, 200)
    assert not is_document_centered(box, 1280, 720, LENIENT_ANALYSIS)
    assert is_document_centered(BoundingBox(490, 260, 300, 200), 1280, 720, LENIENT_ANALYSIS)


def _result(has_document, is_positioned, quality):
    box = BoundingBox(0, 0, 10, 10) if has_document else EMPTY_BOX
    return AnalysisResult(has_document, is_positioned, quality, box, 0.5, 0.5, 0.5)


@pytest.mark.parametrize("result, hint", [
    (_result(False, False, 0.9), "Position your ID document in front of the camera"),
    (_result(True, False, 0.9), "Document detected! Center it in the frame"),
    (_result(True, True, 0.2), "Document detected but quality is low. Hold steady and ensure good lighting"),
    (_result(True, True, 0.9), "Perfect! Document is ready for scanning"),
])
def test_positioning_hint(result, hint):
    assert positioning_hint(result, 0.5) == hint


def test_frame_analyzer_uses_its_settings():
    analyzer = FrameAnalyzer(STRICT_ANALYSIS)
    result = _result(True, True, 0.6)

    assert analyzer.settings is STRICT_ANALYSIS
    assert analyzer.analyze(Frame(document_frame())).has_document
    assert analyzer.hint(result) == "Document detected but quality is low. Hold steady and ensure good lighting"
    assert FrameAnalyzer().hint(result) == "Perfect! Document is ready for scanning"
