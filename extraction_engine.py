"""
Extraction Engine

Turns a captured document image into an ExtractionResult:
1. Preprocessing (normalize, denoise, deskew, contrast/brightness, grayscale)
2. Recognition through an external OCR backend
3. Document type classification from keywords in the raw text
4. Field extraction with the document type's FieldSchema
5. Combined confidence score

Recognition is slow, so callers run extract() off the frame sampling thread.
A CancellationToken is checked between the stages so a stopped session never
receives a stale result.
"""

import io
import logging
import math
import re
import threading
from typing import Callable, Dict, Mapping, Optional, Union

import cv2
import numpy as np
from PIL import Image

from errors import ExtractionCancelled, ExtractionError, RecognitionError
from field_schemas import DATE_FIELDS, KEY_FIELDS, FieldSchema, get_schema, parse_document_type
from models import DocumentType, ExtractionResult, ValidationResult
from recognition import RecognitionBackend
from settings import PreprocessingOptions

logger = logging.getLogger(__name__)

CapturedImage = Union[np.ndarray, Image.Image, bytes]
ProgressCallback = Callable[[float], None]

# Checked in order; the first type with a matching keyword wins
DOCUMENT_KEYWORDS = (
    (DocumentType.DRIVERS_LICENSE, ("driver", "license", "dmv")),
    (DocumentType.PASSPORT, ("passport", "passport no", "nationality", "issuing")),
    (DocumentType.NATIONAL_ID, ("national id", "citizen id", "ssn", "social security")),
)

KEY_FIELD_BONUS = 0.1
DATE_PATTERN = r"^\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}$"
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

# Skew corrections outside this window are treated as detection noise
MIN_DESKEW_ANGLE = 0.5
MAX_DESKEW_ANGLE = 15.0


class CancellationToken:
    """Cooperative cancellation flag shared between a session and its worker"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ExtractionCancelled(f"Extraction cancelled {stage}")


def load_image(image: CapturedImage) -> np.ndarray:
    """Convert a captured image (array, PIL image or encoded bytes) into a uint8 array."""
    if isinstance(image, (bytes, bytearray)):
        try:
            image = Image.open(io.BytesIO(image))
        except Exception as e:
            raise ExtractionError(f"Could not decode captured image: {e}") from e
    if isinstance(image, Image.Image):
        image = np.array(image.convert("RGB"))
    if not isinstance(image, np.ndarray):
        raise ExtractionError(f"Unsupported image type {type(image).__name__}")

    if image.size == 0 or image.ndim not in (2, 3):
        raise ExtractionError(f"Captured image is empty or malformed (shape {image.shape})")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image


def deskew_image(img_array: np.ndarray) -> np.ndarray:
    """
    Rotate the image so the dominant text block is horizontal.

    The skew angle is taken from the minimum-area rectangle around the dark
    (text) pixels found by Otsu thresholding.
    """
    gray = img_array if img_array.ndim == 2 else cv2.cvtColor(img_array, cv2.COLOR_RGB2GRAY)
    _, text_mask = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
    ys, xs = np.nonzero(text_mask)
    if len(xs) < 50:
        return img_array

    points = np.column_stack((xs, ys)).astype(np.float32)
    angle = cv2.minAreaRect(points)[-1]
    if angle > 45:
        angle -= 90
    elif angle < -45:
        angle += 90

    if abs(angle) < MIN_DESKEW_ANGLE or abs(angle) > MAX_DESKEW_ANGLE:
        return img_array

    h, w = gray.shape
    matrix = cv2.getRotationMatrix2D((w / 2, h / 2), angle, 1.0)
    logger.debug(f"Deskewing image by {angle:.2f} degrees")
    return cv2.warpAffine(img_array, matrix, (w, h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE)


def preprocess_image(img_array: np.ndarray, options: PreprocessingOptions) -> np.ndarray:
    """Apply the enabled preprocessing steps; disabled steps are skipped."""
    if img_array.ndim == 3 and img_array.shape[2] == 4:
        img_array = cv2.cvtColor(img_array, cv2.COLOR_RGBA2RGB)

    if options.normalize:
        img_array = cv2.normalize(img_array, None, 0, 255, cv2.NORM_MINMAX)

    if options.denoise:
        img_array = cv2.GaussianBlur(img_array, (3, 3), 0)

    if options.deskew:
        img_array = deskew_image(img_array)

    if options.contrast != 1 or options.brightness != 0:
        img_array = cv2.convertScaleAbs(img_array, alpha=options.contrast, beta=options.brightness * 255)

    if options.grayscale and img_array.ndim == 3:
        img_array = cv2.cvtColor(img_array, cv2.COLOR_RGB2GRAY)

    return img_array


def detect_document_type(text: str) -> DocumentType:
    lower_text = text.lower()
    for document_type, keywords in DOCUMENT_KEYWORDS:
        if any(keyword in lower_text for keyword in keywords):
            return document_type
    return DocumentType.DRIVERS_LICENSE


def clean_field_value(value: str) -> str:
    """Trim, collapse whitespace and drop stray separators at the ends."""
    return " ".join(value.split()).strip(" ,;:")


def extract_fields(text: str, document_type: Union[DocumentType, str]) -> Dict[str, str]:
    """
    Run every pattern of the document type's schema against the text.

    When neither firstName nor lastName matched but a full name line did, the
    first token becomes firstName and the rest lastName.
    """
    if not text:
        return {}

    schema = get_schema(document_type)
    fields = {}
    for spec in schema.fields:
        match = spec.pattern.search(text)
        if match and match.group(1):
            value = clean_field_value(match.group(1))
            if value:
                fields[spec.name] = value

    if not fields.get("firstName") and not fields.get("lastName") and fields.get("fullName"):
        name_parts = fields["fullName"].replace(",", " ").split()
        if len(name_parts) >= 2:
            fields["firstName"] = name_parts[0]
            fields["lastName"] = " ".join(name_parts[1:])

    return fields


def calculate_confidence(backend_confidence: float, fields: Mapping[str, str], schema: FieldSchema) -> float:
    """
    Backend confidence averaged with the schema extraction rate, plus a bonus
    for each key field found, clamped to 0-1.
    """
    confidence = float(backend_confidence)
    if not math.isfinite(confidence):
        confidence = 0.0

    total = len(schema)
    if total > 0:
        extracted = sum(1 for name in schema.field_names if fields.get(name))
        confidence = (confidence + extracted / total) / 2

    key_fields_found = sum(1 for name in KEY_FIELDS if fields.get(name))
    confidence += KEY_FIELD_BONUS * key_fields_found

    return min(max(confidence, 0.0), 1.0)


def validate_fields(fields: Mapping[str, str], document_type: Union[DocumentType, str]) -> ValidationResult:
    """
    Check required fields and date formats for a document type.

    Missing required fields are errors; badly shaped dates or emails are
    warnings only.
    """
    schema = get_schema(parse_document_type(document_type))
    validation = ValidationResult()

    for name in schema.required_fields:
        value = fields.get(name)
        if not value or not str(value).strip():
            validation.is_valid = False
            validation.errors[name] = f"{name} is required"

    for name in DATE_FIELDS:
        value = fields.get(name)
        if value and not re.match(DATE_PATTERN, str(value).strip()):
            validation.warnings[name] = f"{name} format may be incorrect"

    email = fields.get("email")
    if email and not re.match(EMAIL_PATTERN, str(email).strip()):
        validation.warnings["email"] = "Email format may be incorrect"

    return validation


class ExtractionEngine:
    """Runs preprocessing, recognition, classification and field extraction"""

    def __init__(self, backend: RecognitionBackend, options: Optional[PreprocessingOptions] = None):
        self.backend = backend
        self.options = options or PreprocessingOptions()

    def extract(
        self,
        image: CapturedImage,
        options: Optional[PreprocessingOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> ExtractionResult:
        """
        Extract structured fields from a captured document image.

        Raises:
            ExtractionError: the image could not be decoded or preprocessed.
            RecognitionError: the backend failed or returned no text.
            ExtractionCancelled: the token was cancelled between stages.
        """
        options = options or self.options
        token = cancel_token or CancellationToken()
        progress = on_progress or (lambda value: None)

        progress(0.0)
        img_array = load_image(image)
        try:
            processed = preprocess_image(img_array, options)
        except cv2.error as e:
            raise ExtractionError(f"Image preprocessing failed: {e}") from e
        progress(0.3)

        token.raise_if_cancelled("before recognition")
        try:
            output = self.backend.recognize(processed)
        except RecognitionError:
            raise
        except Exception as e:
            raise RecognitionError(f"Recognition backend failed: {e}") from e

        if output is None or not output.text or not output.text.strip():
            raise RecognitionError("OCR failed to extract text from image")
        progress(0.7)

        token.raise_if_cancelled("before field extraction")
        document_type = detect_document_type(output.text)
        schema = get_schema(document_type)
        fields = extract_fields(output.text, document_type)
        progress(0.9)

        confidence = calculate_confidence(output.confidence, fields, schema)
        result = ExtractionResult(
            raw_text=output.text,
            document_type=document_type,
            fields=fields,
            confidence=confidence,
        )
        progress(1.0)

        logger.info(
            f"Extraction completed: type={document_type.value} fields={len(fields)}/{len(schema)} "
            f"confidence={confidence:.2f}"
        )
        return result

    def validate(self, fields: Mapping[str, str], document_type: Union[DocumentType, str]) -> ValidationResult:
        return validate_fields(fields, document_type)
