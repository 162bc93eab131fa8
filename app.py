"""
ID Document Scan - FastAPI Web Application

HTTP surface for one-shot use of the scan pipeline on uploaded stills:
frame analysis with positioning guidance, field extraction and validation.
Supports drivers licenses, passports and national ID cards.
"""

import io
import logging
from typing import Any, Dict, Optional

import numpy as np
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from PIL import Image, UnidentifiedImageError

from errors import AnalysisError, ExtractionError, RecognitionError
from extraction_engine import ExtractionEngine, validate_fields
from frame_analyzer import FrameAnalyzer
from models import Frame
from recognition import SURYA_AVAILABLE, RecognitionBackend, SuryaRecognitionBackend
from settings import PRESETS, PreprocessingOptions

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# OCR backend, loaded on startup
recognition_backend: Optional[RecognitionBackend] = None


def init_models():
    """Initialize the OCR backend."""
    global recognition_backend

    if recognition_backend is None and SURYA_AVAILABLE:
        recognition_backend = SuryaRecognitionBackend()


# Initialize FastAPI
app = FastAPI(
    title="ID Document Scan",
    description="Document detection, OCR field extraction and validation for ID documents",
    version="1.0.0"
)

# Config
ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp', 'bmp'}
MAX_FILE_SIZE = 16 * 1024 * 1024  # 16MB


def allowed_file(filename: str) -> bool:
    """Check if file extension is allowed."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def get_preset(preset: str):
    if preset not in PRESETS:
        raise HTTPException(status_code=400, detail=f"Unknown preset '{preset}'. Use one of: {', '.join(sorted(PRESETS))}")
    return PRESETS[preset]


async def read_upload(file: UploadFile) -> np.ndarray:
    """Validate an uploaded image and decode it into an RGB array."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file selected")

    if not allowed_file(file.filename):
        raise HTTPException(status_code=400, detail="Invalid file type. Use JPG, PNG, WebP, BMP or GIF")

    contents = await file.read()
    if len(contents) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File size must be less than 16MB")

    try:
        image = Image.open(io.BytesIO(contents)).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Could not decode image: {e}")
    return np.array(image)


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize models on startup."""
    logger.info("Initializing OCR backend...")
    init_models()
    logger.info("OCR backend initialized")


# =====================================================
# API Routes
# =====================================================

@app.post("/api/analyze")
async def analyze_frame(file: UploadFile = File(...), preset: str = Form("lenient")):
    """Run the frame analyzer on an uploaded still."""
    analysis_settings, _ = get_preset(preset)
    image = await read_upload(file)

    analyzer = FrameAnalyzer(analysis_settings)
    try:
        result = analyzer.analyze(Frame(image))
    except AnalysisError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JSONResponse({
        "success": True,
        "result": result.to_dict(),
        "hint": analyzer.hint(result),
        "ready": result.is_positioned and result.quality >= analysis_settings.quality_threshold,
    })


@app.post("/api/extract")
async def extract_document(
    file: UploadFile = File(...),
    preset: str = Form("lenient"),
    deskew: bool = Form(True),
    grayscale: bool = Form(True)
):
    """Extract and validate ID document fields from an uploaded image."""
    _, scan_settings = get_preset(preset)
    image = await read_upload(file)

    if recognition_backend is None or not recognition_backend.is_available():
        raise HTTPException(status_code=503, detail="OCR backend not available")

    engine = ExtractionEngine(recognition_backend, PreprocessingOptions(deskew=deskew, grayscale=grayscale))
    try:
        result = await run_in_threadpool(engine.extract, image)
    except RecognitionError as e:
        logger.warning(f"Recognition failed: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except ExtractionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    validation = engine.validate(result.fields, result.document_type)
    logger.info(f"Extracted {len(result.fields)} fields from {result.document_type.value} "
                f"(confidence {result.confidence:.2%})")

    return JSONResponse({
        "success": True,
        "accepted": result.confidence >= scan_settings.success_threshold,
        "result": result.to_dict(),
        "validation": validation.to_dict(),
    })


@app.post("/api/validate")
async def validate_fields_endpoint(request: Request):
    """Validate user-corrected fields for a document type."""
    try:
        data: Dict[str, Any] = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")

    fields = data.get("fields") if isinstance(data, dict) else None
    if not isinstance(fields, dict):
        raise HTTPException(status_code=400, detail="'fields' must be an object")

    validation = validate_fields(fields, data.get("document_type", "drivers_license"))
    return JSONResponse({"success": True, "validation": validation.to_dict()})


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "surya_available": SURYA_AVAILABLE,
        "ocr_available": recognition_backend is not None and recognition_backend.is_available(),
        "presets": sorted(PRESETS),
    }


# =====================================================
# Entry Point
# =====================================================

if __name__ == "__main__":
    import uvicorn

    print("\n" + "="*60)
    print("  ID Document Scan")
    print("="*60)
    print(f"\n  API Docs:  http://localhost:5001/docs")
    print(f"  Surya OCR: {'Available' if SURYA_AVAILABLE else 'Not Available'}")
    print("\n" + "="*60 + "\n")

    uvicorn.run("app:app", host="0.0.0.0", port=5001, reload=True)
