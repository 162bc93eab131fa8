"""
Error taxonomy for the document scanning pipeline.

Per-attempt errors (CaptureError, RecognitionError) never reach the caller
directly; the coordinator folds them into a failed attempt. Structural errors
(ConfigurationError) are raised once when settings or schemas are built.
"""


class ScanError(Exception):
    """Base class for all scanning pipeline errors"""


class ConfigurationError(ScanError):
    """Invalid settings or field schema, reported at configuration time"""


class AnalysisError(ScanError):
    """Malformed or zero-size frame; the analysis tick is skipped"""


class CaptureError(ScanError):
    """The frame source failed to deliver a high-resolution image"""


class RecognitionError(ScanError):
    """The recognition backend produced no text"""


class ExtractionError(ScanError):
    """Field extraction could not be performed for a captured image"""


class ExtractionCancelled(ScanError):
    """Extraction was cancelled cooperatively because the session moved on"""


class CameraNotReadyError(ScanError):
    """The camera/permission layer is not ready; sampling refused to start"""


class PermissionRevoked(ScanError):
    """Camera readiness was revoked mid-session; ends the session as ABORTED"""
