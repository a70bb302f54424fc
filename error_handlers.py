"""
Scanner Errors
Typed failures for every layer, serialized the same way for the HTTP API
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Root of all scanner failures; carries a stable machine-readable code."""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 - Camera device
class CameraError(ScannerError):
    pass


class PermissionDeniedError(CameraError):
    """The OS refused access to the video device"""
    def __init__(self, device, reason=None):
        super().__init__(
            message=f"Access to {device} was denied",
            error_code="CAMERA_PERMISSION_DENIED",
            details={
                "device": str(device),
                "reason": reason,
                "hint": "Run the scanner as a member of the 'video' group"
            }
        )


class DeviceUnavailableError(CameraError):
    """No device node for the configured index"""
    def __init__(self, device):
        super().__init__(
            message=f"No video device at {device}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "device": str(device),
                "hint": "Set CAMERA_INDEX to an attached camera"
            }
        )


class DeviceBusyError(CameraError):
    """Device node exists but the stream could not be opened"""
    def __init__(self, device, reason=None):
        super().__init__(
            message=f"Could not open {device}",
            error_code="CAMERA_BUSY",
            details={
                "device": str(device),
                "reason": reason,
                "hint": "Another process may hold the device"
            }
        )


class CameraNotInitializedError(CameraError):
    def __init__(self):
        super().__init__(
            message="No scan session holds the camera",
            error_code="CAMERA_NOT_INITIALIZED",
            details={"hint": "POST /start_scan before reading frames"}
        )


class FrameCaptureError(CameraError):
    """A read from the open stream returned nothing usable"""
    def __init__(self, reason=None):
        super().__init__(
            message="Camera delivered no frame",
            error_code="FRAME_CAPTURE_FAILED",
            details={"reason": reason}
        )


# Layers 2 and 4 - Pixel processing
class ProcessingError(ScannerError):
    pass


class InvalidFrameError(ProcessingError):
    """Frame is missing, empty or has the wrong layout"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid frame: {reason}",
            error_code="INVALID_FRAME",
            details={"reason": reason}
        )


class DegenerateQuadError(ProcessingError):
    """Corner set cannot define a perspective transform"""
    def __init__(self, corners, reason):
        super().__init__(
            message=f"Degenerate document corners: {reason}",
            error_code="DEGENERATE_CORNERS",
            details={
                "corners": [list(map(float, c)) for c in corners],
                "reason": reason
            }
        )


class ImageDecodeError(ProcessingError):
    def __init__(self, reason=None):
        super().__init__(
            message="Image bytes are not a decodable picture",
            error_code="IMAGE_DECODE_FAILED",
            details={"reason": reason}
        )


class ImageEncodeError(ProcessingError):
    def __init__(self, fmt, reason=None):
        super().__init__(
            message=f"Could not encode image as {fmt}",
            error_code="IMAGE_ENCODE_FAILED",
            details={"format": fmt, "reason": reason}
        )


# Layer 3 - Capture session
class InvalidConfigError(ScannerError):
    """Detection or capture configuration out of range"""
    def __init__(self, field, value, expected):
        super().__init__(
            message=f"Invalid configuration value for {field}: {value!r}",
            error_code="INVALID_CONFIG",
            details={"field": field, "value": value, "expected": expected}
        )


class InvalidTransitionError(ScannerError):
    """Scan session event not allowed in the current state"""
    def __init__(self, state, event):
        super().__init__(
            message=f"Cannot apply {event} while {state}",
            error_code="INVALID_TRANSITION",
            details={"state": str(state), "event": str(event)}
        )


# Layer 4 - Persistence
class SaveError(ScannerError):
    """Writing a capture to disk failed"""
    kind = "file"
    code = "SAVE_FAILED"

    def __init__(self, filepath, reason):
        super().__init__(
            message=f"Could not write {self.kind} {filepath}",
            error_code=self.code,
            details={"filepath": filepath, "reason": str(reason)}
        )


class ImageSaveError(SaveError):
    kind = "image"
    code = "IMAGE_SAVE_FAILED"


class JSONSaveError(SaveError):
    kind = "record"
    code = "JSON_SAVE_FAILED"


def handle_error(error, log_message=None):
    """
    Log an exception and build its JSON error body.

    ScannerError subclasses serialize themselves. Anything else is logged
    with its traceback and reported as UNEXPECTED_ERROR.
    """
    if log_message:
        logger.error(log_message)

    if not isinstance(error, ScannerError):
        logger.exception(f"Unhandled {type(error).__name__}: {error}")
        return {
            "success": False,
            "error": "Internal scanner failure",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }

    logger.error(f"[{error.error_code}] {error.message}")
    if error.details:
        logger.debug(f"{error.error_code} details: {error.details}")
    return error.to_dict()
