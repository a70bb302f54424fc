"""
Layer 3 — Auto-Capture Engine
Per-frame detection loop with a stabilization timer.
Captures one corrected document per scanning session, or a batch of pages.

Features:
- Edge/contour based document detection on a downscaled preview
- Whole-frame quality scoring (brightness, contrast, sharpness)
- Debounced stabilization timer (one outstanding timer at most)
- Manual capture that bypasses the quality gate
- Perspective correction and auto enhancement of the still photo
- Camera released on every exit path
"""
import cv2
import numpy as np
import logging
import threading
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from error_handlers import (
    CameraError,
    FrameCaptureError,
    ImageDecodeError,
    InvalidConfigError,
    InvalidTransitionError,
    ProcessingError,
)
from layer1_capture import Frame, PhotoRequest
from layer2_detection import DetectionConfig, DocumentCandidate, DocumentDetector
from layer4_correction import AutoEnhancer, correct_perspective, validate_mode
from .quality import QualityAssessor, QualityMetrics
from .state import ACTIVE_STATES, CaptureState, ScanEvent, TERMINAL_STATES, next_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureConfig:
    """
    Configuration for the auto-capture engine.

    Quality is scored on the preview after it is downscaled to
    analysis_max_width. Sharpness is a per-pixel average, so the same
    scene scores differently at other widths and quality_threshold has to
    be tuned together with analysis_max_width.
    """
    auto_mode: bool = True
    stabilization_ms: int = 1000          # Delay between quality gate and capture
    analysis_max_width: int = 640         # Preview frames are downscaled to this width
    photo_quality: int = 95               # Still photo encoding quality
    max_consecutive_failures: int = 30    # Dropped frames in a row before aborting
    mode: Optional[str] = None            # Enhancement preset: document, id or whiteboard
    batch_size: int = 1                   # Pages per session, 0 until stopped

    def __post_init__(self):
        if self.stabilization_ms < 0:
            raise InvalidConfigError('stabilization_ms', self.stabilization_ms, ">= 0")
        if self.analysis_max_width is not None and self.analysis_max_width < 0:
            raise InvalidConfigError('analysis_max_width', self.analysis_max_width, ">= 0 (0 disables)")
        if not 0 <= self.photo_quality <= 100:
            raise InvalidConfigError('photo_quality', self.photo_quality, "0 - 100")
        if self.max_consecutive_failures < 0:
            raise InvalidConfigError('max_consecutive_failures', self.max_consecutive_failures, ">= 0")
        validate_mode(self.mode)
        _check_batch_size(self.batch_size)


def _check_batch_size(value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidConfigError('batch_size', value, "integer >= 0 (0 captures until stopped)")
    return value


@dataclass(frozen=True)
class FrameAnalysis:
    """Detection and quality of one analysed frame, in analysis coordinates."""
    candidate: Optional[DocumentCandidate]
    quality: QualityMetrics
    width: int
    height: int

    def to_dict(self) -> Dict:
        return {
            'document_detected': self.candidate is not None,
            'candidate': self.candidate.to_dict() if self.candidate else None,
            'quality': self.quality.to_dict(),
            'width': self.width,
            'height': self.height,
        }


@dataclass
class CaptureResult:
    """Result of a capture session."""
    success: bool
    image: Optional[bytes] = None
    corners: Optional[List[List[float]]] = None
    quality: Optional[QualityMetrics] = None
    confidence: float = 0.0
    timestamp: str = ""
    error: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response (image bytes omitted)."""
        result = {
            'success': self.success,
            'timestamp': self.timestamp,
            'confidence': round(self.confidence, 4),
            'error': self.error,
            'metadata': self.metadata
        }
        if self.quality:
            result['quality'] = self.quality.to_dict()
        if self.corners:
            result['corners'] = self.corners
        return result


class AutoCaptureEngine:
    """
    Owns the CaptureState of one scanning session.

    The camera is any object with initialize(), release(), is_opened(),
    get_frame() -> Frame and capture_photo(PhotoRequest) -> Photo.
    run() is the single consumer of the camera; the stabilization timer
    fires on its own thread. Every state change happens under self._lock.
    """

    def __init__(
        self,
        camera,
        detection_config: Optional[DetectionConfig] = None,
        config: Optional[CaptureConfig] = None,
        enhancer: Optional[AutoEnhancer] = None,
        on_capture: Optional[Callable[[CaptureResult], None]] = None,
        on_frame: Optional[Callable[[Frame, "FrameAnalysis"], None]] = None,
        timer_factory: Callable = threading.Timer,
    ):
        """
        Initialize auto-capture engine.

        Args:
            camera: Camera collaborator
            detection_config: Detection thresholds (defaults if None)
            config: Capture configuration (defaults if None)
            enhancer: Output enhancer/encoder (defaults if None)
            on_capture: Called with the CaptureResult of every captured page
            on_frame: Called after every analysed frame (preview hook)
            timer_factory: threading.Timer compatible factory
        """
        self.camera = camera
        self.detection_config = detection_config or DetectionConfig()
        self.config = config or CaptureConfig()

        # Components
        self.detector = DocumentDetector(self.detection_config)
        self.quality_assessor = QualityAssessor()
        self.enhancer = enhancer or AutoEnhancer()

        self.on_capture = on_capture
        self.on_frame = on_frame
        self._timer_factory = timer_factory

        # Session state
        self._lock = threading.RLock()
        self._tick_lock = threading.Lock()
        self._state = CaptureState.IDLE
        self._outcome: Optional[CaptureState] = None
        self._latest: Optional[FrameAnalysis] = None
        self._result: Optional[CaptureResult] = None
        self._timer = None
        self._generation = 0
        self._capture_in_flight = False
        self._consecutive_failures = 0
        self._results: List[CaptureResult] = []
        self.auto_mode = self.config.auto_mode
        self.scan_mode = validate_mode(self.config.mode)
        self.batch_size = self.config.batch_size

        logger.info("AutoCaptureEngine initialized")
        logger.debug(f"Config: {self.config}")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def outcome(self) -> Optional[CaptureState]:
        """Terminal state reached by the last session (CAPTURED or CANCELLED)."""
        return self._outcome

    @property
    def latest(self) -> Optional[FrameAnalysis]:
        return self._latest

    @property
    def result(self) -> Optional[CaptureResult]:
        return self._result

    @property
    def results(self) -> List[CaptureResult]:
        """Every page captured in the current or last session, in order."""
        with self._lock:
            return list(self._results)

    @property
    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    def get_status(self) -> Dict:
        with self._lock:
            return {
                'state': self._state.value,
                'outcome': self._outcome.value if self._outcome else None,
                'auto_mode': self.auto_mode,
                'mode': self.scan_mode,
                'batch_size': self.batch_size,
                'pages_captured': len(self._results),
                'capture_in_flight': self._capture_in_flight,
                'analysis': self._latest.to_dict() if self._latest else None,
            }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _apply(self, event: ScanEvent) -> CaptureState:
        previous = self._state
        self._state = next_state(previous, event)
        if self._state is not previous:
            logger.debug(f"State {previous.value} -> {self._state.value} ({event.value})")
            if self._state in TERMINAL_STATES:
                self._outcome = self._state
        return self._state

    def start(self, auto_mode: Optional[bool] = None, mode: Optional[str] = None,
              batch_size: Optional[int] = None):
        """
        Start a scanning session and acquire the camera.

        Args:
            auto_mode: Capture on the stabilization timer (config default if None)
            mode: Enhancement preset name, 'none' for no preset (config default if None)
            batch_size: Pages before the session completes, 0 until stopped
                (config default if None)

        Raises:
            InvalidTransitionError: A session is already active
            InvalidConfigError: Unknown mode or invalid batch size
            PermissionDeniedError, DeviceUnavailableError, DeviceBusyError:
                camera acquisition failed; the camera is released and the
                engine stays IDLE
        """
        with self._lock:
            # Validate before touching the device
            next_state(self._state, ScanEvent.START)
            scan_mode = validate_mode(self.config.mode if mode is None else mode)
            pages = self.config.batch_size if batch_size is None else _check_batch_size(batch_size)

            try:
                self.camera.initialize()
            except Exception as e:
                logger.error(f"Failed to start scan: {e}")
                self._release_camera()
                self._state = CaptureState.IDLE
                raise

            if auto_mode is not None:
                self.auto_mode = auto_mode
            self.scan_mode = scan_mode
            self.batch_size = pages
            self._generation += 1
            self._latest = None
            self._result = None
            self._results = []
            self._outcome = None
            self._consecutive_failures = 0
            self._apply(ScanEvent.START)

            logger.info(
                f"Scan session {self._generation} started "
                f"(auto_mode={self.auto_mode}, mode={self.scan_mode}, batch_size={self.batch_size})"
            )

    def cancel(self):
        """
        Stop the session: cancel the timer, release the camera, return to IDLE.

        A batch that already holds pages finishes as CAPTURED; any other
        active session is recorded as CANCELLED.
        """
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._release_camera()

            if self._state in ACTIVE_STATES:
                if self._results:
                    self._apply(ScanEvent.CAPTURE_SUCCEEDED)
                    logger.info(f"Batch finished with {len(self._results)} page(s)")
                else:
                    self._apply(ScanEvent.CANCEL)
                    logger.info("Scan session cancelled")
            self._apply(ScanEvent.RESET)

    def _abort(self, error: Exception):
        logger.error(f"Scan session aborted: {error}")
        self.cancel()

    def _release_camera(self):
        try:
            self.camera.release()
        except Exception as e:
            logger.warning(f"Camera release failed: {e}")

    # ------------------------------------------------------------------
    # Per-frame pipeline
    # ------------------------------------------------------------------

    def analyze(self, frame: Frame) -> FrameAnalysis:
        """
        Detect the document and score quality on the (downscaled) frame.
        Without a candidate the quality is reported as zero.
        """
        small, _ = frame.scaled(self.config.analysis_max_width)
        candidate = self.detector.detect(small)
        quality = self.quality_assessor.assess(small) if candidate else QualityMetrics.zero()
        return FrameAnalysis(candidate=candidate, quality=quality, width=small.width, height=small.height)

    def _quality_ready(self, analysis: Optional[FrameAnalysis]) -> bool:
        if analysis is None or analysis.candidate is None:
            return False
        ok, _ = self.quality_assessor.is_acceptable(analysis.quality, self.detection_config.quality_threshold)
        return ok

    def process_frame(self, frame: Frame) -> Optional[FrameAnalysis]:
        """
        Run one tick of the pipeline on a frame and apply the transitions.

        Returns:
            FrameAnalysis, or None when no session is active
        """
        with self._lock:
            if self._state not in ACTIVE_STATES:
                return None
            generation = self._generation

        analysis = self.analyze(frame)

        with self._lock:
            if generation != self._generation or self._state not in ACTIVE_STATES:
                logger.debug("Session ended during analysis, result dropped")
                return None

            self._latest = analysis
            if analysis.candidate is None:
                self._apply(ScanEvent.CANDIDATE_LOST)
            else:
                self._apply(ScanEvent.CANDIDATE_FOUND)
                if (self.auto_mode and self._state is CaptureState.DOCUMENT_DETECTED
                        and self._quality_ready(analysis)):
                    self._apply(ScanEvent.QUALITY_READY)
                    self._start_timer()

        if self.on_frame:
            self.on_frame(frame, analysis)
        return analysis

    def tick(self) -> Optional[FrameAnalysis]:
        """
        Pull one frame from the camera and process it.
        A tick that starts while another is running is dropped.

        Raises:
            FrameCaptureError: more than max_consecutive_failures frames in a row failed
        """
        if not self._tick_lock.acquire(blocking=False):
            return None
        try:
            with self._lock:
                if self._state not in ACTIVE_STATES:
                    return None
                try:
                    frame = self.camera.get_frame()
                except FrameCaptureError as e:
                    self._consecutive_failures += 1
                    logger.warning(f"Frame dropped ({self._consecutive_failures} in a row): {e.message}")
                    if self._consecutive_failures > self.config.max_consecutive_failures:
                        raise
                    return None
                self._consecutive_failures = 0

            return self.process_frame(frame)
        finally:
            self._tick_lock.release()

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Cooperative polling loop: one tick per camera frame until the session ends.

        Any exception escaping a tick while the session is still active
        cancels the timer and releases the camera before propagating.

        Returns:
            int: Number of ticks executed
        """
        ticks = 0
        generation = self._generation
        try:
            while self.is_active and (max_ticks is None or ticks < max_ticks):
                self.tick()
                ticks += 1
        except Exception as e:
            with self._lock:
                if generation != self._generation or not self.is_active:
                    logger.debug(f"Loop stopped after session end: {e}")
                    return ticks
                self._abort(e)
            raise

        logger.debug(f"Detection loop finished after {ticks} ticks")
        return ticks

    # ------------------------------------------------------------------
    # Stabilization timer
    # ------------------------------------------------------------------

    def _start_timer(self):
        self._cancel_timer()
        delay = self.config.stabilization_ms / 1000.0
        self._timer = self._timer_factory(delay, self._on_timer, args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()
        logger.debug(f"Stabilization timer started ({self.config.stabilization_ms}ms)")

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int):
        result = None
        with self._lock:
            if generation != self._generation or self._state is not CaptureState.STABILIZING:
                logger.debug("Stale stabilization timer ignored")
                return
            self._timer = None

            if not self._quality_ready(self._latest):
                logger.info("Re-validation failed, back to scanning")
                self._apply(ScanEvent.STABILIZATION_FAILED)
                return

            result = self._capture(self._latest, mode="auto")

        if result is not None:
            self._emit(result)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture_now(self) -> Optional[CaptureResult]:
        """
        Manual capture: bypasses the stabilization timer and the quality gate.

        Returns:
            CaptureResult, or None when no candidate is present, a capture
            is already in flight or the still capture failed

        Raises:
            InvalidTransitionError: No session is active
        """
        with self._lock:
            if self._state not in ACTIVE_STATES:
                raise InvalidTransitionError(self._state.value, "manual_capture")
            if self._capture_in_flight:
                logger.warning("Capture already in flight, request ignored")
                return None
            if self._latest is None or self._latest.candidate is None:
                logger.info("Manual capture requested without a document candidate")
                return None

            self._cancel_timer()
            result = self._capture(self._latest, mode="manual")

        if result is not None:
            self._emit(result)
        return result

    def _decode(self, data: bytes) -> np.ndarray:
        if not data:
            raise ImageDecodeError("empty photo")
        try:
            image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        except cv2.error as e:
            raise ImageDecodeError(str(e))
        if image is None:
            raise ImageDecodeError("unrecognised image data")
        return image

    @staticmethod
    def scale_corners(analysis: FrameAnalysis, width: int, height: int) -> List[List[float]]:
        """Map corners from analysis coordinates to photo coordinates."""
        sx = width / analysis.width
        sy = height / analysis.height
        return [[p.x * sx, p.y * sy] for p in analysis.candidate.corners]

    def _output_format(self) -> str:
        fmt = self.enhancer.config.output_format.lstrip('.').upper()
        return "JPEG" if fmt == "JPG" else fmt

    def _capture(self, analysis: FrameAnalysis, mode: str) -> Optional[CaptureResult]:
        """
        Take, correct and encode the still photo. Called with self._lock held.

        Any failure sends CAPTURE_FAILED so the session keeps scanning and a
        later frame can start a new timer.
        """
        self._capture_in_flight = True
        try:
            photo = self.camera.capture_photo(PhotoRequest(quality=self.config.photo_quality))
            image = self._decode(photo.data)
            h, w = image.shape[:2]

            corners = self.scale_corners(analysis, w, h)
            corrected, applied = correct_perspective(image, corners)
            data = self.enhancer.encode(self.enhancer.enhance(corrected, self.scan_mode))
        except (CameraError, ProcessingError) as e:
            logger.warning(f"Capture failed ({mode}): {e}")
            self._apply(ScanEvent.CAPTURE_FAILED)
            return None
        except Exception as e:
            logger.exception(f"Capture failed unexpectedly ({mode}): {e}")
            self._apply(ScanEvent.CAPTURE_FAILED)
            return None
        finally:
            self._capture_in_flight = False

        page = len(self._results) + 1
        result = CaptureResult(
            success=True,
            image=data,
            corners=[[round(x, 2), round(y, 2)] for x, y in corners],
            quality=analysis.quality,
            confidence=analysis.candidate.confidence,
            timestamp=datetime.now().isoformat(),
            metadata={
                'width': w,
                'height': h,
                'format': self._output_format(),
                'mode': mode,
                'scan_mode': self.scan_mode,
                'auto_detected': mode == "auto",
                'auto_corrected': applied,
                'batch_index': page,
            }
        )
        self._results.append(result)
        self._result = result

        if self.batch_size and page >= self.batch_size:
            self._generation += 1
            self._release_camera()
            self._apply(ScanEvent.CAPTURE_SUCCEEDED)
        else:
            # Next page needs a fresh detection
            self._latest = None
            self._apply(ScanEvent.PAGE_CAPTURED)

        logger.info(
            f"Document captured ({mode}, page {page}): {w}x{h}, quality {analysis.quality.score:.2f}, "
            f"confidence {analysis.candidate.confidence:.2f}"
        )
        return result

    def _emit(self, result: CaptureResult):
        if self.on_capture:
            self.on_capture(result)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.cancel()
        return False
