"""
Smart Document Scanner Web Application
Thin coordinator for the layered document scanning system.

Provides REST API for:
- Scan sessions with automatic or manual capture (local camera)
- MJPEG preview with detection overlay
- Stateless analysis and correction of uploaded images
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import numpy as np
import json
import time
import logging
import os
import threading

# Import layers
from layer1_capture import CameraHandler, Frame
from layer2_detection import DetectionConfig
from layer3_auto_capture import AutoCaptureEngine, CaptureConfig, draw_detection_overlay
from layer4_correction import (
    FILTER_OUTPUT_QUALITY,
    FILTERS,
    PRESETS,
    ImageSaver,
    apply_filter,
    correct_perspective,
    validate_filter,
    validate_mode,
)

# Import error handling
from error_handlers import (
    ScannerError,
    SaveError,
    DeviceBusyError,
    DeviceUnavailableError,
    ImageDecodeError,
    InvalidConfigError,
    InvalidFrameError,
    InvalidTransitionError,
    PermissionDeniedError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'DEBUG').upper(), logging.DEBUG),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the web client
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
SAVE_DIR = os.environ.get('SAVE_DIR', "Logs/captured_documents")
AUTO_MODE = os.environ.get('AUTO_MODE', 'true').lower() in ('1', 'true', 'yes', 'on')
PREVIEW_FPS = 15

# HTTP status per error type; anything else is a 500
STATUS_CODES = [
    (PermissionDeniedError, 403),
    (DeviceUnavailableError, 404),
    (DeviceBusyError, 409),
    (InvalidTransitionError, 409),
    (ImageDecodeError, 400),
    (InvalidFrameError, 400),
    (InvalidConfigError, 400),
    (SaveError, 500),
    (ScannerError, 422),
]


def error_response(error):
    """JSON error body plus the matching HTTP status."""
    status = next((code for cls, code in STATUS_CODES if isinstance(error, cls)), 500)
    return jsonify(handle_error(error)), status


def parse_corners(raw):
    """Four finite [x, y] number pairs from a JSON string, or None when malformed."""
    try:
        corners = json.loads(raw)
    except ValueError:
        return None
    if not (isinstance(corners, list) and len(corners) == 4):
        return None
    for corner in corners:
        if not (isinstance(corner, list) and len(corner) == 2):
            return None
        for value in corner:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not np.isfinite(value):
                return None
    return corners


def decode_upload(data):
    """Decode uploaded image bytes to a BGR array."""
    if not data:
        raise ImageDecodeError("empty upload")
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise ImageDecodeError("unrecognised image data")
    return image


class ScanCoordinator:
    """
    Owns one camera and one capture engine on behalf of the HTTP routes;
    saves every successful capture and keeps the latest preview frame.
    """

    def __init__(self, camera, save_dir, detection_config=None, capture_config=None,
                 timer_factory=threading.Timer, run_in_thread=True):
        logger.info("Initializing ScanCoordinator")

        # Layer 1: Capture
        self.camera = camera

        # Layer 2 + 3: Detection loop
        self.engine = AutoCaptureEngine(
            camera,
            detection_config=detection_config,
            config=capture_config,
            on_capture=self._on_capture,
            on_frame=self._on_frame,
            timer_factory=timer_factory,
        )

        # Layer 4: Persistence
        self.image_saver = ImageSaver(base_dir=save_dir)

        self.run_in_thread = run_in_thread
        self._thread = None
        self._preview_lock = threading.Lock()
        self._preview_jpeg = None
        self.last_capture = None
        self.last_error = None
        self.captures = []

        logger.info("ScanCoordinator initialized successfully")

    @property
    def threshold(self):
        return self.engine.detection_config.quality_threshold

    def start_scan(self, auto_mode=None, mode=None, batch_size=None):
        """
        Start a scan session and the detection loop (Layer 1 -> 3)

        Raises:
            CameraError: camera could not be acquired
            InvalidTransitionError: a session is already running
            InvalidConfigError: unknown mode or invalid batch size
        """
        self.engine.start(auto_mode=auto_mode, mode=mode, batch_size=batch_size)
        self.last_error = None
        self.last_capture = None
        self.captures = []

        if self.run_in_thread:
            self._thread = threading.Thread(target=self._run_loop, name="detection-loop", daemon=True)
            self._thread.start()

    def _run_loop(self):
        logger.info("Detection loop started")
        try:
            self.engine.run()
        except Exception as e:
            self.last_error = handle_error(e, "Detection loop failed")
        logger.info("Detection loop stopped")

    def stop_scan(self):
        """Cancel the session and wait for the loop to exit"""
        self.engine.cancel()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        with self._preview_lock:
            self._preview_jpeg = None

    def capture(self):
        """
        Manual capture from the running session

        Returns:
            dict: Success response, or a failure body when no document is in view
        """
        logger.info("=" * 60)
        logger.info("Manual capture requested")

        result = self.engine.capture_now()
        if result is None:
            logger.info("Manual capture produced no document")
            logger.info("=" * 60)
            return {
                "success": False,
                "error": "No document detected or capture failed",
                "error_code": "NO_DOCUMENT"
            }

        logger.info("Manual capture stored")
        logger.info("=" * 60)
        return self.last_capture or result.to_dict()

    def _on_capture(self, result):
        """Persist every successful capture (auto or manual)"""
        response = result.to_dict()
        try:
            response["saved"] = self.image_saver.save_capture(result)
        except SaveError as e:
            self.last_error = handle_error(e)
            response["saved"] = None
        self.last_capture = response
        self.captures.append(response)

    def _on_frame(self, frame, analysis):
        """Render the preview with overlay for /video_feed"""
        preview, _ = frame.scaled(self.engine.config.analysis_max_width)
        overlay = draw_detection_overlay(preview.to_bgr(), analysis, self.threshold)
        ok, buffer = cv2.imencode('.jpg', overlay)
        if ok:
            with self._preview_lock:
                self._preview_jpeg = buffer.tobytes()

    def get_preview_jpeg(self):
        with self._preview_lock:
            return self._preview_jpeg

    def status(self):
        status = self.engine.get_status()
        status.update({
            "last_capture": self.last_capture,
            "last_error": self.last_error,
            "captures": len(self.captures),
        })
        return status

    def analyze_image(self, image):
        """Stateless detection + quality on a BGR image"""
        return self.engine.analyze(Frame.from_bgr(image))

    def process_image(self, image, corners=None, mode=None, filter_name=None):
        """
        Correct and enhance a BGR image, then apply a review filter

        Args:
            image: BGR image
            corners: 4 [x, y] corners; detected when omitted
            mode: Enhancement preset (document, id, whiteboard)
            filter_name: Review filter; filtered output is encoded at FILTER_OUTPUT_QUALITY

        Returns:
            tuple: (encoded bytes, perspective_applied)

        Raises:
            InvalidConfigError: unknown mode or filter
        """
        validate_mode(mode)
        if filter_name is not None:
            validate_filter(filter_name)

        if corners is None:
            analysis = self.analyze_image(image)
            if analysis.candidate is not None:
                h, w = image.shape[:2]
                corners = self.engine.scale_corners(analysis, w, h)

        applied = False
        if corners is not None:
            image, applied = correct_perspective(image, corners)

        enhancer = self.engine.enhancer
        image = enhancer.enhance(image, mode)
        quality = None
        if filter_name not in (None, 'none'):
            image = apply_filter(image, filter_name)
            quality = FILTER_OUTPUT_QUALITY
        return enhancer.encode(image, fmt='.jpg', quality=quality), applied


# Initialize scanner coordinator
logger.info("Configuring document scanner service")

scanner = ScanCoordinator(
    camera=CameraHandler(camera_index=CAMERA_INDEX),
    save_dir=SAVE_DIR,
    detection_config=DetectionConfig.from_env(),
    capture_config=CaptureConfig(auto_mode=AUTO_MODE),
)


# Flask Routes

@app.route('/health', methods=['GET'])
def health():
    """Health check for service discovery"""
    return jsonify({
        "status": "healthy",
        "service": "smart-document-scanner"
    })


@app.route('/api/status', methods=['GET'])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "scanner": scanner.status(),
        "camera_device": getattr(scanner.camera, 'device_path', None),
        "save_dir": scanner.image_saver.base_dir,
        "endpoints": {
            "health": "/health",
            "start_scan": "/start_scan",
            "stop_scan": "/stop_scan",
            "capture": "/capture",
            "detection_status": "/detection_status",
            "video_feed": "/video_feed",
            "analyze": "/api/analyze",
            "process": "/api/process",
        },
        "modes": sorted(PRESETS),
        "filters": sorted(FILTERS),
    })


@app.route('/start_scan', methods=['POST'])
def start_scan():
    """Start a scan session"""
    body = request.get_json(silent=True) or {}
    auto_mode = body.get('auto_mode')
    mode = body.get('mode')
    batch_size = body.get('batch_size')
    logger.info(f"Start scan request received (auto_mode={auto_mode}, mode={mode}, batch_size={batch_size})")

    try:
        scanner.start_scan(auto_mode=auto_mode, mode=mode, batch_size=batch_size)
    except ScannerError as e:
        return error_response(e)

    return jsonify({"success": True, "state": scanner.engine.state.value})


@app.route('/stop_scan', methods=['POST'])
def stop_scan():
    """End the scan session, release the camera and list the pages it captured"""
    logger.info("Stop scan request received")
    scanner.stop_scan()
    outcome = scanner.engine.outcome
    return jsonify({
        "success": True,
        "state": scanner.engine.state.value,
        "outcome": outcome.value if outcome else None,
        "captures": scanner.captures,
    })


@app.route('/capture', methods=['POST'])
def capture():
    """Manual capture"""
    logger.info("POST /capture")
    try:
        result = scanner.capture()
    except ScannerError as e:
        return error_response(e)

    logger.info(f"/capture -> success={result.get('success', False)}")
    return jsonify(result), (200 if result.get('success') else 409)


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Latest detection result of the running session"""
    status = scanner.engine.get_status()
    analysis = status.get('analysis') or {"document_detected": False}
    return jsonify({
        "success": True,
        "state": status['state'],
        "detection": analysis
    })


@app.route('/video_feed')
def video_feed():
    """MJPEG preview with detection overlay while a session runs"""
    logger.info("Video feed requested")

    def generate():
        frame_count = 0
        while scanner.engine.is_active:
            frame_bytes = scanner.get_preview_jpeg()
            if frame_bytes is not None:
                frame_count += 1
                if frame_count % 30 == 0:
                    logger.debug(f"Video stream: {frame_count} frames sent")
                yield (b'--frame\r\n'
                       b'Content-Type: image/jpeg\r\n\r\n' + frame_bytes + b'\r\n')
            time.sleep(1.0 / PREVIEW_FPS)

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


def _read_upload():
    if 'image' in request.files:
        return request.files['image'].read()
    return request.get_data()


@app.route('/api/analyze', methods=['POST'])
def api_analyze():
    """
    Detect the document and score quality of an uploaded image.

    Request: multipart 'image' file, or raw image bytes as body
    """
    logger.info("API analyze request received")
    try:
        image = decode_upload(_read_upload())
        analysis = scanner.analyze_image(image)
    except ScannerError as e:
        return error_response(e)

    return jsonify({
        "success": True,
        "ready": bool(analysis.candidate) and analysis.quality.score > scanner.threshold,
        **analysis.to_dict()
    })


@app.route('/api/process', methods=['POST'])
def api_process():
    """
    Correct perspective and enhance an uploaded image.

    Request: multipart 'image' file plus optional form fields
        corners: JSON list of four [x, y] pairs in image coordinates
        mode: enhancement preset (document, id, whiteboard)
        filter: review filter (none, grayscale, contrast, brightness, sharpen, blur)
    Response: enhanced JPEG
    """
    logger.info("API process request received")

    corners = None
    raw_corners = request.form.get('corners')
    if raw_corners:
        corners = parse_corners(raw_corners)
        if corners is None:
            return jsonify({
                "success": False,
                "error": "corners must be a JSON list of four [x, y] number pairs",
                "error_code": "INVALID_CORNERS"
            }), 400

    try:
        image = decode_upload(_read_upload())
        data, applied = scanner.process_image(
            image, corners,
            mode=request.form.get('mode'),
            filter_name=request.form.get('filter'),
        )
    except ScannerError as e:
        return error_response(e)

    response = Response(data, mimetype='image/jpeg')
    response.headers['X-Perspective-Corrected'] = str(applied).lower()
    return response


if __name__ == '__main__':
    logger.info("Flask server starting")
    logger.info(f"Camera: /dev/video{CAMERA_INDEX}, auto mode: {AUTO_MODE}, saving to {SAVE_DIR}")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)
