"""
Pytest configuration and fixtures for the document scanner tests.
"""
import pytest
import os
import sys
import tempfile

import cv2
import numpy as np

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

# app.py builds its saver at import time
os.environ.setdefault("SAVE_DIR", tempfile.mkdtemp(prefix="scanner_test_"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

from error_handlers import FrameCaptureError  # noqa: E402
from layer1_capture import Frame, Photo  # noqa: E402


def rgba(height, width, value=0):
    data = np.zeros((height, width, 4), dtype=np.uint8)
    data[..., :3] = value
    data[..., 3] = 255
    return data


@pytest.fixture
def rect_frame():
    """100x100 black frame with a white rectangle over rows 10-89, columns 20-79."""
    data = rgba(100, 100)
    data[10:90, 20:80, :3] = 255
    return Frame(width=100, height=100, data=data)


@pytest.fixture
def dim_frame():
    """The rectangle frame at gray 100: same outline, quality about 0.15."""
    data = rgba(100, 100)
    data[10:90, 20:80, :3] = 100
    return Frame(width=100, height=100, data=data)


@pytest.fixture
def black_frame():
    return Frame(width=100, height=100, data=rgba(100, 100, 0))


@pytest.fixture
def white_frame():
    return Frame(width=100, height=100, data=rgba(100, 100, 255))


class FakeCamera:
    """
    In-memory camera collaborator.

    get_frame() cycles through `frames`; capture_photo() returns `photo_image`
    (BGR) encoded as PNG. Errors can be injected per call type.
    """

    def __init__(self, frames=None, photo_image=None, init_error=None,
                 frame_error=None, photo_error=None):
        self.frames = list(frames or [])
        self.photo_image = photo_image
        self.init_error = init_error
        self.frame_error = frame_error
        self.photo_error = photo_error

        self.opened = False
        self.initialize_calls = 0
        self.release_calls = 0
        self.photo_requests = []
        self._index = 0

    def initialize(self):
        self.initialize_calls += 1
        if self.init_error is not None:
            raise self.init_error
        self.opened = True
        return True

    def release(self):
        self.release_calls += 1
        self.opened = False

    def is_opened(self):
        return self.opened

    def get_frame(self):
        if self.frame_error is not None:
            raise self.frame_error
        if not self.frames:
            raise FrameCaptureError(reason="no frames queued")
        frame = self.frames[self._index % len(self.frames)]
        self._index += 1
        return frame

    def capture_photo(self, request=None):
        self.photo_requests.append(request)
        if self.photo_error is not None:
            raise self.photo_error
        ok, buffer = cv2.imencode('.png', self.photo_image)
        h, w = self.photo_image.shape[:2]
        return Photo(data=buffer.tobytes(), width=w, height=h, format="PNG")


class ManualTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        """Run the callback as the timer thread would; a cancelled timer does nothing."""
        if self.started and not self.cancelled:
            self.function(*self.args, **self.kwargs)


@pytest.fixture
def timers():
    """Timer factory collecting every timer it creates in `.created`."""
    created = []

    def factory(interval, function, args=None, kwargs=None):
        timer = ManualTimer(interval, function, args=args, kwargs=kwargs)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def photo_image(rect_frame):
    """Full-resolution still: the rectangle frame at twice the preview size."""
    return cv2.resize(rect_frame.to_bgr(), (200, 200), interpolation=cv2.INTER_NEAREST)


@pytest.fixture
def camera(rect_frame, photo_image):
    return FakeCamera(frames=[rect_frame], photo_image=photo_image)


@pytest.fixture
def fake_camera_cls():
    return FakeCamera


@pytest.fixture
def coordinator(camera, timers, tmp_path):
    """ScanCoordinator around the fake camera, loop driven by the test."""
    from app import ScanCoordinator
    from layer2_detection import DetectionConfig

    return ScanCoordinator(
        camera=camera,
        save_dir=str(tmp_path / "captures"),
        detection_config=DetectionConfig(quality_threshold=0.3),
        timer_factory=timers,
        run_in_thread=False,
    )


@pytest.fixture
def app(coordinator, monkeypatch):
    """Create Flask test application wired to the fake coordinator."""
    import app as app_module
    monkeypatch.setattr(app_module, "scanner", coordinator)
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
