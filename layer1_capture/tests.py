"""
Tests for Layer 1: frames and the camera handler.
"""
import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraNotInitializedError,
    DeviceUnavailableError,
    FrameCaptureError,
    InvalidFrameError,
)
from layer1_capture import CameraHandler, Frame, PhotoRequest


class TestFrame:
    """Test the RGBA frame value type."""

    def test_from_rgba_bytes(self):
        buffer = bytes(range(16))
        frame = Frame.from_rgba(buffer, width=2, height=2)
        assert frame.data.shape == (2, 2, 4)
        assert frame.data[1, 1].tolist() == [12, 13, 14, 15]

    def test_from_rgba_copies_buffer(self):
        source = np.zeros((2, 3, 4), dtype=np.uint8)
        frame = Frame.from_rgba(source, width=3, height=2)
        source[0, 0, 0] = 99
        assert frame.data[0, 0, 0] == 0

    def test_frame_is_read_only(self, rect_frame):
        with pytest.raises(ValueError):
            rect_frame.data[0, 0, 0] = 1

    def test_wrong_buffer_size_rejected(self):
        with pytest.raises(InvalidFrameError):
            Frame.from_rgba(bytes(10), width=2, height=2)

    def test_zero_size_rejected(self):
        with pytest.raises(InvalidFrameError):
            Frame.from_rgba(b"", width=0, height=0)

    def test_missing_buffer_rejected(self):
        with pytest.raises(InvalidFrameError):
            Frame(width=2, height=2, data=None)

    def test_from_bgr_swaps_channels(self):
        bgr = np.zeros((1, 1, 3), dtype=np.uint8)
        bgr[0, 0] = (255, 0, 0)  # Blue
        frame = Frame.from_bgr(bgr)
        assert frame.data[0, 0].tolist() == [0, 0, 255, 255]

    def test_from_bgr_gray(self):
        gray = np.full((4, 5), 77, dtype=np.uint8)
        frame = Frame.from_bgr(gray)
        assert (frame.width, frame.height) == (5, 4)
        assert frame.data[2, 3].tolist() == [77, 77, 77, 255]

    def test_to_bgr_round_trip(self, rect_frame):
        back = Frame.from_bgr(rect_frame.to_bgr())
        assert np.array_equal(back.data, rect_frame.data)

    def test_scaled_keeps_small_frames(self, rect_frame):
        frame, scale = rect_frame.scaled(640)
        assert frame is rect_frame
        assert scale == 1.0

    def test_scaled_downscales(self, rect_frame):
        frame, scale = rect_frame.scaled(50)
        assert (frame.width, frame.height) == (50, 50)
        assert scale == 0.5

    def test_area(self, rect_frame):
        assert rect_frame.area == 10000


class StubCapture:
    """cv2.VideoCapture stand-in returning a fixed read result."""

    def __init__(self, image=None, error=None):
        self.image = image
        self.error = error

    def read(self):
        if self.error is not None:
            raise self.error
        return self.image is not None, self.image

    def isOpened(self):
        return True

    def release(self):
        pass


class TestCameraHandler:
    """Test camera handler without hardware."""

    def test_missing_device(self):
        handler = CameraHandler(camera_index=987)
        with pytest.raises(DeviceUnavailableError) as exc_info:
            handler.initialize()
        assert exc_info.value.error_code == "CAMERA_NOT_FOUND"
        assert not handler.is_opened()

    def test_frame_before_initialize(self):
        handler = CameraHandler(camera_index=987)
        with pytest.raises(CameraNotInitializedError):
            handler.get_frame()

    def test_photo_before_initialize(self):
        handler = CameraHandler(camera_index=987)
        with pytest.raises(CameraNotInitializedError):
            handler.capture_photo()

    def test_release_without_initialize(self):
        handler = CameraHandler(camera_index=987)
        handler.release()
        assert not handler.is_opened()

    def test_config_override(self):
        handler = CameraHandler(camera_index=3, config={'width': 640})
        assert handler.config['width'] == 640
        assert handler.config['height'] == 1080
        assert handler.device_path == "/dev/video3"

    def test_photo_request_defaults(self):
        request = PhotoRequest()
        assert request.quality == 95
        assert request.allow_editing is False
        assert request.save_to_gallery is False

    def test_read_error_becomes_frame_error(self):
        handler = CameraHandler(camera_index=987)
        handler._capture = StubCapture(error=cv2.error("driver crash"))
        with pytest.raises(FrameCaptureError):
            handler.get_frame()
        with pytest.raises(FrameCaptureError):
            handler.capture_photo()

    def test_empty_read_becomes_frame_error(self):
        handler = CameraHandler(camera_index=987)
        handler._capture = StubCapture(image=None)
        with pytest.raises(FrameCaptureError):
            handler.get_frame()

    def test_still_photo_encoding_failure(self):
        handler = CameraHandler(camera_index=987)
        handler._capture = StubCapture(image=np.zeros((0, 0, 3), dtype=np.uint8))
        with pytest.raises(FrameCaptureError):
            handler.capture_photo()

    def test_still_photo_from_stub(self):
        handler = CameraHandler(camera_index=987)
        handler._capture = StubCapture(image=np.zeros((12, 16, 3), dtype=np.uint8))
        photo = handler.capture_photo(PhotoRequest(quality=150))
        assert (photo.width, photo.height) == (16, 12)
        assert photo.data[:2] == b'\xff\xd8'
