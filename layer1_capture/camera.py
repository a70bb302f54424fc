"""
Layer 1 — Camera
Scanner camera over V4L2: preview frames for the detection loop and
full-resolution stills for the corrector.
"""
import cv2
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from error_handlers import (
    CameraNotInitializedError,
    DeviceBusyError,
    DeviceUnavailableError,
    FrameCaptureError,
    PermissionDeniedError,
)
from .frame import Frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoRequest:
    """High-resolution still request."""
    quality: int = 95              # Encoding quality, 0-100
    allow_editing: bool = False    # Platform-side editing before hand-off
    save_to_gallery: bool = False  # Platform-side gallery copy


@dataclass(frozen=True)
class Photo:
    """Encoded still photo returned by the camera."""
    data: bytes
    width: int
    height: int
    format: str = "JPEG"


class CameraHandler:
    """
    Scanner camera on /dev/videoN.
    The device is held exclusively from initialize() until release().
    """

    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Stale frames are dropped, never queued
    }

    # Config key -> capture property
    PROPERTIES = (
        ('width', cv2.CAP_PROP_FRAME_WIDTH),
        ('height', cv2.CAP_PROP_FRAME_HEIGHT),
        ('fps', cv2.CAP_PROP_FPS),
        ('buffer_size', cv2.CAP_PROP_BUFFERSIZE),
    )

    def __init__(self, camera_index: int = 0, config: Optional[dict] = None):
        """
        Args:
            camera_index: V4L2 device index (0 for /dev/video0)
            config: Overrides for DEFAULT_CONFIG
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self._capture: Optional[cv2.VideoCapture] = None
        self.resolution: Tuple[int, int] = (0, 0)

        logger.info(f"CameraHandler created for {self.device_path}")

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def _check_device(self):
        """Raise a typed error when the device is missing or not accessible."""
        if not os.path.exists(self.device_path):
            logger.error(f"No camera at {self.device_path}")
            raise DeviceUnavailableError(self.device_path)

        if not os.access(self.device_path, os.R_OK | os.W_OK):
            logger.error(f"No read/write access to {self.device_path}")
            raise PermissionDeniedError(self.device_path, reason="device not readable/writable")

    def initialize(self) -> bool:
        """
        Open the device and apply the configuration.

        Raises:
            DeviceUnavailableError: no such device
            PermissionDeniedError: device not accessible
            DeviceBusyError: device present but could not be opened
        """
        if self._capture is not None:
            return True

        self._check_device()
        logger.info(f"Opening {self.device_path}")

        capture = None
        try:
            capture = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
            if not capture.isOpened():
                capture.release()
                raise DeviceBusyError(self.device_path, reason="open failed")

            capture.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*self.config['codec']))
            for key, prop in self.PROPERTIES:
                capture.set(prop, self.config[key])
        except cv2.error as e:
            logger.error(f"Opening {self.device_path} failed: {e}")
            if capture is not None:
                capture.release()
            raise DeviceBusyError(self.device_path, reason=str(e))

        self._capture = capture
        self.resolution = (
            int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        logger.info(f"{self.device_path} streaming at {self.resolution[0]}x{self.resolution[1]}")
        return True

    def _read(self) -> np.ndarray:
        if self._capture is None:
            raise CameraNotInitializedError()

        try:
            ok, image = self._capture.read()
        except cv2.error as e:
            raise FrameCaptureError(reason=f"read failed: {e}")
        if not ok or image is None:
            raise FrameCaptureError(reason="camera returned no frame")
        return image

    def get_frame(self) -> Frame:
        """
        Next preview frame as RGBA.

        Raises:
            CameraNotInitializedError: initialize() not called
            FrameCaptureError: the device delivered nothing
        """
        return Frame.from_bgr(self._read())

    def capture_photo(self, request: Optional[PhotoRequest] = None) -> Photo:
        """
        Full-resolution still, JPEG encoded at the requested quality.

        A USB camera has no platform editor or gallery, so the editing and
        gallery flags of the request have no effect here.
        """
        request = request or PhotoRequest()
        quality = int(min(max(request.quality, 0), 100))

        image = self._read()
        try:
            ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, quality])
        except cv2.error as e:
            raise FrameCaptureError(reason=f"JPEG encoding of still photo failed: {e}")
        if not ok:
            raise FrameCaptureError(reason="JPEG encoding of still photo failed")

        h, w = image.shape[:2]
        logger.info(f"Still photo {w}x{h} at quality {quality}")
        return Photo(data=buffer.tobytes(), width=w, height=h)

    def is_opened(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    def release(self):
        """Stop the stream and free the device."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"{self.device_path} released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
