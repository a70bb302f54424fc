"""
Layer 1 — Frame
Immutable RGBA pixel buffer handed from the camera to the pipeline.
"""
import cv2
import numpy as np
from dataclasses import dataclass
from typing import Tuple, Union

from error_handlers import InvalidFrameError


@dataclass(frozen=True)
class Frame:
    """One camera frame: width, height and an (H, W, 4) uint8 RGBA buffer."""
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        if self.data is None:
            raise InvalidFrameError("no pixel buffer")
        if self.width <= 0 or self.height <= 0:
            raise InvalidFrameError(f"zero-size frame {self.width}x{self.height}")
        if self.data.shape != (self.height, self.width, 4) or self.data.dtype != np.uint8:
            raise InvalidFrameError(
                f"expected uint8 buffer of shape {(self.height, self.width, 4)}, "
                f"got {self.data.dtype} {self.data.shape}"
            )
        # Frames are borrowed by the pipeline; nothing downstream may write to them
        self.data.setflags(write=False)

    @property
    def area(self) -> int:
        return self.width * self.height

    @classmethod
    def from_rgba(cls, buffer: Union[bytes, bytearray, np.ndarray], width: int, height: int) -> "Frame":
        """Build a frame from a raw RGBA buffer (4 bytes per pixel, row-major)."""
        if buffer is None:
            raise InvalidFrameError("no pixel buffer")
        if width <= 0 or height <= 0:
            raise InvalidFrameError(f"zero-size frame {width}x{height}")

        arr = np.frombuffer(buffer, dtype=np.uint8) if isinstance(buffer, (bytes, bytearray)) \
            else np.asarray(buffer, dtype=np.uint8)
        if arr.size != width * height * 4:
            raise InvalidFrameError(
                f"buffer holds {arr.size} bytes, expected {width * height * 4}"
            )
        return cls(width=width, height=height, data=arr.reshape(height, width, 4).copy())

    @classmethod
    def from_bgr(cls, image: np.ndarray) -> "Frame":
        """Build a frame from an OpenCV image (gray, BGR or BGRA)."""
        if image is None or image.size == 0:
            raise InvalidFrameError("empty image")

        if image.ndim == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        elif image.shape[2] == 3:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
        elif image.shape[2] == 4:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
        else:
            raise InvalidFrameError(f"unsupported channel count {image.shape[2]}")

        h, w = rgba.shape[:2]
        return cls(width=w, height=h, data=rgba)

    def to_bgr(self) -> np.ndarray:
        """Return a writable BGR copy for OpenCV drawing/encoding."""
        return cv2.cvtColor(self.data, cv2.COLOR_RGBA2BGR)

    def scaled(self, max_width: int) -> Tuple["Frame", float]:
        """
        Downscale so that width <= max_width.

        Returns:
            Tuple of (frame, scale) where scale = new_width / original_width.
            The frame itself is returned when no resize is needed.
        """
        if not max_width or self.width <= max_width:
            return self, 1.0

        scale = max_width / self.width
        new_w = max_width
        new_h = max(1, int(round(self.height * scale)))
        resized = cv2.resize(self.data, (new_w, new_h), interpolation=cv2.INTER_AREA)
        return Frame(width=new_w, height=new_h, data=resized), scale
