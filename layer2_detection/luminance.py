"""
Layer 2 — Luminance
RGBA to grayscale with Rec. 601 weights.
"""
import numpy as np

from layer1_capture import Frame

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def luminance(frame: Frame) -> np.ndarray:
    """Unrounded luminance, float64 (H, W)."""
    return frame.data[..., :3].astype(np.float64) @ LUMA_WEIGHTS


def to_luminance(frame: Frame) -> np.ndarray:
    """
    Convert an RGBA frame to an 8-bit grayscale buffer.

    gray = round(0.299 R + 0.587 G + 0.114 B), halves rounded up.

    Args:
        frame: RGBA frame

    Returns:
        numpy.ndarray: uint8 array of shape (height, width)
    """
    gray = np.floor(luminance(frame) + 0.5)
    return np.clip(gray, 0, 255).astype(np.uint8)
