"""
Layer 4 — Filters
Named adjustments applied to a finished document: the review filters a
user can pick after capture, and the per-mode presets applied while
scanning documents, ID cards or whiteboards.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from error_handlers import InvalidConfigError

logger = logging.getLogger(__name__)

# Filtered documents are re-encoded at this lossy quality
FILTER_OUTPUT_QUALITY = 0.8

SHARPEN_KERNEL = np.array([
    [0, -1, 0],
    [-1, 5, -1],
    [0, -1, 0],
], dtype=np.float32)


@dataclass(frozen=True)
class Adjustment:
    """Colour adjustment factors; 1.0 leaves a channel property unchanged."""
    contrast: float = 1.0
    brightness: float = 1.0
    saturation: float = 1.0


PRESETS = {
    'document': Adjustment(contrast=1.2, brightness=1.1),
    'id': Adjustment(contrast=1.3, brightness=1.05, saturation=1.1),
    'whiteboard': Adjustment(contrast=1.4, brightness=0.9, saturation=1.2),
}


def _on_color(image: np.ndarray, fn: Callable[[np.ndarray], np.ndarray]) -> np.ndarray:
    """Run fn on the colour channels; an alpha channel is carried over untouched."""
    if image.ndim == 2 or image.shape[2] == 3:
        return fn(image)
    result = image.copy()
    result[..., :3] = fn(np.ascontiguousarray(image[..., :3]))
    return result


def adjust_contrast(image: np.ndarray, factor: float) -> np.ndarray:
    """Scale distances from mid-gray: v' = (v - 127.5) * factor + 127.5."""
    return _on_color(image, lambda img: cv2.addWeighted(img, factor, img, 0, 127.5 * (1.0 - factor)))


def adjust_brightness(image: np.ndarray, factor: float) -> np.ndarray:
    return _on_color(image, lambda img: cv2.convertScaleAbs(img, alpha=factor))


def adjust_saturation(image: np.ndarray, factor: float) -> np.ndarray:
    """Scale the HSV saturation channel. Grayscale input has none and is copied."""
    if image.ndim == 2:
        return image.copy()

    def saturate(bgr):
        hue, sat, val = cv2.split(cv2.cvtColor(bgr, cv2.COLOR_BGR2HSV))
        sat = cv2.convertScaleAbs(sat, alpha=factor)
        return cv2.cvtColor(cv2.merge([hue, sat, val]), cv2.COLOR_HSV2BGR)

    return _on_color(image, saturate)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Gray in every colour channel, so the result keeps the input layout."""
    if image.ndim == 2:
        return image.copy()
    return _on_color(image, lambda img: cv2.cvtColor(cv2.cvtColor(img, cv2.COLOR_BGR2GRAY), cv2.COLOR_GRAY2BGR))


def sharpen(image: np.ndarray) -> np.ndarray:
    return _on_color(image, lambda img: cv2.filter2D(img, -1, SHARPEN_KERNEL))


def blur(image: np.ndarray, sigma: float = 1.0) -> np.ndarray:
    return _on_color(image, lambda img: cv2.GaussianBlur(img, (0, 0), sigmaX=sigma))


FILTERS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'none': lambda image: image.copy(),
    'grayscale': to_grayscale,
    'contrast': lambda image: adjust_contrast(image, 1.5),
    'brightness': lambda image: adjust_brightness(image, 1.1),
    'sharpen': sharpen,
    'blur': blur,
}


def validate_filter(name: str) -> str:
    if name not in FILTERS:
        raise InvalidConfigError('filter', name, f"one of {sorted(FILTERS)}")
    return name


def apply_filter(image: np.ndarray, name: str) -> np.ndarray:
    """
    Apply one of the review filters by name.

    Raises:
        InvalidConfigError: Unknown filter name
    """
    fn = FILTERS[validate_filter(name)]
    logger.debug(f"Filter applied: {name}")
    return fn(image)


def apply_adjustment(image: np.ndarray, adjustment: Adjustment) -> np.ndarray:
    """Contrast, then brightness, then saturation; unit factors are skipped."""
    result = image
    if adjustment.contrast != 1.0:
        result = adjust_contrast(result, adjustment.contrast)
    if adjustment.brightness != 1.0:
        result = adjust_brightness(result, adjustment.brightness)
    if adjustment.saturation != 1.0:
        result = adjust_saturation(result, adjustment.saturation)
    return result.copy() if result is image else result


def validate_mode(mode: Optional[str]) -> Optional[str]:
    """Return the scan mode, None for no preset; raise InvalidConfigError if unknown."""
    if mode is None or mode == 'none':
        return None
    if mode not in PRESETS:
        raise InvalidConfigError('mode', mode, f"one of {sorted(PRESETS)} or 'none'")
    return mode


def apply_preset(image: np.ndarray, mode: Optional[str]) -> np.ndarray:
    """
    Apply the enhancement preset of a scan mode.

    Raises:
        InvalidConfigError: Unknown mode
    """
    mode = validate_mode(mode)
    if mode is None:
        return image.copy()
    logger.debug(f"Preset applied: {mode}")
    return apply_adjustment(image, PRESETS[mode])
