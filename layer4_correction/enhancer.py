"""
Layer 4 — Auto Enhancer
Global contrast/brightness normalisation of the corrected document,
followed by encoding for hand-off.
"""
import cv2
import numpy as np
import logging
from typing import Dict, Optional
from dataclasses import dataclass

from error_handlers import ImageEncodeError
from .filters import apply_preset, validate_mode

logger = logging.getLogger(__name__)

# BGR/BGRA order, as produced by cv2.imdecode
LUMA_WEIGHTS_BGR = np.array([0.114, 0.587, 0.299], dtype=np.float64)


@dataclass(frozen=True)
class EnhancementConfig:
    """Configuration for auto enhancement and output encoding."""
    gain: float = 1.1               # Applied after the min/max stretch
    output_format: str = ".jpg"     # .jpg, .jpeg, .webp or .png
    output_quality: float = 0.9     # Lossy quality, 0.0 - 1.0


class AutoEnhancer:
    """
    Stretches the luminance range of an image to 0-255.

    Every colour channel is rescaled with the same global luminance min/max:
        v' = clamp((v - min) / (max - min) * 255 * gain, 0, 255)
    Flat images (max == min) skip the stretch. A scan-mode preset from
    filters.PRESETS can follow it.
    """

    def __init__(self, config: Optional[EnhancementConfig] = None):
        """
        Initialize enhancer.

        Args:
            config: Enhancement configuration (defaults if None)
        """
        self.config = config or EnhancementConfig()
        self._enhancement_stats = {
            'images_processed': 0,
            'images_stretched': 0,
            'images_flat': 0,
            'presets_applied': 0,
        }

        logger.info("AutoEnhancer initialized")
        logger.debug(f"Enhancer config: {self.config}")

    def enhance(self, image: np.ndarray, preset: Optional[str] = None) -> np.ndarray:
        """
        Apply the luminance stretch, then the scan-mode preset if one is given.

        Args:
            image: uint8 BGR or BGRA image (grayscale is stretched directly)
            preset: Scan mode whose adjustment follows the stretch

        Returns:
            numpy.ndarray: Enhanced copy, same shape and dtype

        Raises:
            InvalidConfigError: Unknown preset
        """
        preset = validate_mode(preset)
        self._enhancement_stats['images_processed'] += 1

        result = self._stretch(image)
        if preset is not None:
            result = apply_preset(result, preset)
            self._enhancement_stats['presets_applied'] += 1
        return result

    def _stretch(self, image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            luma = image.astype(np.float64)
        else:
            luma = image[..., :3].astype(np.float64) @ LUMA_WEIGHTS_BGR

        lo, hi = float(luma.min()), float(luma.max())
        if hi == lo:
            self._enhancement_stats['images_flat'] += 1
            logger.debug("Flat image, stretch skipped")
            return image.copy()

        scale = 255.0 * self.config.gain / (hi - lo)
        result = image.copy()
        channels = result if image.ndim == 2 else result[..., :3]
        stretched = (channels.astype(np.float64) - lo) * scale
        channels[...] = np.clip(np.rint(stretched), 0, 255).astype(np.uint8)

        self._enhancement_stats['images_stretched'] += 1
        logger.debug(f"Luminance stretched from [{lo:.1f}, {hi:.1f}]")
        return result

    def encode(self, image: np.ndarray, fmt: Optional[str] = None, quality: Optional[float] = None) -> bytes:
        """
        Encode the image for hand-off.

        Args:
            image: uint8 image
            fmt: Output extension; defaults to config.output_format
            quality: Lossy quality 0.0 - 1.0; defaults to config.output_quality

        Returns:
            bytes: Encoded image

        Raises:
            ImageEncodeError: Unsupported format or encoder failure
        """
        fmt = (fmt or self.config.output_format).lower()
        quality = self.config.output_quality if quality is None else quality
        quality = int(round(min(max(quality, 0.0), 1.0) * 100))

        if fmt in ('.jpg', '.jpeg'):
            params = [cv2.IMWRITE_JPEG_QUALITY, quality]
            if image.ndim == 3 and image.shape[2] == 4:
                image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        elif fmt == '.webp':
            params = [cv2.IMWRITE_WEBP_QUALITY, quality]
        elif fmt == '.png':
            params = []
        else:
            raise ImageEncodeError(fmt, reason="unsupported format")

        try:
            ok, buffer = cv2.imencode(fmt, image, params)
        except cv2.error as e:
            raise ImageEncodeError(fmt, reason=str(e))
        if not ok:
            raise ImageEncodeError(fmt, reason="encoder returned no data")
        return buffer.tobytes()

    def process(self, image: np.ndarray, preset: Optional[str] = None) -> bytes:
        """Enhance and encode in one step."""
        return self.encode(self.enhance(image, preset))

    def get_stats(self) -> Dict:
        """Get processing statistics."""
        return dict(self._enhancement_stats)
