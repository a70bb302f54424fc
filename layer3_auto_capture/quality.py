"""
Layer 3 — Quality Assessment
Capture-readiness metrics for a preview frame.
Evaluates brightness, contrast and sharpness, each normalised to [0, 1].
"""
import cv2
import numpy as np
import logging
from typing import Dict, Optional, Tuple
from dataclasses import dataclass

from layer1_capture import Frame
from layer2_detection import luminance, to_luminance

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return float(min(max(value, 0.0), 1.0))


@dataclass(frozen=True)
class QualityMetrics:
    """Container for image quality metrics, all in [0, 1]."""
    brightness: float   # Mean luminance / 255
    contrast: float     # Population std of luminance / 255
    sharpness: float    # Mean absolute Laplacian / 100, capped
    score: float        # Weighted combined score

    def __post_init__(self):
        for name in ('brightness', 'contrast', 'sharpness', 'score'):
            object.__setattr__(self, name, _clamp(getattr(self, name)))

    @classmethod
    def zero(cls) -> "QualityMetrics":
        return cls(brightness=0.0, contrast=0.0, sharpness=0.0, score=0.0)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'brightness': round(self.brightness, 4),
            'contrast': round(self.contrast, 4),
            'sharpness': round(self.sharpness, 4),
            'score': round(self.score, 4)
        }


class QualityAssessor:
    """
    Frame quality assessment.
    Operates on the whole frame, independently of the detected contour.
    """

    # Weights for overall score calculation
    WEIGHTS = {
        'brightness': 0.3,
        'contrast': 0.4,
        'sharpness': 0.3,
    }

    # Sum of |Laplacian| is divided by width * height * SHARPNESS_SCALE
    SHARPNESS_SCALE = 100.0

    def __init__(self, weights: Optional[Dict] = None):
        """
        Initialize quality assessor.

        Args:
            weights: Optional custom weights for scoring
        """
        self.weights = {**self.WEIGHTS, **(weights or {})}
        logger.debug("QualityAssessor initialized")

    def assess(self, frame: Frame) -> QualityMetrics:
        """
        Assess frame quality.

        Args:
            frame: RGBA frame

        Returns:
            QualityMetrics: brightness, contrast, sharpness and score
        """
        luma = luminance(frame)

        brightness = self._calculate_brightness(luma)
        contrast = self._calculate_contrast(luma)
        sharpness = self._calculate_sharpness(to_luminance(frame))

        w = self.weights
        score = (
            w['brightness'] * brightness +
            w['contrast'] * contrast +
            w['sharpness'] * sharpness
        )

        return QualityMetrics(
            brightness=brightness,
            contrast=contrast,
            sharpness=sharpness,
            score=score
        )

    def _calculate_brightness(self, luma: np.ndarray) -> float:
        return float(np.mean(luma)) / 255.0

    def _calculate_contrast(self, luma: np.ndarray) -> float:
        # np.std is the population standard deviation (ddof=0)
        return float(np.std(luma)) / 255.0

    def _calculate_sharpness(self, gray: np.ndarray) -> float:
        """
        4-neighbour Laplacian (-4 center + N + S + E + W) over interior
        pixels, absolute responses summed and normalised by w * h * 100.
        """
        h, w = gray.shape[:2]
        if h < 3 or w < 3:
            return 0.0

        # ksize=1 is exactly the 4-neighbour kernel; the border is dropped
        laplacian = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[1:-1, 1:-1]
        total = float(np.sum(np.abs(laplacian)))
        return min(total / (w * h * self.SHARPNESS_SCALE), 1.0)

    def is_acceptable(self, metrics: QualityMetrics, threshold: float) -> Tuple[bool, str]:
        """
        Check if the score is above the capture threshold.

        Returns:
            Tuple of (is_acceptable, reason)
        """
        if metrics.score > threshold:
            return True, "Quality acceptable"
        return False, f"Quality {metrics.score:.2f} not above threshold {threshold:.2f}"
