"""
Layer 4 — Perspective Correction
Maps the detected document quadrilateral onto an axis-aligned rectangle.
"""
import itertools
import logging
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from error_handlers import DegenerateQuadError

logger = logging.getLogger(__name__)

# Minimum |cross product| (twice the triangle area, in px^2) for three
# corners to count as non-collinear
COLLINEAR_EPSILON = 1e-6


def order_corners(pts: Sequence[Sequence[float]]) -> np.ndarray:
    """
    Order points in consistent order: top-left, top-right, bottom-right, bottom-left

    Args:
        pts: 4 points

    Returns:
        numpy.ndarray: Ordered (4, 2) float32 points
    """
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype=np.float32)

    # Sum and difference to find corners
    s = pts.sum(axis=1)
    diff = np.diff(pts, axis=1).flatten()

    rect[0] = pts[np.argmin(s)]      # Top-left (smallest sum)
    rect[2] = pts[np.argmax(s)]      # Bottom-right (largest sum)
    rect[1] = pts[np.argmin(diff)]   # Top-right (smallest y - x)
    rect[3] = pts[np.argmax(diff)]   # Bottom-left (largest y - x)

    return rect


def _check_quad(src: np.ndarray):
    if len(np.unique(src, axis=0)) < 4:
        raise DegenerateQuadError(src, "repeated corners")

    for a, b, c in itertools.combinations(range(4), 3):
        o, p, q = src[a], src[b], src[c]
        z = (p[0] - o[0]) * (q[1] - o[1]) - (p[1] - o[1]) * (q[0] - o[0])
        if abs(z) < COLLINEAR_EPSILON:
            raise DegenerateQuadError(src, f"corners {a}, {b}, {c} are collinear")


def solve_homography(src: Sequence[Sequence[float]], dst: Sequence[Sequence[float]]) -> np.ndarray:
    """
    3x3 projective transform taking four src points to four dst points.

    Raises:
        DegenerateQuadError: repeated or collinear source corners, or a
        transform OpenCV cannot solve
    """
    src = np.asarray(src, dtype=np.float32).reshape(4, 2)
    dst = np.asarray(dst, dtype=np.float32).reshape(4, 2)
    _check_quad(src)

    try:
        H = cv2.getPerspectiveTransform(src, dst)
    except cv2.error as e:
        raise DegenerateQuadError(src, f"no transform ({e})")

    if not np.all(np.isfinite(H)):
        raise DegenerateQuadError(src, "non-finite transform")
    return H


def correct_perspective(image: np.ndarray, corners: Sequence[Sequence[float]],
                        size: Optional[Tuple[int, int]] = None) -> Tuple[np.ndarray, bool]:
    """
    Apply a 4-point perspective transform to flatten the document.

    Args:
        image: Full-resolution image (any channel count)
        corners: 4 document corners in image coordinates, any order
        size: Output (width, height); defaults to the image size

    Returns:
        Tuple of (image, applied). Degenerate corners give an unmodified
        copy of the input with applied=False.
    """
    h, w = image.shape[:2]
    out_w, out_h = size or (w, h)

    dst = np.array([
        [0, 0],                       # Top-left
        [out_w - 1, 0],               # Top-right
        [out_w - 1, out_h - 1],       # Bottom-right
        [0, out_h - 1]                # Bottom-left
    ], dtype=np.float32)

    try:
        rect = order_corners(corners)
        H = solve_homography(rect, dst)
    except (DegenerateQuadError, TypeError, ValueError) as e:
        logger.warning(f"Perspective correction skipped: {e}")
        return image.copy(), False

    warped = cv2.warpPerspective(image, H, (out_w, out_h), flags=cv2.INTER_LINEAR)
    logger.debug(f"Perspective corrected: {w}x{h} -> {out_w}x{out_h}")
    return warped, True
