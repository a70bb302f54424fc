"""
Layer 2 — Document Detector
Runs luminance -> edges -> contours -> candidate selection -> corners on
one frame. Stateless: the same frame and config always give the same result.
"""
import logging
from typing import Optional

from layer1_capture import Frame
from .candidate import DocumentCandidate, contour_confidence, refine_corners, select_best_contour
from .config import DetectionConfig
from .contours import find_contours
from .edges import detect_edges
from .luminance import to_luminance

logger = logging.getLogger(__name__)


class DocumentDetector:
    """Locates the most document-like quadrilateral in a frame."""

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()
        logger.debug(f"DocumentDetector config: {self.config}")

    def detect(self, frame: Frame) -> Optional[DocumentCandidate]:
        """
        Detect a document in the frame.

        Args:
            frame: RGBA frame

        Returns:
            DocumentCandidate, or None when nothing document-like is found
        """
        gray = to_luminance(frame)
        edges = detect_edges(gray, self.config.edge_threshold)
        contours = find_contours(edges)

        if not contours:
            logger.debug("No contours found")
            return None

        selected = select_best_contour(contours, frame.width, frame.height, self.config)
        if selected is None:
            logger.debug(f"No document-like contour among {len(contours)}")
            return None

        contour, metrics = selected
        corners = refine_corners(contour, self.config.corner_threshold, metrics.hull_area)

        candidate = DocumentCandidate(
            corners=tuple(corners),
            contour=tuple(contour),
            confidence=contour_confidence(metrics),
            score=metrics.score,
            normalized_area=metrics.normalized_area,
        )
        logger.debug(
            f"Document candidate: score {metrics.score:.3f}, "
            f"area {metrics.normalized_area * 100:.1f}%, corners {candidate.corners}"
        )
        return candidate
