"""
Layer 2 — Document Candidate Selection
Scores contours for document-likeness, picks the best one and reduces it
to four corners.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import DetectionConfig
from .contours import Contour, MIN_CONTOUR_LENGTH, Point
from .geometry import compactness, convex_hull, order_by_angle, perimeter, polygon_area

logger = logging.getLogger(__name__)

MIN_CANDIDATE_SCORE = 0.5

# Weights for the document-likeness score
WEIGHTS = {
    'rectangularity': 0.4,
    'compactness': 0.3,
    'normalized_area': 0.3,
}


@dataclass(frozen=True)
class ContourScore:
    """Shape metrics of one contour."""
    area: float
    hull_area: float
    rectangularity: float
    compactness: float
    normalized_area: float
    score: float


@dataclass(frozen=True)
class DocumentCandidate:
    """Best document outline of a frame."""
    corners: Tuple[Point, Point, Point, Point]
    contour: Tuple[Point, ...]
    confidence: float
    score: float
    normalized_area: float

    def __post_init__(self):
        if len(self.corners) != 4:
            raise ValueError(f"DocumentCandidate needs exactly 4 corners, got {len(self.corners)}")

    def to_dict(self) -> Dict:
        return {
            'corners': [[int(p.x), int(p.y)] for p in self.corners],
            'confidence': round(self.confidence, 4),
            'score': round(self.score, 4),
            'normalized_area': round(self.normalized_area, 4),
            'contour_length': len(self.contour),
        }


def score_contour(contour: Contour, width: int, height: int,
                  config: DetectionConfig) -> Optional[ContourScore]:
    """
    Score one contour.

    Area and perimeter are measured on the contour ordered by angle around
    its centroid; the hull is taken over the raw point set.

    Returns:
        ContourScore, or None when the area is outside the configured
        document size range.
    """
    if len(contour) < MIN_CONTOUR_LENGTH:
        return None

    frame_area = float(width * height)
    outline = order_by_angle(contour)
    area = polygon_area(outline)

    if area < config.min_document_size * frame_area or area > config.max_document_size * frame_area:
        return None

    hull_area = polygon_area(convex_hull(contour))
    rectangularity = area / hull_area if hull_area > 0 else 0.0
    compact = compactness(area, perimeter(outline))
    normalized_area = area / frame_area

    score = (
        WEIGHTS['rectangularity'] * rectangularity +
        WEIGHTS['compactness'] * compact +
        WEIGHTS['normalized_area'] * normalized_area
    )

    return ContourScore(
        area=area,
        hull_area=hull_area,
        rectangularity=rectangularity,
        compactness=compact,
        normalized_area=normalized_area,
        score=min(max(score, 0.0), 1.0),
    )


def select_best_contour(contours: Sequence[Contour], width: int, height: int,
                        config: DetectionConfig) -> Optional[Tuple[Contour, ContourScore]]:
    """
    Pick the highest-scoring contour.

    Ties keep the earlier contour. Nothing is returned unless the best score
    is strictly above 0.5.
    """
    best = None
    best_score = None

    for contour in contours:
        metrics = score_contour(contour, width, height, config)
        if metrics is None:
            continue
        if best_score is None or metrics.score > best_score.score:
            best, best_score = contour, metrics

    if best is None or best_score.score <= MIN_CANDIDATE_SCORE:
        return None

    return best, best_score


def sample_corners(contour: Contour) -> List[Point]:
    """Points at indices 0, L/4, 2L/4 and 3L/4 of the contour."""
    step = len(contour) // 4
    return [contour[i * step] for i in range(4)]


def refine_corners(contour: Contour, corner_threshold: float = 0.3,
                   hull_area: Optional[float] = None) -> List[Point]:
    """
    Reduce a contour to four corners.

    Takes the extremal points of the set: top-left (min x+y), top-right
    (max x-y), bottom-right (max x+y) and bottom-left (max y-x). When that
    quadrilateral covers less than corner_threshold of the hull area the
    corners are sampled at equal intervals along the contour instead.

    Returns:
        list: Four Points
    """
    pts = np.asarray(contour, dtype=np.int64)
    s = pts[:, 0] + pts[:, 1]
    d = pts[:, 0] - pts[:, 1]

    corners = [contour[int(i)] for i in (np.argmin(s), np.argmax(d), np.argmax(s), np.argmin(d))]

    if hull_area is None:
        hull_area = polygon_area(convex_hull(contour))

    if hull_area <= 0 or polygon_area(corners) < corner_threshold * hull_area:
        logger.debug("Extremal corners collapse, sampling contour at equal intervals")
        return sample_corners(contour)

    return corners


def contour_confidence(metrics: ContourScore) -> float:
    """min(normalized_area * compactness * 2, 1)."""
    return min(metrics.normalized_area * metrics.compactness * 2.0, 1.0)
