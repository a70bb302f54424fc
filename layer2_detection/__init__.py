"""
Layer 2 — Detection
Responsibility: Locate the document quadrilateral in a frame
Output: DocumentCandidate (4 corners, contour, confidence) or None
"""
from .config import DetectionConfig
from .luminance import luminance, to_luminance
from .edges import detect_edges
from .contours import Contour, Point, find_contours
from .geometry import convex_hull, order_by_angle, perimeter, polygon_area
from .candidate import (
    ContourScore,
    DocumentCandidate,
    refine_corners,
    sample_corners,
    score_contour,
    select_best_contour,
)
from .detector import DocumentDetector

__all__ = [
    'DetectionConfig',
    'luminance',
    'to_luminance',
    'detect_edges',
    'Contour',
    'Point',
    'find_contours',
    'convex_hull',
    'order_by_angle',
    'perimeter',
    'polygon_area',
    'ContourScore',
    'DocumentCandidate',
    'refine_corners',
    'sample_corners',
    'score_contour',
    'select_best_contour',
    'DocumentDetector',
]
