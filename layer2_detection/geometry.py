"""
Layer 2 — Geometry Utilities
Polygon area, perimeter and convex hull over point sequences.
"""
import math
from typing import List, Sequence, Tuple

import numpy as np

PointLike = Tuple[float, float]


def _as_array(points: Sequence[PointLike]) -> np.ndarray:
    return np.asarray(points, dtype=np.float64).reshape(-1, 2)


def polygon_area(points: Sequence[PointLike]) -> float:
    """
    Shoelace area of a closed point sequence.

    Returns the absolute value, so the result is the same for clockwise and
    counter-clockwise order and for any cyclic rotation of the sequence.
    """
    if len(points) < 3:
        return 0.0
    pts = _as_array(points)
    x, y = pts[:, 0], pts[:, 1]
    x_next, y_next = np.roll(x, -1), np.roll(y, -1)
    return float(abs(np.sum(x * y_next - x_next * y)) / 2.0)


def perimeter(points: Sequence[PointLike]) -> float:
    """Sum of Euclidean distances between consecutive points, closing the loop."""
    if len(points) < 2:
        return 0.0
    pts = _as_array(points)
    deltas = np.roll(pts, -1, axis=0) - pts
    return float(np.sum(np.hypot(deltas[:, 0], deltas[:, 1])))


def cross(o: PointLike, a: PointLike, b: PointLike) -> float:
    """Z component of (a - o) x (b - o); positive for a left turn."""
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Sequence[PointLike]) -> List[PointLike]:
    """
    Convex hull by Andrew's monotone chain.

    Points are sorted by (x, y); each chain pops its last point while the
    last three make a non-left turn (cross <= 0). Both the lower and the
    upper chain are built, so the result encloses the whole point set.

    Returns:
        list: Hull vertices without repetition; inputs of 3 or fewer points
        are returned as-is.
    """
    pts = sorted(set((p[0], p[1]) for p in points))
    if len(pts) <= 3:
        return pts

    lower = []
    for p in pts:
        while len(lower) >= 2 and cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper = []
    for p in reversed(pts):
        while len(upper) >= 2 and cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    return lower[:-1] + upper[:-1]


def order_by_angle(points: Sequence[PointLike]) -> List[PointLike]:
    """
    Order a point set by polar angle around its centroid (ties by distance).

    Turns an unordered set of boundary pixels into a star-shaped polygon
    whose shoelace area and perimeter follow the outline.
    """
    if len(points) < 3:
        return list(points)
    pts = _as_array(points)
    centroid = pts.mean(axis=0)
    d = pts - centroid
    angles = np.arctan2(d[:, 1], d[:, 0])
    dist = np.hypot(d[:, 0], d[:, 1])
    order = np.lexsort((dist, angles))
    return [points[i] for i in order.tolist()]


def compactness(area: float, length: float) -> float:
    """Isoperimetric ratio 4*pi*area / perimeter^2 (1.0 for a circle)."""
    if length <= 0:
        return 0.0
    return 4.0 * math.pi * area / (length * length)
