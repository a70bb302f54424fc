"""
Layer 2 — Contour Tracing
Connected-component extraction over a binary edge map.

Each contour is every pixel of one 8-connected edge region, in depth-first
discovery order. It is not a boundary walk: consecutive points are not
guaranteed to be neighbours on the document outline.
"""
from typing import List, NamedTuple

import numpy as np

MIN_CONTOUR_LENGTH = 5

# Pushed in this order, so the last one (north-west) is explored first
NEIGHBOURS = (
    (0, -1), (1, -1), (1, 0), (1, 1),
    (0, 1), (-1, 1), (-1, 0), (-1, -1),
)


class Point(NamedTuple):
    x: int
    y: int


Contour = List[Point]


def _trace(edge: bytearray, visited: bytearray, start: int, width: int, height: int) -> Contour:
    contour = []
    stack = [start]

    while stack:
        idx = stack.pop()
        if visited[idx]:
            continue

        visited[idx] = 1
        y, x = divmod(idx, width)
        contour.append(Point(x, y))

        for dx, dy in NEIGHBOURS:
            nx, ny = x + dx, y + dy
            if 0 <= nx < width and 0 <= ny < height:
                n = ny * width + nx
                if edge[n] and not visited[n]:
                    stack.append(n)

    return contour


def find_contours(edges: np.ndarray, min_length: int = MIN_CONTOUR_LENGTH) -> List[Contour]:
    """
    Extract one contour per connected edge region.

    Pixels are scanned in row-major order; each unvisited edge pixel seeds an
    explicit-stack depth-first walk over its 8 neighbours. Regions shorter
    than min_length are discarded.

    Args:
        edges: uint8 array (H, W), non-zero = edge
        min_length: Smallest contour kept (default 5)

    Returns:
        list: Contours (lists of Point)
    """
    height, width = edges.shape[:2]
    mask = edges.ravel() > 0
    edge = bytearray(mask.astype(np.uint8).tobytes())
    visited = bytearray(width * height)

    contours = []
    for start in np.flatnonzero(mask).tolist():
        if visited[start]:
            continue
        contour = _trace(edge, visited, start, width, height)
        if len(contour) >= min_length:
            contours.append(contour)

    return contours
