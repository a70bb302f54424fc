"""
Layer 3 — Preview Overlay
Draws the detected outline and a quality bar on a preview image.
"""
import cv2
import numpy as np

# BGR
GREEN = (0, 255, 0)
YELLOW = (0, 255, 255)
RED = (0, 0, 255)
BLACK = (0, 0, 0)
WHITE = (255, 255, 255)

DASH = 10
GAP = 5
BAR_WIDTH = 100
BAR_HEIGHT = 10


def _dashed_line(image, p1, p2, color, thickness):
    p1 = np.asarray(p1, dtype=np.float64)
    p2 = np.asarray(p2, dtype=np.float64)
    length = float(np.linalg.norm(p2 - p1))
    if length == 0:
        return
    direction = (p2 - p1) / length

    pos = 0.0
    while pos < length:
        end = min(pos + DASH, length)
        a = p1 + direction * pos
        b = p1 + direction * end
        cv2.line(image, (int(round(a[0])), int(round(a[1]))),
                 (int(round(b[0])), int(round(b[1]))), color, thickness, cv2.LINE_AA)
        pos = end + GAP


def draw_detection_overlay(image, analysis, threshold):
    """
    Draw detection feedback on a copy of a BGR preview image.

    Args:
        image: BGR image the analysis was computed from (any scale)
        analysis: FrameAnalysis or None
        threshold: Quality threshold; the outline is green above it, yellow otherwise

    Returns:
        numpy.ndarray: Annotated copy (unchanged copy without a candidate)
    """
    overlay = image.copy()
    if analysis is None or analysis.candidate is None:
        return overlay

    h, w = overlay.shape[:2]
    sx = w / analysis.width
    sy = h / analysis.height
    corners = [(p.x * sx, p.y * sy) for p in analysis.candidate.corners]

    quality = analysis.quality.score
    color = GREEN if quality > threshold else YELLOW

    for i, start in enumerate(corners):
        _dashed_line(overlay, start, corners[(i + 1) % len(corners)], color, 3)

    for x, y in corners:
        cv2.circle(overlay, (int(round(x)), int(round(y))), 5, RED, -1)

    # Quality bar with percentage
    cv2.rectangle(overlay, (10, 10), (10 + BAR_WIDTH + 4, 10 + BAR_HEIGHT + 4), BLACK, -1)
    fill = int(BAR_WIDTH * quality) - 4
    if fill > 0:
        cv2.rectangle(overlay, (12, 12), (12 + fill, 12 + BAR_HEIGHT), color, -1)
    cv2.putText(overlay, f"{round(quality * 100)}%", (12, 22),
                cv2.FONT_HERSHEY_SIMPLEX, 0.4, WHITE, 1, cv2.LINE_AA)

    return overlay
