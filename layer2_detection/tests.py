"""
Tests for Layer 2: luminance, edges, contours, geometry and detection.
"""
import numpy as np
import pytest

from error_handlers import InvalidConfigError
from layer1_capture import Frame
from layer2_detection import (
    DetectionConfig,
    DocumentCandidate,
    DocumentDetector,
    Point,
    convex_hull,
    detect_edges,
    find_contours,
    perimeter,
    polygon_area,
    refine_corners,
    sample_corners,
    score_contour,
    select_best_contour,
    to_luminance,
)


def rect_edge_set():
    """Edge pixels of the white rectangle over rows 10-89, columns 20-79."""
    expected = set()
    for x in range(19, 81):
        for y in (9, 10, 89, 90):
            expected.add((x, y))
    for y in range(9, 91):
        for x in (19, 20, 79, 80):
            expected.add((x, y))
    return expected


class TestLuminance:
    """Test RGBA to grayscale conversion."""

    def test_gray_values_preserved(self):
        data = np.zeros((1, 3, 4), dtype=np.uint8)
        data[0, :, :3] = np.array([0, 128, 255])[:, None]
        gray = to_luminance(Frame(width=3, height=1, data=data))
        assert gray.tolist() == [[0, 128, 255]]

    def test_weights(self):
        data = np.zeros((1, 3, 4), dtype=np.uint8)
        data[0, 0, 0] = 255   # R -> 76.245
        data[0, 1, 1] = 255   # G -> 149.685
        data[0, 2, 2] = 255   # B -> 29.07
        gray = to_luminance(Frame(width=3, height=1, data=data))
        assert gray.tolist() == [[76, 150, 29]]

    def test_alpha_ignored(self):
        data = np.zeros((2, 2, 4), dtype=np.uint8)
        data[..., 3] = 17
        gray = to_luminance(Frame(width=2, height=2, data=data))
        assert not gray.any()


class TestEdges:
    """Test Sobel edge detection."""

    def test_rectangle_edge_set(self, rect_frame):
        edges = detect_edges(to_luminance(rect_frame), 100)
        ys, xs = np.nonzero(edges)
        assert set(zip(xs.tolist(), ys.tolist())) == rect_edge_set()
        assert set(np.unique(edges).tolist()) == {0, 255}

    def test_border_never_edge(self):
        gray = np.zeros((10, 10), dtype=np.uint8)
        gray[:, 5:] = 255
        edges = detect_edges(gray, 100)
        assert not edges[0, :].any()
        assert not edges[-1, :].any()
        assert not edges[:, 0].any()
        assert not edges[:, -1].any()
        assert edges[1:-1, 4:6].all()

    def test_flat_image_has_no_edges(self):
        assert not detect_edges(np.full((20, 20), 200, dtype=np.uint8), 100).any()

    def test_tiny_image(self):
        edges = detect_edges(np.full((2, 2), 255, dtype=np.uint8), 100)
        assert edges.shape == (2, 2)
        assert not edges.any()


class TestContours:
    """Test connected edge tracing."""

    def test_rectangle_single_contour(self, rect_frame):
        edges = detect_edges(to_luminance(rect_frame), 100)
        contours = find_contours(edges)
        assert len(contours) == 1
        assert len(contours[0]) == 560
        assert set((p.x, p.y) for p in contours[0]) == rect_edge_set()

    def test_contour_starts_at_first_row_major_pixel(self, rect_frame):
        edges = detect_edges(to_luminance(rect_frame), 100)
        assert find_contours(edges)[0][0] == Point(19, 9)

    def test_small_components_discarded(self):
        edges = np.zeros((10, 10), dtype=np.uint8)
        edges[2, 2:6] = 255     # 4 pixels
        edges[7, 1:8] = 255     # 7 pixels
        contours = find_contours(edges)
        assert len(contours) == 1
        assert len(contours[0]) == 7

    def test_diagonal_pixels_connected(self):
        edges = np.zeros((8, 8), dtype=np.uint8)
        for i in range(1, 7):
            edges[i, i] = 255
        contours = find_contours(edges)
        assert len(contours) == 1
        assert len(contours[0]) == 6

    def test_depth_first_order(self):
        edges = np.zeros((5, 8), dtype=np.uint8)
        edges[2, 1:7] = 255
        contour = find_contours(edges)[0]
        assert contour == [Point(x, 2) for x in range(1, 7)]

    def test_empty_map(self):
        assert find_contours(np.zeros((5, 5), dtype=np.uint8)) == []


class TestGeometry:
    """Test polygon helpers."""

    SQUARE = [(0, 0), (4, 0), (4, 4), (0, 4)]

    def test_area_of_square(self):
        assert polygon_area(self.SQUARE) == 16.0

    def test_area_orientation_invariant(self):
        assert polygon_area(list(reversed(self.SQUARE))) == 16.0

    def test_area_rotation_invariant(self):
        poly = [(1, 1), (7, 2), (6, 8), (2, 6), (0, 3)]
        expected = polygon_area(poly)
        for shift in range(len(poly)):
            assert polygon_area(poly[shift:] + poly[:shift]) == pytest.approx(expected)

    def test_area_degenerate(self):
        assert polygon_area([(0, 0), (1, 1)]) == 0.0

    def test_perimeter_closes_loop(self):
        assert perimeter(self.SQUARE) == 16.0
        assert perimeter([(0, 0), (3, 4)]) == 10.0

    def test_convex_hull_drops_interior(self):
        points = self.SQUARE + [(2, 2), (1, 3), (2, 0)]
        hull = convex_hull(points)
        assert set(hull) == set(self.SQUARE)
        assert polygon_area(hull) == 16.0

    def test_convex_hull_small_input(self):
        assert convex_hull([(1, 1), (0, 0), (1, 1)]) == [(0, 0), (1, 1)]

    def test_rectangle_rectangularity(self):
        rect = [(0, 0), (10, 0), (10, 5), (0, 5)]
        assert polygon_area(rect) / polygon_area(convex_hull(rect)) == 1.0


class TestCandidateSelection:
    """Test contour scoring and corner refinement."""

    def test_rectangle_scores_above_threshold(self, rect_frame):
        contour = find_contours(detect_edges(to_luminance(rect_frame), 100))[0]
        metrics = score_contour(contour, 100, 100, DetectionConfig())
        assert metrics is not None
        assert metrics.score > 0.5
        assert 0.9 < metrics.rectangularity <= 1.0
        assert 0.4 < metrics.normalized_area < 0.6

    def test_too_small_contour_rejected(self):
        contour = [Point(x, y) for x, y in [(1, 1), (2, 1), (3, 1), (3, 2), (3, 3), (2, 3), (1, 3), (1, 2)]]
        assert score_contour(contour, 100, 100, DetectionConfig()) is None
        assert select_best_contour([contour], 100, 100, DetectionConfig()) is None

    def test_refined_corners_near_rectangle_corners(self, rect_frame):
        contour = find_contours(detect_edges(to_luminance(rect_frame), 100))[0]
        corners = refine_corners(contour)
        truth = [(20, 10), (79, 10), (79, 89), (20, 89)]
        for corner, (tx, ty) in zip(corners, truth):
            assert abs(corner.x - tx) <= 5
            assert abs(corner.y - ty) <= 5

    def test_sample_corners_equal_intervals(self):
        contour = [Point(i, 0) for i in range(20)]
        assert sample_corners(contour) == [Point(0, 0), Point(5, 0), Point(10, 0), Point(15, 0)]

    def test_collapsed_quad_falls_back_to_sampling(self):
        contour = [Point(i, i) for i in range(12)]
        corners = refine_corners(contour, corner_threshold=0.3, hull_area=10.0)
        assert corners == sample_corners(contour)

    def test_candidate_needs_four_corners(self):
        with pytest.raises(ValueError):
            DocumentCandidate(corners=(Point(0, 0),) * 3, contour=(), confidence=0.5,
                              score=0.6, normalized_area=0.3)


class TestDocumentDetector:
    """Test the full detection chain."""

    def test_detects_rectangle(self, rect_frame):
        candidate = DocumentDetector().detect(rect_frame)
        assert candidate is not None
        assert len(candidate.corners) == 4
        assert 0.0 <= candidate.confidence <= 1.0
        assert candidate.score > 0.5

    def test_black_frame_has_no_candidate(self, black_frame):
        assert DocumentDetector().detect(black_frame) is None

    def test_deterministic(self, rect_frame):
        detector = DocumentDetector()
        assert detector.detect(rect_frame) == detector.detect(rect_frame)

    def test_deterministic_across_instances(self, rect_frame):
        config = DetectionConfig()
        assert DocumentDetector(config).detect(rect_frame) == DocumentDetector(DetectionConfig()).detect(rect_frame)

    def test_to_dict(self, rect_frame):
        data = DocumentDetector().detect(rect_frame).to_dict()
        assert data['corners'][0] == [19, 9]
        assert data['contour_length'] == 560


class TestDetectionConfig:
    """Test configuration validation."""

    def test_defaults(self):
        config = DetectionConfig()
        assert config.edge_threshold == 100
        assert config.corner_threshold == 0.3
        assert config.min_document_size == 0.1
        assert config.max_document_size == 0.9
        assert config.quality_threshold == 0.7

    def test_min_above_max_rejected(self):
        with pytest.raises(InvalidConfigError):
            DetectionConfig(min_document_size=0.8, max_document_size=0.5)

    def test_threshold_out_of_range(self):
        with pytest.raises(InvalidConfigError):
            DetectionConfig(quality_threshold=1.5)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SCANNER_QUALITY_THRESHOLD", "0.4")
        monkeypatch.setenv("SCANNER_EDGE_THRESHOLD", "80")
        config = DetectionConfig.from_env()
        assert config.quality_threshold == 0.4
        assert config.edge_threshold == 80.0
        assert config.corner_threshold == 0.3

    def test_from_env_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("SCANNER_CORNER_THRESHOLD", "high")
        with pytest.raises(InvalidConfigError):
            DetectionConfig.from_env()
