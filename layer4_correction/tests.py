"""
Tests for Layer 4: perspective correction, enhancement and saving.
"""
import json
import os

import cv2
import numpy as np
import pytest

from error_handlers import DegenerateQuadError, ImageEncodeError, ImageSaveError, InvalidConfigError
from layer3_auto_capture import CaptureResult, QualityMetrics
from layer4_correction import (
    FILTERS,
    Adjustment,
    AutoEnhancer,
    EnhancementConfig,
    ImageSaver,
    apply_adjustment,
    apply_filter,
    apply_preset,
    correct_perspective,
    order_corners,
    solve_homography,
)


def apply_homography(H, x, y):
    u, v, w = H @ np.array([x, y, 1.0])
    return u / w, v / w


class TestOrderCorners:
    """Test corner ordering."""

    def test_shuffled_rectangle(self):
        ordered = order_corners([[90, 80], [10, 10], [10, 80], [90, 10]])
        assert ordered.tolist() == [[10, 10], [90, 10], [90, 80], [10, 80]]

    def test_already_ordered(self):
        corners = [[0, 0], [5, 1], [6, 7], [1, 6]]
        assert order_corners(corners).tolist() == corners


class TestHomography:
    """Test the 4-point projective solve."""

    def test_identity(self):
        square = [[0, 0], [10, 0], [10, 10], [0, 10]]
        H = solve_homography(square, square)
        assert np.allclose(H, np.eye(3))

    def test_maps_corners(self):
        src = [[12, 8], [95, 15], [88, 70], [5, 60]]
        dst = [[0, 0], [99, 0], [99, 79], [0, 79]]
        H = solve_homography(src, dst)
        for (x, y), (u, v) in zip(src, dst):
            assert apply_homography(H, x, y) == pytest.approx((u, v), abs=1e-4)

    def test_collinear_corners(self):
        with pytest.raises(DegenerateQuadError):
            solve_homography([[0, 0], [5, 5], [10, 10], [0, 10]], [[0, 0], [1, 0], [1, 1], [0, 1]])

    def test_repeated_corners(self):
        with pytest.raises(DegenerateQuadError) as exc_info:
            solve_homography([[0, 0], [0, 0], [10, 10], [0, 10]], [[0, 0], [1, 0], [1, 1], [0, 1]])
        assert exc_info.value.error_code == "DEGENERATE_CORNERS"


class TestCorrectPerspective:
    """Test perspective correction."""

    def test_full_frame_is_identity(self):
        image = np.random.default_rng(3).integers(0, 256, size=(40, 60, 3), dtype=np.uint8)
        corners = [[0, 0], [59, 0], [59, 39], [0, 39]]
        warped, applied = correct_perspective(image, corners)
        assert applied
        assert warped.shape == image.shape
        assert np.array_equal(warped, image)

    def test_crops_document(self):
        image = np.zeros((100, 100, 3), dtype=np.uint8)
        image[20:80, 30:70] = 255
        warped, applied = correct_perspective(image, [[30, 20], [69, 20], [69, 79], [30, 79]], size=(40, 60))
        assert applied
        assert warped.shape == (60, 40, 3)
        assert warped[5:55, 5:35].min() == 255

    def test_degenerate_corners_fall_back(self):
        image = np.full((20, 20, 3), 7, dtype=np.uint8)
        warped, applied = correct_perspective(image, [[0, 0], [5, 5], [10, 10], [15, 15]])
        assert not applied
        assert np.array_equal(warped, image)
        assert warped is not image


class TestAutoEnhancer:
    """Test luminance stretch and encoding."""

    def test_flat_image_unchanged(self):
        image = np.full((10, 10, 3), 128, dtype=np.uint8)
        enhancer = AutoEnhancer()
        assert np.array_equal(enhancer.enhance(image), image)
        assert enhancer.get_stats()['images_flat'] == 1

    def test_stretch_to_full_range(self):
        image = np.full((2, 2, 3), 50, dtype=np.uint8)
        image[1, 1] = 100
        out = AutoEnhancer(EnhancementConfig(gain=1.0)).enhance(image)
        assert out[0, 0].tolist() == [0, 0, 0]
        assert out[1, 1].tolist() == [255, 255, 255]

    def test_gain_clamps(self):
        image = np.zeros((1, 3, 3), dtype=np.uint8)
        image[0, 1] = 200
        image[0, 2] = 255
        out = AutoEnhancer().enhance(image)
        assert out.dtype == np.uint8
        assert out[0, 0].tolist() == [0, 0, 0]
        assert out[0, 1].tolist() == [220, 220, 220]
        assert out[0, 2].tolist() == [255, 255, 255]

    def test_alpha_untouched(self):
        image = np.zeros((1, 2, 4), dtype=np.uint8)
        image[0, 1, :3] = 100
        image[..., 3] = 42
        out = AutoEnhancer().enhance(image)
        assert out[..., 3].tolist() == [[42, 42]]

    def test_encode_jpeg(self):
        data = AutoEnhancer().encode(np.zeros((8, 8, 3), dtype=np.uint8))
        assert data[:2] == b'\xff\xd8'

    def test_encode_png(self):
        data = AutoEnhancer().encode(np.zeros((8, 8, 3), dtype=np.uint8), fmt='.png')
        assert data[:8] == b'\x89PNG\r\n\x1a\n'

    def test_preset_follows_stretch(self):
        image = np.full((2, 2, 3), 50, dtype=np.uint8)
        image[1, 1] = 100
        enhancer = AutoEnhancer(EnhancementConfig(gain=1.0))
        out = enhancer.enhance(image, preset='whiteboard')
        # stretched to 0 and 255, then contrast 1.4 and brightness 0.9
        assert out[0, 0].tolist() == [0, 0, 0]
        assert all(abs(v - 230) <= 1 for v in out[1, 1].tolist())
        assert enhancer.get_stats()['presets_applied'] == 1

    def test_unknown_preset_rejected(self):
        with pytest.raises(InvalidConfigError):
            AutoEnhancer().enhance(np.zeros((2, 2, 3), dtype=np.uint8), preset='poster')

    def test_encode_quality_override(self):
        rng = np.random.default_rng(5)
        image = rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8)
        enhancer = AutoEnhancer()
        assert len(enhancer.encode(image, quality=0.3)) < len(enhancer.encode(image, quality=0.9))

    def test_encode_unknown_format(self):
        with pytest.raises(ImageEncodeError):
            AutoEnhancer().encode(np.zeros((8, 8, 3), dtype=np.uint8), fmt='.gif')


class TestFilters:
    """Test the review filters."""

    @pytest.fixture
    def gray(self):
        return np.full((6, 6, 3), 100, dtype=np.uint8)

    def test_grayscale_equalizes_channels(self):
        image = np.zeros((2, 2, 3), dtype=np.uint8)
        image[..., 2] = 200
        out = apply_filter(image, 'grayscale')
        assert out.shape == image.shape
        assert (out[..., 0] == out[..., 1]).all() and (out[..., 1] == out[..., 2]).all()
        assert out[0, 0, 0] == 60

    def test_contrast(self):
        image = np.array([[[0, 100, 255]]], dtype=np.uint8)
        out = apply_filter(image, 'contrast')
        assert out.tolist() == [[[0, 86, 255]]]

    def test_brightness(self, gray):
        out = apply_filter(gray, 'brightness')
        assert (out == 110).all()

    def test_sharpen_and_blur_keep_flat_images(self, gray):
        assert np.array_equal(apply_filter(gray, 'sharpen'), gray)
        assert np.array_equal(apply_filter(gray, 'blur'), gray)

    def test_sharpen_steepens_edges(self):
        image = np.full((5, 6, 3), 50, dtype=np.uint8)
        image[:, 3:] = 150
        out = apply_filter(image, 'sharpen')
        assert out[2, 2, 0] < 50
        assert out[2, 3, 0] > 150

    def test_blur_softens_edges(self):
        image = np.zeros((7, 7, 3), dtype=np.uint8)
        image[3, 3] = 255
        out = apply_filter(image, 'blur')
        assert 0 < out[3, 3, 0] < 255
        assert out[3, 4, 0] > 0

    def test_none_returns_copy(self, gray):
        out = apply_filter(gray, 'none')
        assert np.array_equal(out, gray)
        assert out is not gray

    def test_alpha_untouched(self):
        image = np.full((2, 2, 4), 100, dtype=np.uint8)
        image[..., 3] = 42
        for name in FILTERS:
            assert (apply_filter(image, name)[..., 3] == 42).all()

    def test_unknown_filter(self, gray):
        with pytest.raises(InvalidConfigError) as exc_info:
            apply_filter(gray, 'sepia')
        assert exc_info.value.details['field'] == 'filter'


class TestPresets:
    """Test per-mode enhancement presets."""

    def test_document_preset(self):
        image = np.full((2, 2, 3), 101, dtype=np.uint8)
        out = apply_preset(image, 'document')
        # (101 - 127.5) * 1.2 + 127.5 = 95.7, then * 1.1
        assert abs(int(out[0, 0, 0]) - 106) <= 1

    def test_saturation_raised_for_id_cards(self):
        image = np.zeros((1, 1, 3), dtype=np.uint8)
        image[0, 0] = (60, 90, 160)
        before = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)[0, 0, 1]
        after = cv2.cvtColor(apply_adjustment(image, Adjustment(saturation=1.2)), cv2.COLOR_BGR2HSV)[0, 0, 1]
        assert after > before

    def test_gray_pixels_stay_gray(self):
        image = np.full((2, 2, 3), 120, dtype=np.uint8)
        out = apply_adjustment(image, Adjustment(saturation=1.5))
        assert (out == 120).all()

    def test_whiteboard_preset_darkens_highlights(self):
        image = np.full((1, 1, 3), 255, dtype=np.uint8)
        out = apply_preset(image, 'whiteboard')
        assert abs(int(out[0, 0, 0]) - 230) <= 1

    def test_no_preset(self):
        image = np.full((2, 2, 3), 77, dtype=np.uint8)
        assert np.array_equal(apply_preset(image, None), image)
        assert np.array_equal(apply_preset(image, 'none'), image)

    def test_unknown_preset(self):
        with pytest.raises(InvalidConfigError):
            apply_preset(np.zeros((1, 1, 3), dtype=np.uint8), 'poster')


class TestImageSaver:
    """Test capture persistence."""

    @pytest.fixture
    def result(self):
        ok, buffer = cv2.imencode('.jpg', np.zeros((8, 8, 3), dtype=np.uint8))
        return CaptureResult(
            success=True,
            image=buffer.tobytes(),
            corners=[[0, 0], [7, 0], [7, 7], [0, 7]],
            quality=QualityMetrics(0.5, 0.4, 0.1, 0.34),
            confidence=0.25,
            timestamp="2024-01-01T00:00:00",
            metadata={'mode': 'manual'}
        )

    def test_creates_directories(self, tmp_path):
        saver = ImageSaver(base_dir=str(tmp_path / "out"))
        assert os.path.isdir(saver.images_dir)
        assert os.path.isdir(saver.json_dir)

    def test_save_capture(self, tmp_path, result):
        saver = ImageSaver(base_dir=str(tmp_path))
        saved = saver.save_capture(result)

        assert os.path.basename(saved['image_path']).startswith("scan_")
        with open(saved['image_path'], 'rb') as f:
            assert f.read() == result.image

        with open(saved['json_path'], encoding='utf-8') as f:
            record = json.load(f)
        assert record['metadata'] == {'mode': 'manual'}
        assert record['quality']['score'] == 0.34
        assert record['image_file'] == os.path.basename(saved['image_path'])
        assert 'image' not in record

    def test_unwritable_directory(self, tmp_path, result):
        saver = ImageSaver(base_dir=str(tmp_path))
        saver.images_dir = str(tmp_path / "missing" / "deeper")
        with pytest.raises(ImageSaveError):
            saver.save_capture(result)
