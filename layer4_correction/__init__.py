"""
Layer 4 — Correction
Responsibility: Flatten, enhance and persist the captured document
Output: Encoded, perspective-corrected image
"""
from .perspective import correct_perspective, order_corners, solve_homography
from .filters import (
    FILTER_OUTPUT_QUALITY,
    FILTERS,
    PRESETS,
    Adjustment,
    apply_adjustment,
    apply_filter,
    apply_preset,
    validate_filter,
    validate_mode,
)
from .enhancer import AutoEnhancer, EnhancementConfig
from .saver import ImageSaver

__all__ = [
    'correct_perspective',
    'order_corners',
    'solve_homography',
    'FILTER_OUTPUT_QUALITY',
    'FILTERS',
    'PRESETS',
    'Adjustment',
    'apply_adjustment',
    'apply_filter',
    'apply_preset',
    'validate_filter',
    'validate_mode',
    'AutoEnhancer',
    'EnhancementConfig',
    'ImageSaver',
]
