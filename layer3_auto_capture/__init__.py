"""
Layer 3 — Auto Capture
Responsibility: Decide when to capture from the live preview
Output: One CaptureResult per scanning session
"""
from .quality import QualityAssessor, QualityMetrics
from .state import ACTIVE_STATES, TERMINAL_STATES, CaptureState, ScanEvent, next_state
from .auto_capture import AutoCaptureEngine, CaptureConfig, CaptureResult, FrameAnalysis
from .overlay import draw_detection_overlay

__all__ = [
    'QualityAssessor',
    'QualityMetrics',
    'ACTIVE_STATES',
    'TERMINAL_STATES',
    'CaptureState',
    'ScanEvent',
    'next_state',
    'AutoCaptureEngine',
    'CaptureConfig',
    'CaptureResult',
    'FrameAnalysis',
    'draw_detection_overlay',
]
