"""
Tests for Layer 3: quality scoring, state machine and the capture engine.
"""
import threading

import cv2
import numpy as np
import pytest

from error_handlers import (
    DeviceBusyError,
    FrameCaptureError,
    InvalidConfigError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from layer2_detection import DetectionConfig
from layer3_auto_capture import (
    AutoCaptureEngine,
    CaptureConfig,
    CaptureState,
    FrameAnalysis,
    QualityAssessor,
    QualityMetrics,
    ScanEvent,
    draw_detection_overlay,
    next_state,
)


@pytest.fixture
def captures():
    return []


@pytest.fixture
def engine(camera, timers, captures):
    """Auto-mode engine whose threshold the rectangle frame passes."""
    return AutoCaptureEngine(
        camera,
        detection_config=DetectionConfig(quality_threshold=0.3),
        on_capture=captures.append,
        timer_factory=timers,
    )


class TestQualityAssessor:
    """Test frame quality metrics."""

    def test_black_frame(self, black_frame):
        metrics = QualityAssessor().assess(black_frame)
        assert metrics == QualityMetrics(0.0, 0.0, 0.0, 0.0)

    def test_white_frame(self, white_frame):
        metrics = QualityAssessor().assess(white_frame)
        assert metrics.brightness == pytest.approx(1.0)
        assert metrics.contrast == pytest.approx(0.0)
        assert metrics.sharpness == 0.0
        assert metrics.score == pytest.approx(0.3)

    def test_rectangle_frame(self, rect_frame):
        metrics = QualityAssessor().assess(rect_frame)
        assert metrics.brightness == pytest.approx(0.48)
        assert metrics.contrast == pytest.approx(np.sqrt(0.48 * 0.52))
        # 280 black/white pixel pairs, each counted from both sides
        assert metrics.sharpness == pytest.approx(280 * 2 * 255 / (100 * 100 * 100))
        assert metrics.score == pytest.approx(
            0.3 * metrics.brightness + 0.4 * metrics.contrast + 0.3 * metrics.sharpness
        )

    def test_scores_in_unit_range(self):
        rng = np.random.default_rng(7)
        from layer1_capture import Frame
        for _ in range(5):
            data = rng.integers(0, 256, size=(32, 48, 4), dtype=np.uint8)
            metrics = QualityAssessor().assess(Frame(width=48, height=32, data=data))
            for value in (metrics.brightness, metrics.contrast, metrics.sharpness, metrics.score):
                assert 0.0 <= value <= 1.0

    def test_metrics_clamped(self):
        metrics = QualityMetrics(brightness=1.5, contrast=-0.2, sharpness=0.5, score=2.0)
        assert metrics.brightness == 1.0
        assert metrics.contrast == 0.0
        assert metrics.score == 1.0

    def test_is_acceptable_strict(self):
        assessor = QualityAssessor()
        ok, _ = assessor.is_acceptable(QualityMetrics(0, 0, 0, 0.7), 0.7)
        assert not ok
        ok, reason = assessor.is_acceptable(QualityMetrics(0, 0, 0, 0.71), 0.7)
        assert ok
        assert reason == "Quality acceptable"


class TestStateMachine:
    """Test the pure transition function."""

    def test_happy_path(self):
        state = CaptureState.IDLE
        for event in (ScanEvent.START, ScanEvent.CANDIDATE_FOUND,
                      ScanEvent.QUALITY_READY, ScanEvent.CAPTURE_SUCCEEDED):
            state = next_state(state, event)
        assert state is CaptureState.CAPTURED

    def test_quality_ready_debounced_while_stabilizing(self):
        assert next_state(CaptureState.STABILIZING, ScanEvent.QUALITY_READY) is CaptureState.STABILIZING
        assert next_state(CaptureState.STABILIZING, ScanEvent.CANDIDATE_FOUND) is CaptureState.STABILIZING

    def test_captured_is_terminal(self):
        for event in ScanEvent:
            if event in (ScanEvent.START, ScanEvent.RESET):
                continue
            assert next_state(CaptureState.CAPTURED, event) is CaptureState.CAPTURED

    def test_cancel_from_every_active_state(self):
        for state in (CaptureState.SCANNING, CaptureState.DOCUMENT_DETECTED, CaptureState.STABILIZING):
            assert next_state(state, ScanEvent.CANCEL) is CaptureState.CANCELLED

    def test_start_while_active_rejected(self):
        with pytest.raises(InvalidTransitionError):
            next_state(CaptureState.SCANNING, ScanEvent.START)

    def test_stale_timer_event_ignored(self):
        assert next_state(CaptureState.SCANNING, ScanEvent.STABILIZATION_FAILED) is CaptureState.SCANNING

    def test_capture_outcome_accepted_while_scanning(self):
        assert next_state(CaptureState.SCANNING, ScanEvent.CAPTURE_SUCCEEDED) is CaptureState.CAPTURED
        assert next_state(CaptureState.SCANNING, ScanEvent.CAPTURE_FAILED) is CaptureState.SCANNING

    def test_page_captured_keeps_scanning(self):
        for state in (CaptureState.SCANNING, CaptureState.DOCUMENT_DETECTED, CaptureState.STABILIZING):
            assert next_state(state, ScanEvent.PAGE_CAPTURED) is CaptureState.SCANNING


class TestCaptureConfig:
    """Test capture configuration."""

    def test_defaults(self):
        config = CaptureConfig()
        assert config.auto_mode is True
        assert config.stabilization_ms == 1000
        assert config.photo_quality == 95

    def test_invalid_quality(self):
        with pytest.raises(InvalidConfigError):
            CaptureConfig(photo_quality=120)

    def test_invalid_batch_size(self):
        with pytest.raises(InvalidConfigError):
            CaptureConfig(batch_size=-1)
        with pytest.raises(InvalidConfigError):
            CaptureConfig(batch_size=True)

    def test_unknown_mode(self):
        with pytest.raises(InvalidConfigError):
            CaptureConfig(mode='poster')


class TestAutoCaptureEngine:
    """Test the detection loop with a fake camera and manual timers."""

    def test_start_acquires_camera(self, engine, camera):
        engine.start()
        assert engine.state is CaptureState.SCANNING
        assert camera.is_opened()

    def test_start_twice_rejected(self, engine, camera):
        engine.start()
        with pytest.raises(InvalidTransitionError):
            engine.start()
        assert camera.initialize_calls == 1

    def test_start_failure_releases_camera(self, fake_camera_cls):
        camera = fake_camera_cls(init_error=PermissionDeniedError("/dev/video0"))
        engine = AutoCaptureEngine(camera)
        with pytest.raises(PermissionDeniedError):
            engine.start()
        assert engine.state is CaptureState.IDLE
        assert camera.release_calls == 1

    def test_busy_camera(self, fake_camera_cls):
        camera = fake_camera_cls(init_error=DeviceBusyError("/dev/video0"))
        engine = AutoCaptureEngine(camera)
        with pytest.raises(DeviceBusyError):
            engine.start()
        assert engine.state is CaptureState.IDLE

    def test_process_frame_inactive(self, engine, rect_frame):
        assert engine.process_frame(rect_frame) is None
        assert engine.tick() is None

    def test_no_candidate_reports_zero_quality(self, engine, black_frame):
        engine.start()
        analysis = engine.process_frame(black_frame)
        assert analysis.candidate is None
        assert analysis.quality == QualityMetrics.zero()
        assert engine.state is CaptureState.SCANNING

    def test_candidate_starts_single_timer(self, engine, rect_frame, timers):
        engine.start()
        engine.process_frame(rect_frame)
        assert engine.state is CaptureState.STABILIZING
        assert len(timers.created) == 1
        assert timers.created[0].interval == 1.0
        assert timers.created[0].daemon is True

    def test_debounce_while_stabilizing(self, engine, timers):
        engine.start()
        engine.run(max_ticks=5)
        assert engine.state is CaptureState.STABILIZING
        assert len(timers.created) == 1

    def test_timer_fire_captures_once(self, engine, camera, timers, captures):
        engine.start()
        engine.run(max_ticks=3)
        timer = timers.created[0]
        timer.fire()
        timer.fire()

        assert engine.state is CaptureState.CAPTURED
        assert engine.outcome is CaptureState.CAPTURED
        assert len(captures) == 1
        assert not camera.is_opened()
        assert camera.photo_requests[0].quality == 95

        result = captures[0]
        assert result.success
        assert result.metadata['mode'] == "auto"
        assert result.metadata['auto_corrected'] is True
        assert result.metadata['format'] == "JPEG"
        decoded = cv2.imdecode(np.frombuffer(result.image, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (200, 200, 3)

    def test_corners_scaled_to_photo(self, engine, timers, captures):
        engine.start()
        engine.tick()
        timers.created[0].fire()
        assert captures[0].corners[0] == [38.0, 18.0]
        assert captures[0].corners[2] == [160.0, 180.0]

    def test_run_stops_after_capture(self, engine, timers):
        engine.start()
        engine.tick()
        timers.created[0].fire()
        assert engine.run(max_ticks=10) == 0

    def test_revalidation_failure_returns_to_scanning(self, engine, camera, black_frame, timers, captures):
        engine.start()
        engine.tick()
        assert engine.state is CaptureState.STABILIZING

        engine.process_frame(black_frame)
        assert engine.state is CaptureState.STABILIZING

        timers.created[0].fire()
        assert engine.state is CaptureState.SCANNING
        assert captures == []
        assert camera.is_opened()

    def test_below_threshold_never_stabilizes(self, camera, timers):
        engine = AutoCaptureEngine(camera, timer_factory=timers)
        engine.start()
        engine.run(max_ticks=3)
        assert engine.state is CaptureState.DOCUMENT_DETECTED
        assert timers.created == []

    def test_candidate_lost(self, engine, camera, rect_frame, black_frame):
        engine.start(auto_mode=False)
        engine.process_frame(rect_frame)
        assert engine.state is CaptureState.DOCUMENT_DETECTED
        engine.process_frame(black_frame)
        assert engine.state is CaptureState.SCANNING

    def test_manual_capture(self, camera, timers, captures):
        engine = AutoCaptureEngine(camera, config=CaptureConfig(auto_mode=False),
                                   on_capture=captures.append, timer_factory=timers)
        engine.start()
        engine.tick()
        assert engine.state is CaptureState.DOCUMENT_DETECTED
        assert timers.created == []

        result = engine.capture_now()
        assert result is not None
        assert result.metadata['mode'] == "manual"
        assert engine.state is CaptureState.CAPTURED
        assert captures == [result]

    def test_manual_capture_ignores_quality(self, camera, captures):
        engine = AutoCaptureEngine(camera, detection_config=DetectionConfig(quality_threshold=0.95),
                                   on_capture=captures.append)
        engine.start()
        engine.tick()
        assert engine.capture_now() is not None

    def test_manual_capture_without_candidate(self, engine, black_frame):
        engine.start()
        engine.process_frame(black_frame)
        assert engine.capture_now() is None
        assert engine.state is CaptureState.SCANNING

    def test_manual_capture_when_idle(self, engine):
        with pytest.raises(InvalidTransitionError):
            engine.capture_now()

    def test_manual_capture_cancels_timer(self, engine, timers):
        engine.start()
        engine.tick()
        engine.capture_now()
        assert timers.created[0].cancelled
        assert engine.state is CaptureState.CAPTURED

    def test_capture_failure_returns_to_scanning(self, engine, camera, timers, captures):
        camera.photo_error = FrameCaptureError(reason="sensor timeout")
        engine.start()
        engine.tick()
        timers.created[0].fire()
        assert engine.state is CaptureState.SCANNING
        assert captures == []
        assert engine.get_status()['capture_in_flight'] is False

    def test_manual_capture_after_failed_revalidation(self, engine, camera, dim_frame, timers, captures):
        engine.start()
        engine.tick()
        engine.process_frame(dim_frame)
        timers.created[0].fire()
        assert engine.state is CaptureState.SCANNING
        assert engine.latest.candidate is not None

        result = engine.capture_now()
        assert result is not None
        assert engine.state is CaptureState.CAPTURED
        assert engine.outcome is CaptureState.CAPTURED
        assert captures == [result]
        assert not camera.is_opened()

        engine.start()
        assert engine.state is CaptureState.SCANNING

    def test_unexpected_capture_error_keeps_scanning(self, engine, camera, timers, captures):
        camera.photo_error = RuntimeError("driver crash")
        engine.start()
        engine.tick()
        timers.created[0].fire()

        assert engine.state is CaptureState.SCANNING
        assert captures == []
        assert camera.is_opened()
        assert engine.get_status()['capture_in_flight'] is False

        camera.photo_error = None
        engine.tick()
        assert len(timers.created) == 2
        timers.created[1].fire()
        assert engine.state is CaptureState.CAPTURED
        assert len(captures) == 1
        assert not camera.is_opened()

    def test_unexpected_manual_capture_error(self, engine, camera, captures):
        camera.photo_error = RuntimeError("driver crash")
        engine.start(auto_mode=False)
        engine.tick()
        assert engine.capture_now() is None
        assert engine.state is CaptureState.SCANNING
        assert camera.is_opened()

    def test_undecodable_photo(self, engine, camera, captures):
        engine.start()
        engine.tick()
        camera.capture_photo = lambda request=None: type("P", (), {"data": b"not an image"})()
        assert engine.capture_now() is None
        assert engine.state is CaptureState.SCANNING

    def test_cancel(self, engine, camera, timers):
        engine.start()
        engine.tick()
        engine.cancel()

        assert engine.state is CaptureState.IDLE
        assert engine.outcome is CaptureState.CANCELLED
        assert timers.created[0].cancelled
        assert not camera.is_opened()

    def test_stale_timer_after_restart(self, engine, timers, captures):
        engine.start()
        engine.tick()
        stale = timers.created[0]
        engine.cancel()
        engine.start()
        engine.tick()

        # Fire the old callback directly, bypassing its cancelled flag
        stale.function(*stale.args)
        assert captures == []
        assert engine.state is CaptureState.STABILIZING

    def test_restart_after_capture(self, engine, timers):
        engine.start()
        engine.tick()
        timers.created[0].fire()
        engine.start()
        assert engine.state is CaptureState.SCANNING
        assert engine.outcome is None

    def test_transient_frame_errors_tolerated(self, engine, camera):
        camera.frame_error = FrameCaptureError(reason="dropped")
        engine.start()
        assert engine.tick() is None
        assert engine.state is CaptureState.SCANNING

    def test_persistent_frame_errors_abort(self, fake_camera_cls, photo_image):
        camera = fake_camera_cls(photo_image=photo_image, frame_error=FrameCaptureError(reason="unplugged"))
        engine = AutoCaptureEngine(camera, config=CaptureConfig(max_consecutive_failures=2))
        engine.start()
        with pytest.raises(FrameCaptureError):
            engine.run()
        assert engine.state is CaptureState.IDLE
        assert engine.outcome is CaptureState.CANCELLED
        assert not camera.is_opened()

    def test_batch_captures_pages(self, camera, timers, captures):
        engine = AutoCaptureEngine(
            camera,
            detection_config=DetectionConfig(quality_threshold=0.3),
            config=CaptureConfig(batch_size=2),
            on_capture=captures.append,
            timer_factory=timers,
        )
        engine.start()
        engine.tick()
        timers.created[0].fire()

        assert engine.state is CaptureState.SCANNING
        assert camera.is_opened()
        assert engine.latest is None
        assert captures[0].metadata['batch_index'] == 1

        engine.tick()
        timers.created[1].fire()
        assert engine.state is CaptureState.CAPTURED
        assert not camera.is_opened()
        assert [r.metadata['batch_index'] for r in engine.results] == [1, 2]
        assert captures == engine.results

    def test_open_batch_finishes_on_stop(self, engine, camera, timers):
        engine.start(batch_size=0)
        engine.tick()
        timers.created[0].fire()
        engine.tick()
        timers.created[1].fire()
        engine.cancel()

        assert engine.state is CaptureState.IDLE
        assert engine.outcome is CaptureState.CAPTURED
        assert len(engine.results) == 2
        assert not camera.is_opened()

    def test_batch_cancelled_before_first_page(self, engine):
        engine.start(batch_size=3)
        engine.cancel()
        assert engine.outcome is CaptureState.CANCELLED
        assert engine.results == []

    def test_scan_mode_preset(self, engine, timers, captures):
        engine.start(mode='document')
        engine.tick()
        timers.created[0].fire()
        assert captures[0].metadata['scan_mode'] == 'document'
        assert engine.enhancer.get_stats()['presets_applied'] == 1
        assert engine.get_status()['mode'] == 'document'

    def test_unknown_mode_rejected_before_camera(self, engine, camera):
        with pytest.raises(InvalidConfigError):
            engine.start(mode='poster')
        assert camera.initialize_calls == 0
        assert engine.state is CaptureState.IDLE

    def test_invalid_batch_size_rejected(self, engine, camera):
        with pytest.raises(InvalidConfigError):
            engine.start(batch_size="3")
        assert camera.initialize_calls == 0

    def test_on_frame_hook(self, camera, timers):
        seen = []
        engine = AutoCaptureEngine(camera, on_frame=lambda frame, analysis: seen.append(analysis),
                                   timer_factory=timers)
        engine.start()
        engine.run(max_ticks=2)
        assert len(seen) == 2
        assert isinstance(seen[0], FrameAnalysis)

    def test_analysis_deterministic_across_instances(self, camera, rect_frame):
        first = AutoCaptureEngine(camera).analyze(rect_frame)
        second = AutoCaptureEngine(camera).analyze(rect_frame)
        assert first == second
        assert first.quality == QualityAssessor().assess(rect_frame)

    def test_analysis_downscaled(self, camera, rect_frame):
        engine = AutoCaptureEngine(camera, config=CaptureConfig(analysis_max_width=50))
        analysis = engine.analyze(rect_frame)
        assert (analysis.width, analysis.height) == (50, 50)

    def test_real_timer(self, camera):
        done = threading.Event()
        engine = AutoCaptureEngine(
            camera,
            detection_config=DetectionConfig(quality_threshold=0.3),
            config=CaptureConfig(stabilization_ms=10),
            on_capture=lambda result: done.set(),
        )
        engine.start()
        engine.tick()
        assert done.wait(timeout=5.0)
        assert engine.state is CaptureState.CAPTURED


class TestOverlay:
    """Test the preview overlay."""

    def test_no_candidate_returns_copy(self, rect_frame):
        image = rect_frame.to_bgr()
        analysis = FrameAnalysis(candidate=None, quality=QualityMetrics.zero(), width=100, height=100)
        overlay = draw_detection_overlay(image, analysis, 0.7)
        assert np.array_equal(overlay, image)
        assert overlay is not image

    def test_draws_corners_and_bar(self, engine, rect_frame):
        analysis = engine.analyze(rect_frame)
        image = np.zeros((100, 100, 3), dtype=np.uint8)
        overlay = draw_detection_overlay(image, analysis, 0.3)

        # Red corner dot at top-left corner (19, 9)
        assert overlay[9, 19].tolist() == [0, 0, 255]
        # Black bar background frame stays dark, outline is drawn somewhere
        assert overlay[20:, :].any()
        assert not image.any()
