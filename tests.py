"""
Tests for the document scanner Flask application and error handling.
"""
import io
import json

import cv2
import numpy as np

from error_handlers import (
    DegenerateQuadError,
    DeviceBusyError,
    PermissionDeniedError,
    ScannerError,
    handle_error,
)


def png_upload(image, name="document.png"):
    ok, buffer = cv2.imencode('.png', image)
    return {'image': (io.BytesIO(buffer.tobytes()), name)}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_status_lists_endpoints(self, client):
        data = json.loads(client.get('/api/status').data)
        assert data['success'] is True
        assert data['scanner']['state'] == 'idle'
        assert data['endpoints']['capture'] == '/capture'
        assert data['modes'] == ['document', 'id', 'whiteboard']
        assert 'sharpen' in data['filters']

    def test_cors_headers(self, client):
        response = client.get('/health', headers={'Origin': 'http://localhost:3000'})
        assert response.headers.get('Access-Control-Allow-Origin') in ('*', 'http://localhost:3000')


class TestScanSession:
    """Test scan session endpoints."""

    def test_start_and_stop(self, client, coordinator):
        response = client.post('/start_scan', json={})
        assert response.status_code == 200
        assert json.loads(response.data)['state'] == 'scanning'
        assert coordinator.camera.is_opened()

        response = client.post('/stop_scan')
        assert json.loads(response.data)['state'] == 'idle'
        assert not coordinator.camera.is_opened()

    def test_start_twice_conflicts(self, client):
        client.post('/start_scan')
        response = client.post('/start_scan')
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'INVALID_TRANSITION'

    def test_permission_denied(self, client, coordinator):
        coordinator.camera.init_error = PermissionDeniedError("/dev/video0")
        response = client.post('/start_scan')
        assert response.status_code == 403
        data = json.loads(response.data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_PERMISSION_DENIED'

    def test_busy_camera(self, client, coordinator):
        coordinator.camera.init_error = DeviceBusyError("/dev/video0")
        assert client.post('/start_scan').status_code == 409

    def test_manual_mode_flag(self, client, coordinator):
        client.post('/start_scan', json={'auto_mode': False})
        assert coordinator.engine.auto_mode is False

    def test_batch_session(self, client, coordinator, timers):
        response = client.post('/start_scan', json={'batch_size': 0, 'mode': 'document'})
        assert response.status_code == 200
        coordinator.engine.tick()
        timers.created[0].fire()
        coordinator.engine.tick()
        timers.created[1].fire()

        data = json.loads(client.post('/stop_scan').data)
        assert data['outcome'] == 'captured'
        assert [c['metadata']['batch_index'] for c in data['captures']] == [1, 2]
        assert data['captures'][0]['metadata']['scan_mode'] == 'document'
        assert all(c['saved']['image_path'] for c in data['captures'])

    def test_unknown_mode_rejected(self, client, coordinator):
        response = client.post('/start_scan', json={'mode': 'poster'})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CONFIG'
        assert not coordinator.camera.is_opened()

    def test_invalid_batch_size_rejected(self, client):
        response = client.post('/start_scan', json={'batch_size': -2})
        assert response.status_code == 400

    def test_detection_status(self, client, coordinator):
        client.post('/start_scan')
        coordinator.engine.tick()
        data = json.loads(client.get('/detection_status').data)
        assert data['detection']['document_detected'] is True
        assert data['state'] == 'stabilizing'

    def test_detection_status_idle(self, client):
        data = json.loads(client.get('/detection_status').data)
        assert data['detection'] == {'document_detected': False}

    def test_preview_rendered(self, client, coordinator):
        client.post('/start_scan')
        coordinator.engine.tick()
        assert coordinator.get_preview_jpeg()[:2] == b'\xff\xd8'

    def test_video_feed_ends_without_session(self, client):
        response = client.get('/video_feed')
        assert response.status_code == 200
        assert response.mimetype == 'multipart/x-mixed-replace'


class TestCaptureEndpoint:
    """Test manual capture."""

    def test_capture_saves_document(self, client, coordinator):
        client.post('/start_scan')
        coordinator.engine.tick()

        response = client.post('/capture')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['metadata']['mode'] == 'manual'
        assert data['saved']['image_path'].endswith('.jpg')
        assert coordinator.engine.state.value == 'captured'

    def test_auto_capture_saves_document(self, coordinator, timers):
        coordinator.start_scan()
        coordinator.engine.tick()
        timers.created[0].fire()
        assert coordinator.last_capture['success'] is True
        assert coordinator.last_capture['metadata']['mode'] == 'auto'

    def test_capture_without_document(self, client, coordinator, black_frame):
        client.post('/start_scan')
        coordinator.engine.process_frame(black_frame)
        response = client.post('/capture')
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'NO_DOCUMENT'

    def test_capture_without_session(self, client):
        response = client.post('/capture')
        assert response.status_code == 409


class TestAnalyzeEndpoint:
    """Test stateless analysis of uploads."""

    def test_analyze_document(self, client, rect_frame):
        response = client.post('/api/analyze', data=png_upload(rect_frame.to_bgr()),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['document_detected'] is True
        assert data['ready'] is True
        assert data['candidate']['corners'][0] == [19, 9]

    def test_analyze_blank(self, client, black_frame):
        data = json.loads(client.post('/api/analyze', data=png_upload(black_frame.to_bgr()),
                                      content_type='multipart/form-data').data)
        assert data['document_detected'] is False
        assert data['quality']['score'] == 0.0

    def test_analyze_requires_image(self, client):
        response = client.post('/api/analyze', data=b'')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'IMAGE_DECODE_FAILED'

    def test_analyze_rejects_garbage(self, client):
        response = client.post('/api/analyze', data=b'definitely not an image',
                               content_type='application/octet-stream')
        assert response.status_code == 400


class TestProcessEndpoint:
    """Test correction of uploads."""

    def test_process_with_corners(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['corners'] = json.dumps([[20, 10], [79, 10], [79, 89], [20, 89]])
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.headers['X-Perspective-Corrected'] == 'true'

        image = cv2.imdecode(np.frombuffer(response.data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert image.shape == (100, 100, 3)

    def test_process_detects_corners(self, client, rect_frame):
        response = client.post('/api/process', data=png_upload(rect_frame.to_bgr()),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        assert response.headers['X-Perspective-Corrected'] == 'true'

    def test_process_degenerate_corners(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['corners'] = json.dumps([[0, 0], [1, 1], [2, 2], [3, 3]])
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 200
        assert response.headers['X-Perspective-Corrected'] == 'false'

    def test_process_non_numeric_corners(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['corners'] = '[[null, 1], [2, 3], [4, 5], [6, 7]]'
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CORNERS'

    def test_process_with_filter(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['filter'] = 'grayscale'
        upload['mode'] = 'id'
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 200
        image = cv2.imdecode(np.frombuffer(response.data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert np.abs(image[..., 0].astype(int) - image[..., 2].astype(int)).max() <= 2

    def test_process_unknown_filter(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['filter'] = 'sepia'
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['details']['field'] == 'filter'

    def test_process_invalid_corners(self, client, rect_frame):
        upload = png_upload(rect_frame.to_bgr())
        upload['corners'] = '[[0, 0], [1, 1]]'
        response = client.post('/api/process', data=upload, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CORNERS'


class TestErrorHandling:
    """Test the error hierarchy and helper."""

    def test_scanner_error_to_dict(self):
        error = ScannerError("boom", "BOOM", {"a": 1})
        assert error.to_dict() == {
            "success": False,
            "error": "boom",
            "error_code": "BOOM",
            "details": {"a": 1}
        }

    def test_degenerate_quad_details(self):
        error = DegenerateQuadError([[0, 0], [1, 1], [2, 2], [3, 3]], "collinear")
        assert error.details['corners'][1] == [1.0, 1.0]

    def test_handle_known_error(self):
        response = handle_error(PermissionDeniedError("/dev/video0", reason="denied"))
        assert response['error_code'] == 'CAMERA_PERMISSION_DENIED'
        assert response['details']['device'] == '/dev/video0'

    def test_handle_unexpected_error(self):
        response = handle_error(RuntimeError("bad"))
        assert response['error_code'] == 'UNEXPECTED_ERROR'
        assert response['details']['error_type'] == 'RuntimeError'

    def test_missing_endpoint_returns_404(self, client):
        assert client.get('/nonexistent').status_code == 404

    def test_method_not_allowed(self, client):
        assert client.get('/capture').status_code == 405
