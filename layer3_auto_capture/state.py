"""
Layer 3 — Capture State Machine
Session states and the pure transition function of the detection loop.
"""
from enum import Enum

from error_handlers import InvalidTransitionError


class CaptureState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DOCUMENT_DETECTED = "document_detected"
    STABILIZING = "stabilizing"
    CAPTURED = "captured"
    CANCELLED = "cancelled"


class ScanEvent(Enum):
    START = "start"
    CANDIDATE_FOUND = "candidate_found"
    CANDIDATE_LOST = "candidate_lost"
    QUALITY_READY = "quality_ready"
    STABILIZATION_FAILED = "stabilization_failed"
    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    PAGE_CAPTURED = "page_captured"
    CANCEL = "cancel"
    RESET = "reset"


ACTIVE_STATES = frozenset({
    CaptureState.SCANNING,
    CaptureState.DOCUMENT_DETECTED,
    CaptureState.STABILIZING,
})

TERMINAL_STATES = frozenset({CaptureState.CAPTURED, CaptureState.CANCELLED})

S = CaptureState
E = ScanEvent

# Events missing for a state leave it unchanged. While STABILIZING new
# detections and quality signals are absorbed, so only one timer exists.
# Capture outcomes are accepted in every active state.
# PAGE_CAPTURED ends one page of a batch and keeps the session scanning.
TRANSITIONS = {
    S.IDLE: {
        E.START: S.SCANNING,
    },
    S.SCANNING: {
        E.CANDIDATE_FOUND: S.DOCUMENT_DETECTED,
        E.CAPTURE_SUCCEEDED: S.CAPTURED,
        E.CAPTURE_FAILED: S.SCANNING,
        E.PAGE_CAPTURED: S.SCANNING,
        E.CANCEL: S.CANCELLED,
    },
    S.DOCUMENT_DETECTED: {
        E.CANDIDATE_LOST: S.SCANNING,
        E.QUALITY_READY: S.STABILIZING,
        E.CAPTURE_SUCCEEDED: S.CAPTURED,
        E.CAPTURE_FAILED: S.SCANNING,
        E.PAGE_CAPTURED: S.SCANNING,
        E.CANCEL: S.CANCELLED,
    },
    S.STABILIZING: {
        E.STABILIZATION_FAILED: S.SCANNING,
        E.CAPTURE_SUCCEEDED: S.CAPTURED,
        E.CAPTURE_FAILED: S.SCANNING,
        E.PAGE_CAPTURED: S.SCANNING,
        E.CANCEL: S.CANCELLED,
    },
    S.CAPTURED: {
        E.START: S.SCANNING,
        E.RESET: S.IDLE,
    },
    S.CANCELLED: {
        E.START: S.SCANNING,
        E.RESET: S.IDLE,
    },
}

del S, E


def next_state(state: CaptureState, event: ScanEvent) -> CaptureState:
    """
    Apply one event.

    Raises:
        InvalidTransitionError: START while a session is already active
    """
    if event is ScanEvent.START and state in ACTIVE_STATES:
        raise InvalidTransitionError(state.value, event.value)
    return TRANSITIONS[state].get(event, state)
