"""
Layer 1 — Capture
Responsibility: Camera acquisition, preview frames and still photos
Output: Frame (RGBA) per tick, Photo on capture request
"""
from .frame import Frame
from .camera import CameraHandler, Photo, PhotoRequest

__all__ = ['Frame', 'CameraHandler', 'Photo', 'PhotoRequest']
