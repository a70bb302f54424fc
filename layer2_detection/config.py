"""
Layer 2 — Detection Configuration
Immutable thresholds shared by every stage of the detection pipeline.
"""
import os
from dataclasses import dataclass

from error_handlers import InvalidConfigError


@dataclass(frozen=True)
class DetectionConfig:
    """Configuration for document detection and capture readiness."""
    edge_threshold: float = 100.0     # Sobel magnitude cutoff
    corner_threshold: float = 0.3     # Min refined-quad area / hull area before falling back to sampling
    min_document_size: float = 0.1    # Fraction of frame area
    max_document_size: float = 0.9    # Fraction of frame area
    quality_threshold: float = 0.7    # Auto-capture readiness

    def __post_init__(self):
        if self.edge_threshold < 0:
            raise InvalidConfigError('edge_threshold', self.edge_threshold, ">= 0")
        if not 0.0 <= self.corner_threshold <= 1.0:
            raise InvalidConfigError('corner_threshold', self.corner_threshold, "in [0, 1]")
        if not 0.0 < self.min_document_size < 1.0:
            raise InvalidConfigError('min_document_size', self.min_document_size, "in (0, 1)")
        if not 0.0 < self.max_document_size < 1.0:
            raise InvalidConfigError('max_document_size', self.max_document_size, "in (0, 1)")
        if self.min_document_size >= self.max_document_size:
            raise InvalidConfigError(
                'min_document_size', self.min_document_size,
                f"< max_document_size ({self.max_document_size})"
            )
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise InvalidConfigError('quality_threshold', self.quality_threshold, "in [0, 1]")

    @classmethod
    def from_env(cls, prefix: str = "SCANNER_") -> "DetectionConfig":
        """Build a config from SCANNER_* environment variables, defaults for the rest."""
        fields = {
            'edge_threshold': 'EDGE_THRESHOLD',
            'corner_threshold': 'CORNER_THRESHOLD',
            'min_document_size': 'MIN_DOCUMENT_SIZE',
            'max_document_size': 'MAX_DOCUMENT_SIZE',
            'quality_threshold': 'QUALITY_THRESHOLD',
        }
        values = {}
        for field, suffix in fields.items():
            raw = os.environ.get(prefix + suffix)
            if raw is None or raw == '':
                continue
            try:
                values[field] = float(raw)
            except ValueError:
                raise InvalidConfigError(field, raw, "a number")
        return cls(**values)
