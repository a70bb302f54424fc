"""
Layer 4 — Capture Saver
Component: Document store
Responsibility: Persist corrected documents next to a JSON record of how they were captured
"""
import os
import json
import logging
from datetime import datetime

from error_handlers import ImageSaveError, JSONSaveError

logger = logging.getLogger(__name__)


class ImageSaver:
    """
    Writes each capture as a pair of files sharing one timestamp:

        <base_dir>/captured_images/scan_<ts>.<ext>
        <base_dir>/captured_json/scan_<ts>.json
    """

    def __init__(self, base_dir="captured_documents"):
        self.base_dir = base_dir
        self.images_dir = os.path.join(base_dir, "captured_images")
        self.json_dir = os.path.join(base_dir, "captured_json")

        for directory in (self.images_dir, self.json_dir):
            os.makedirs(directory, exist_ok=True)
        logger.info(f"Documents will be stored under {os.path.abspath(base_dir)}")

    @staticmethod
    def _timestamp():
        return datetime.now().strftime("%Y%m%d_%H%M%S_%f")

    @staticmethod
    def _write(path, mode, writer, error_cls, errors=(OSError,)):
        logger.debug(f"Writing {path}")
        try:
            kwargs = {} if 'b' in mode else {'encoding': 'utf-8'}
            with open(path, mode, **kwargs) as f:
                writer(f)
        except errors as e:
            raise error_cls(path, e)
        return path

    def save_image(self, data: bytes, extension=".jpg", prefix="scan", timestamp=None):
        """
        Store encoded image bytes.

        Returns a dict with the timestamp, filepath and filename used.
        Raises ImageSaveError if the file cannot be written.
        """
        timestamp = timestamp or self._timestamp()
        filename = f"{prefix}_{timestamp}{extension}"
        path = os.path.join(self.images_dir, filename)

        self._write(path, 'wb', lambda f: f.write(data), ImageSaveError)
        return {"timestamp": timestamp, "filepath": path, "filename": filename}

    def save_record_json(self, record, timestamp, prefix="scan"):
        """Store a capture record stamped with saved_at; returns its path."""
        path = os.path.join(self.json_dir, f"{prefix}_{timestamp}.json")
        payload = dict(record, saved_at=datetime.now().isoformat())

        return self._write(
            path, 'w',
            lambda f: json.dump(payload, f, indent=2, ensure_ascii=False),
            JSONSaveError,
            errors=(OSError, TypeError, ValueError),
        )

    def save_capture(self, result, extension=".jpg"):
        """
        Persist a successful CaptureResult.

        Returns:
            dict: timestamp, image_path, json_path
        """
        image = self.save_image(result.image, extension=extension)
        record = dict(result.to_dict(), image_file=image["filename"])
        json_path = self.save_record_json(record, image["timestamp"])
        logger.info(f"Capture saved as {image['filename']}")

        return {
            "timestamp": image["timestamp"],
            "image_path": image["filepath"],
            "json_path": json_path
        }
