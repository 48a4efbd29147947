"""
Camera access and image preparation
-----------------------------------
Camera wraps one cv2.VideoCapture stream. Loops own a Camera while they
are active and release it when they stop.
"""

import os
import logging
import threading

import cv2
import numpy as np
from firebase_admin import storage

from idverify.errors import CameraError, CaptureError, ReferenceFaceError

logger = logging.getLogger(__name__)

FACING_USER = "user"
FACING_ENVIRONMENT = "environment"


class Camera:
    """One capture stream opened on demand and released on stop."""

    def __init__(self, index=0, resolution=(640, 480), facing=FACING_USER):
        self.index = index
        self.resolution = resolution
        self.facing = facing
        self._capture = None
        self._lock = threading.Lock()

    @property
    def is_open(self):
        return self._capture is not None

    def open(self):
        with self._lock:
            if self._capture is not None:
                return

            capture = cv2.VideoCapture(self.index)
            if not capture.isOpened():
                capture.release()
                raise CameraError(f"Unable to access camera {self.index} ({self.facing})")

            width, height = self.resolution
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            self._capture = capture
            logger.info(f"Camera {self.index} opened ({self.facing}, {width}x{height})")

    def read(self):
        """Grab one BGR frame."""
        with self._lock:
            if self._capture is None:
                raise CaptureError("Camera is not open")
            ret, frame = self._capture.read()
        if not ret or frame is None:
            raise CaptureError("Failed to capture frame")
        return frame

    def release(self):
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None
                logger.info(f"Camera {self.index} released")


def preprocess_for_ocr(frame, threshold=128):
    """
    Grayscale + binary threshold to maximise contrast for OCR.

    Args:
        frame: BGR (or already grayscale) image
        threshold (int): Luminance midpoint, pixels above become white

    Returns:
        numpy.ndarray: Single-channel image of 0 and 255 values
    """
    if frame.ndim == 3:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    else:
        gray = frame
    _, binary = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY)
    return binary


def _decode_image_bytes(image_bytes, locator):
    nparr = np.frombuffer(image_bytes, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if image is None:
        raise ReferenceFaceError(f"Unable to decode reference image {locator}")
    return image


def _split_storage_locator(locator):
    """'gs://bucket/path' -> (bucket, path); 'storage:path' -> (None, path)."""
    if locator.startswith("gs://"):
        bucket, _, path = locator[len("gs://"):].partition("/")
        return bucket, path
    return None, locator[len("storage:"):].lstrip("/")


def load_image(locator, base_dir=None):
    """
    Load a reference photo as a BGR image.

    Local paths are read from disk (relative to base_dir when given). Firebase
    Storage objects (gs://bucket/path or storage:path) are downloaded into memory.
    """
    if not locator:
        raise ReferenceFaceError("Student has no reference photo")

    if locator.startswith("gs://") or locator.startswith("storage:"):
        bucket_name, path = _split_storage_locator(locator)
        try:
            bucket = storage.bucket(bucket_name) if bucket_name else storage.bucket()
            image_bytes = bucket.blob(path).download_as_bytes()
        except Exception as e:
            raise ReferenceFaceError(f"Failed to download reference image {locator}: {e}") from e
        return _decode_image_bytes(image_bytes, locator)

    path = locator.lstrip("/") if base_dir else locator
    if base_dir:
        path = os.path.join(base_dir, path)
    if not os.path.exists(path):
        raise ReferenceFaceError(f"Reference image not found: {path}")

    image = cv2.imread(path)
    if image is None:
        raise ReferenceFaceError(f"Unable to decode reference image {path}")
    return image
