"""
Face detection and descriptor extraction
----------------------------------------
Boxes and confidences come from OpenCV's ResNet-10 SSD face detector,
128-d descriptors from face_recognition (dlib ResNet) on those boxes.
"""

import os
import logging
import threading
import urllib.request

import cv2
import numpy as np
import face_recognition

from idverify.config import CONFIG
from idverify.errors import ModelLoadError, ReferenceFaceError
from idverify.quality import BoundingBox, DetectionResult

logger = logging.getLogger(__name__)

MODEL_URL = "https://raw.githubusercontent.com/opencv/opencv_3rdparty/dnn_samples_face_detector_20170830/res10_300x300_ssd_iter_140000.caffemodel"
PROTOTXT_URL = "https://raw.githubusercontent.com/opencv/opencv/master/samples/dnn/face_detector/deploy.prototxt"

SSD_INPUT_SIZE = (300, 300)
SSD_MEAN = (104.0, 177.0, 123.0)


def download_detector_files(prototxt_path, model_path):
    """Fetch the SSD prototxt and weights when they are missing."""
    for url, path in ((PROTOTXT_URL, prototxt_path), (MODEL_URL, model_path)):
        if os.path.exists(path):
            continue
        logger.info(f"Downloading {os.path.basename(path)}...")
        try:
            urllib.request.urlretrieve(url, path)
        except OSError as e:
            raise ModelLoadError(f"Failed to download {url}: {e}") from e


class FaceAnalyzer:
    """Detects faces with confidences and computes their descriptors."""

    def __init__(self, config=None):
        config = config or CONFIG
        self.prototxt_path = config["detector_prototxt"]
        self.model_path = config["detector_model"]
        self.download_models = config["download_models"]
        self.min_confidence = config["min_detection_confidence"]
        self.landmark_model = config["landmark_model"]
        self.num_jitters = config["num_jitters"]
        self.net = None
        self._net_lock = threading.Lock()

    @property
    def ready(self):
        return self.net is not None

    def load(self):
        """Load the detector network once. Raises ModelLoadError on failure."""
        if self.net is not None:
            return
        if self.download_models:
            download_detector_files(self.prototxt_path, self.model_path)
        try:
            self.net = cv2.dnn.readNetFromCaffe(self.prototxt_path, self.model_path)
        except cv2.error as e:
            raise ModelLoadError(f"Cannot load face detector: {e}") from e
        logger.info("Face detector loaded")

    def _detect_boxes(self, frame, min_confidence):
        h, w = frame.shape[:2]
        blob = cv2.dnn.blobFromImage(
            cv2.resize(frame, SSD_INPUT_SIZE), 1.0, SSD_INPUT_SIZE, SSD_MEAN
        )
        with self._net_lock:
            self.net.setInput(blob)
            detections = self.net.forward()

        boxes = []
        for i in range(detections.shape[2]):
            confidence = float(detections[0, 0, i, 2])
            if confidence < min_confidence:
                continue

            box = detections[0, 0, i, 3:7] * np.array([w, h, w, h])
            x1, y1, x2, y2 = box.astype("int")
            x1, y1 = max(0, x1), max(0, y1)
            x2, y2 = min(w, x2), min(h, y2)
            if x2 <= x1 or y2 <= y1:
                continue
            boxes.append((BoundingBox(int(x1), int(y1), int(x2 - x1), int(y2 - y1)), confidence))
        return boxes

    def detect(self, frame, min_confidence=None, with_descriptors=False):
        """
        Find every face in a BGR frame.

        Descriptors are left out unless with_descriptors is set; use
        describe() for the one face that is actually compared.

        Returns:
            list[DetectionResult]: One entry per face
        """
        if self.net is None:
            raise ModelLoadError("Face detector used before load()")

        min_confidence = self.min_confidence if min_confidence is None else min_confidence
        boxes = self._detect_boxes(frame, min_confidence)
        if not with_descriptors:
            return [DetectionResult(box, confidence) for box, confidence in boxes]

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = []
        for box, confidence in boxes:
            detection = DetectionResult(box, confidence)
            descriptor = self._encode(rgb, detection)
            results.append(DetectionResult(box, confidence, descriptor))
        return results

    def _encode(self, rgb, detection):
        encodings = face_recognition.face_encodings(
            rgb,
            known_face_locations=[detection.to_location()],
            num_jitters=self.num_jitters,
            model=self.landmark_model,
        )
        return encodings[0] if encodings else None

    def describe(self, frame, detection):
        """128-d descriptor for one detection in a BGR frame, or None."""
        return self._encode(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB), detection)

    def describe_reference(self, image):
        """
        Extract the descriptor of the most confident face in a reference photo.

        Raises:
            ReferenceFaceError: No face, or no descriptor could be computed
        """
        detections = [d for d in self.detect(image, with_descriptors=True) if d.descriptor is not None]
        if not detections:
            raise ReferenceFaceError("No face found in reference image")
        best = max(detections, key=lambda d: d.confidence)
        logger.info(f"Reference face loaded (score {best.confidence:.3f})")
        return best.descriptor
