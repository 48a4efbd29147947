import copy
import math
import threading

import numpy as np
import pytest

from idverify.config import CONFIG
from idverify.errors import CameraError, CaptureError, ModelLoadError
from idverify.matching import DESCRIPTOR_LENGTH
from idverify.quality import BoundingBox, DetectionResult
from idverify.registry import StudentRegistry

FRAME_WIDTH = 640
FRAME_HEIGHT = 480


def make_config(**overrides):
    config = copy.deepcopy(CONFIG)
    config.update({"start_delay": 0.0, "log_file": None})
    config.update(overrides)
    return config


def unit_descriptor(index=0):
    vector = np.zeros(DESCRIPTOR_LENGTH)
    vector[index] = 1.0
    return vector


def descriptor_scoring(score):
    """A descriptor whose cosine similarity to unit_descriptor(0) is `score`."""
    cosine = 2.0 * score - 1.0
    vector = np.zeros(DESCRIPTOR_LENGTH)
    vector[0] = cosine
    vector[1] = math.sqrt(1.0 - cosine * cosine)
    return vector


def centered_detection(score=None, confidence=0.9, width=200):
    x = (FRAME_WIDTH - width) // 2
    descriptor = descriptor_scoring(score) if score is not None else None
    return DetectionResult(BoundingBox(x, 140, width, width), confidence, descriptor)


class FakeCamera:
    def __init__(self, fail_open=False, fail_read=False):
        self.fail_open = fail_open
        self.fail_read = fail_read
        self.open_count = 0
        self.release_count = 0
        self.reads = 0
        self._open = False

    @property
    def is_open(self):
        return self._open

    def open(self):
        if self.fail_open:
            raise CameraError("Camera permission denied")
        if not self._open:
            self.open_count += 1
        self._open = True

    def read(self):
        self.reads += 1
        if self.fail_read:
            raise CaptureError("Failed to capture frame")
        frame = np.full((FRAME_HEIGHT, FRAME_WIDTH, 3), 200, dtype=np.uint8)
        return frame

    def release(self):
        if self._open:
            self.release_count += 1
        self._open = False


class FakeReader:
    """OCR capability returning scripted text, one entry per call."""

    def __init__(self, texts=(), default="", fail_load=False):
        self.texts = list(texts)
        self.default = default
        self.fail_load = fail_load
        self.load_calls = 0
        self.calls = 0

    def load(self):
        self.load_calls += 1
        if self.fail_load:
            raise ModelLoadError("Tesseract OCR engine is not available")

    def recognize(self, image):
        self.calls += 1
        text = self.texts.pop(0) if self.texts else self.default
        if isinstance(text, Exception):
            raise text
        return text


class FakeAnalyzer:
    """Face capability returning scripted detections, one list per detect() call."""

    def __init__(self, script=(), default=None, reference=None, descriptor=None):
        self.script = list(script)
        self.default = list(default or [])
        self.reference = unit_descriptor(0) if reference is None else reference
        self.load_calls = 0
        self.descriptor = descriptor
        self.detect_calls = 0
        self.describe_calls = 0

    def load(self):
        self.load_calls += 1

    def detect(self, frame, min_confidence=None, with_descriptors=False):
        self.detect_calls += 1
        detections = self.script.pop(0) if self.script else self.default
        if isinstance(detections, Exception):
            raise detections
        return list(detections)

    def describe(self, frame, detection):
        self.describe_calls += 1
        return self.descriptor

    def describe_reference(self, image):
        return self.reference


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def fake_image_loader(locator, base_dir=None):
    return np.zeros((FRAME_HEIGHT, FRAME_WIDTH, 3), dtype=np.uint8)


class Recorder:
    """Collects calls to a callback."""

    def __init__(self):
        self.calls = []
        self.event = threading.Event()

    def __call__(self, *args):
        self.calls.append(args[0] if len(args) == 1 else args)
        self.event.set()

    def __len__(self):
        return len(self.calls)


STUDENTS = {
    "2201521": {
        "id": "2201521",
        "name": "John Paul",
        "department": "Computer Science",
        "year": "Junior",
        "faceImage": "/uploads/mememe.jpg",
        "email": "john.doe@university.edu",
    },
    "2201547": {
        "id": "2201547",
        "name": "Jane Smith",
        "department": "Engineering",
        "year": "Senior",
        "faceImage": "/uploads/jungkok.jpg",
        "email": "jane.smith@university.edu",
    },
}


@pytest.fixture
def registry():
    return StudentRegistry.from_mapping(STUDENTS)


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()
