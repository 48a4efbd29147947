"""Detection value types and the pre-comparison quality gate."""

from collections import namedtuple

from idverify.config import CONFIG

BoundingBox = namedtuple('BoundingBox', ['x', 'y', 'width', 'height'])


class DetectionResult:
    """One detected face: box, detector confidence and 128-d descriptor."""

    __slots__ = ('box', 'confidence', 'descriptor')

    def __init__(self, box, confidence, descriptor=None):
        self.box = box if isinstance(box, BoundingBox) else BoundingBox(*box)
        self.confidence = float(confidence)
        self.descriptor = tuple(float(v) for v in descriptor) if descriptor is not None else None

    @property
    def center_x(self):
        return self.box.x + self.box.width / 2.0

    def to_location(self):
        """Box as a face_recognition location tuple (top, right, bottom, left)."""
        x, y, w, h = (int(round(v)) for v in self.box)
        return (y, x + w, y + h, x)

    def __repr__(self):
        return f"DetectionResult(box={tuple(self.box)}, confidence={self.confidence:.3f})"


REASON_OK = "Valid face"
REASON_LOW_CONFIDENCE = "Please ensure your face is well-lit and clear"
REASON_OFF_CENTER = "Please center your face in the frame"
REASON_TOO_SMALL = "Please move closer to the camera"
REASON_TOO_LARGE = "Please move back from the camera"


class QualityGate:
    """Accepts a detection only when it is confident, centered and well sized."""

    def __init__(self, min_confidence=None, center_tolerance=None,
                 min_face_fraction=None, max_face_fraction=None, config=None):
        config = config or CONFIG
        self.min_confidence = config["min_detection_confidence"] if min_confidence is None else min_confidence
        self.center_tolerance = config["center_tolerance"] if center_tolerance is None else center_tolerance
        self.min_face_fraction = config["min_face_fraction"] if min_face_fraction is None else min_face_fraction
        self.max_face_fraction = config["max_face_fraction"] if max_face_fraction is None else max_face_fraction

    def assess(self, detection, frame_width):
        """
        Check one detection against the frame it came from.

        Args:
            detection (DetectionResult): Face to check
            frame_width (int): Width of the frame in pixels

        Returns:
            tuple: (passed, reason)
        """
        if detection.confidence < self.min_confidence:
            return False, REASON_LOW_CONFIDENCE

        frame_center = frame_width / 2.0
        if abs(detection.center_x - frame_center) > frame_width * self.center_tolerance:
            return False, REASON_OFF_CENTER

        if detection.box.width < frame_width * self.min_face_fraction:
            return False, REASON_TOO_SMALL
        if detection.box.width > frame_width * self.max_face_fraction:
            return False, REASON_TOO_LARGE

        return True, REASON_OK

    def passes(self, detection, frame_width):
        return self.assess(detection, frame_width)[0]
