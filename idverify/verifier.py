"""
Face verification loop
----------------------
Compares the student in front of the camera with their reference photo.
The reference descriptor is extracted exactly once during initialization;
after that each tick detects faces, gates the single face on quality and,
at most once per throttle interval, scores it against the reference.
"""

import logging

from idverify.capture import load_image
from idverify.config import CONFIG
from idverify.errors import ReferenceFaceError
from idverify.loop import PeriodicLoop
from idverify.matching import get_comparator
from idverify.quality import QualityGate

logger = logging.getLogger(__name__)

FAILURE_TIMEOUT = "face_timeout"
FAILURE_MISMATCH = "face_mismatch"


class FaceVerificationLoop(PeriodicLoop):

    name = "face-verify"

    def __init__(self, camera, analyzer, reference_locator, on_verified=None, on_failed=None,
                 on_multiple_faces=None, config=None, image_loader=load_image,
                 **kwargs):
        config = config or CONFIG
        kwargs.setdefault('initial_delay', config["start_delay"])
        super().__init__(camera, config["detection_interval"], **kwargs)
        self.analyzer = analyzer
        self.reference_locator = reference_locator
        self.image_loader = image_loader
        self.reference_dir = config.get("reference_dir")
        self.on_verified = on_verified
        self.on_failed = on_failed
        self.on_multiple_faces = on_multiple_faces

        self.match_threshold = config["match_threshold"]
        self.match_throttle = config["match_throttle"]
        self.face_timeout = config["face_timeout"]
        self.max_mismatches = config["max_mismatches"]
        self.compare = get_comparator(config["similarity_policy"])
        self.quality_gate = QualityGate(config=config)

        self.reference_descriptor = None
        self.face_detected = False
        self.similarity_score = None
        self.is_verifying = False
        self.has_verified = False
        self.mismatches = 0
        self.comparisons = 0
        self.result = None

        self._last_match_time = None
        self._started_at = None

    def _initialize(self):
        self.set_status('Loading face recognition models...')
        self.analyzer.load()

        self.set_status('Loading reference face...')
        image = self.image_loader(self.reference_locator, self.reference_dir)
        descriptor = self.analyzer.describe_reference(image)
        if descriptor is None:
            raise ReferenceFaceError("No face found in reference image")
        self.reference_descriptor = tuple(descriptor)
        self.set_status('Ready - Look at camera')

    def _on_started(self):
        self._started_at = self.clock()
        self.set_status('Looking for face...')

    def _tick(self):
        if self.has_verified:
            return
        if self.reference_descriptor is None:
            raise ReferenceFaceError("Face loop ticked before the reference descriptor was loaded")

        now = self.clock()
        if self._started_at is None:
            self._started_at = now

        try:
            frame = self.camera.read()
            detections = self.analyzer.detect(frame)

            if self.stopped:
                return

            if not detections:
                self.face_detected = False
                self.similarity_score = None
                self.set_status('Please look at the camera')
            elif len(detections) == 1:
                self.face_detected = True
                self._evaluate(detections[0], frame, now)
            else:
                self.face_detected = False
                self.set_status('Multiple faces detected. Only one person allowed.')
                if self.on_multiple_faces:
                    self.on_multiple_faces(len(detections))
        finally:
            # Runs on failed captures and detections too
            self._check_deadline(now)

    def _check_deadline(self, now):
        if self.has_verified or self.stopped or self.face_timeout is None:
            return
        if now - self._started_at >= self.face_timeout:
            logger.warning(f"Face verification timed out after {self.face_timeout}s")
            self._fail(FAILURE_TIMEOUT, 'Face verification timed out')

    def _should_match(self, now):
        return self._last_match_time is None or now - self._last_match_time >= self.match_throttle

    def _evaluate(self, detection, frame, now):
        passed, reason = self.quality_gate.assess(detection, frame.shape[1])
        if not passed:
            self.set_status(reason)
            return
        if not self._should_match(now):
            return

        descriptor = detection.descriptor
        if descriptor is None:
            descriptor = self.analyzer.describe(frame, detection)
        if descriptor is None:
            self.set_status("Face detected - Processing...")
            return

        self._last_match_time = now
        self.is_verifying = True
        self.set_status('Verifying face...')
        try:
            similarity = self.compare(descriptor, self.reference_descriptor)
        finally:
            self.is_verifying = False

        self.comparisons += 1
        self.similarity_score = similarity
        logger.info(f"Match score: {similarity * 100:.1f}%")

        if similarity >= self.match_threshold and not self.has_verified:
            self._confirm(similarity, detection.confidence)
        elif similarity < self.match_threshold:
            self.mismatches += 1
            self.set_status(f'No match ({similarity * 100:.1f}%)')
            if self.max_mismatches is not None and self.mismatches >= self.max_mismatches:
                self._fail(FAILURE_MISMATCH, f'Face did not match after {self.mismatches} attempts')

    def _confirm(self, similarity, confidence):
        self.has_verified = True
        self.result = {'similarity': similarity, 'confidence': confidence}
        self._finish()
        self.set_status('Face verified!')
        logger.info(f"FACE VERIFIED ({similarity * 100:.1f}%)")

        if self.on_verified:
            self.on_verified(dict(self.result))

    def _fail(self, category, message):
        self.error = message
        self._finish()
        self.set_status(message)
        if self.on_failed:
            self.on_failed(category, message)
