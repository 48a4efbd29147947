"""
Verification flow controller
----------------------------
Sequences the two factors of a verification session:

    AcquiringIdentifier -> VerifyingFace -> Succeeded
            |                    |
            v                    v
    FailedIdentifierUnknown   FailedFaceVerification / FailedMismatch

Every terminal phase waits for reset(). At most one loop is active at a
time and it owns the camera until the controller retires it.
"""

import logging
import threading
import time
from datetime import datetime
from enum import Enum

from idverify import events
from idverify.capture import load_image
from idverify.config import CONFIG
from idverify.events import EventBus, log_verification_event
from idverify.scanner import IDAcquisitionLoop
from idverify.verifier import FaceVerificationLoop, FAILURE_MISMATCH, FAILURE_TIMEOUT

logger = logging.getLogger(__name__)


class Phase(Enum):
    ACQUIRING_IDENTIFIER = "scanning_id"
    VERIFYING_FACE = "verifying_face"
    SUCCEEDED = "success"
    FAILED_IDENTIFIER_UNKNOWN = "failed_id"
    FAILED_FACE_VERIFICATION = "failed_face"
    FAILED_MISMATCH = "failed_mismatch"

    @property
    def is_failure(self):
        return self.value.startswith("failed")

    @property
    def is_terminal(self):
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({
    Phase.SUCCEEDED,
    Phase.FAILED_IDENTIFIER_UNKNOWN,
    Phase.FAILED_FACE_VERIFICATION,
    Phase.FAILED_MISMATCH,
})


class FailureCategory(Enum):
    UNKNOWN_IDENTIFIER = "unknown_identifier"
    SCAN_TIMEOUT = "scan_timeout"
    INITIALIZATION = "initialization"
    FACE_TIMEOUT = FAILURE_TIMEOUT
    FACE_MISMATCH = FAILURE_MISMATCH


# Progress display: three steps in order
STEPS = ("scan_id", "verify_face", "verified")
_STEP_PHASES = (Phase.ACQUIRING_IDENTIFIER, Phase.VERIFYING_FACE, Phase.SUCCEEDED)


def step_status(phase, step):
    """Return 'completed', 'active', 'pending' or 'error' for a progress step."""
    if phase.is_failure:
        return "error"
    current = _STEP_PHASES.index(phase)
    index = STEPS.index(step)
    if index < current:
        return "completed"
    if index == current:
        return "active"
    return "pending"


class VerificationSession:
    """Mutable state of one verification attempt."""

    def __init__(self):
        self.phase = Phase.ACQUIRING_IDENTIFIER
        self.student_id = None
        self.student = None
        self.result = None
        self.failure = None

    def bind_student(self, student_id, student):
        if student is not None and not student_id:
            raise ValueError("A matched student needs the identifier that produced it")
        self.student_id = student_id
        self.student = student

    def record_result(self, similarity, confidence):
        """Set the verification result. Returns False when one is already recorded."""
        if self.result is not None:
            return False
        self.result = {
            'similarity': similarity,
            'confidence': confidence,
            'timestamp': datetime.now().isoformat(),
            'student_id': self.student_id,
        }
        return True

    def fail(self, phase, category, message):
        self.phase = phase
        self.failure = {'category': category, 'message': message}

    def clear(self):
        self.phase = Phase.ACQUIRING_IDENTIFIER
        self.student_id = None
        self.student = None
        self.result = None
        self.failure = None

    def as_dict(self):
        return {
            'phase': self.phase.value,
            'student_id': self.student_id,
            'student': self.student,
            'result': dict(self.result) if self.result else None,
            'failure': dict(self.failure) if self.failure else None,
        }


class VerificationFlow:
    """
    Drives one session at a time through ID scan and face verification.

    Args:
        registry (StudentRegistry): Read-only student lookup
        reader: OCR capability with load() and recognize(image)
        analyzer: Face capability with load(), detect(frame), describe_reference(image)
        id_camera: Camera used for the ID card
        face_camera: Camera used for the face (may be the same object as id_camera)
        notifier (callable, optional): Called once per successful session
        config (dict, optional): Settings, defaults to CONFIG
        threaded (bool): Run loops in worker threads; False prepares loops
            inline and leaves ticking to the caller
    """

    def __init__(self, registry, reader, analyzer, id_camera, face_camera=None,
                 notifier=None, config=None, threaded=True, image_loader=load_image,
                 clock=time.monotonic):
        self.registry = registry
        self.reader = reader
        self.analyzer = analyzer
        self.id_camera = id_camera
        self.face_camera = face_camera if face_camera is not None else id_camera
        self.notifier = notifier
        self.config = config or CONFIG
        self.threaded = threaded
        self.image_loader = image_loader
        self.clock = clock

        self.session = VerificationSession()
        self.status = "Initializing..."
        self.bus = EventBus()

        self._lock = threading.RLock()
        self._generation = 0
        self._scanner = None
        self._verifier = None
        self._started = False
        self._closed = False
        self._pending = []

    # -- caller interface ----------------------------------------------

    @property
    def phase(self):
        return self.session.phase

    @property
    def active_loop(self):
        return self._scanner or self._verifier

    @property
    def scanner(self):
        return self._scanner

    @property
    def verifier(self):
        return self._verifier

    def subscribe(self, event_type, callback):
        return self.bus.subscribe(event_type, callback)

    def step_status(self, step):
        return step_status(self.session.phase, step)

    def start(self):
        """Begin a session. Does nothing if one is already running."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Verification flow is closed")
            if not self._started:
                self._started = True
                logger.info("Starting verification session")
                self._begin_scan()
        self._flush()

    def reset(self):
        """Stop any active loop, clear the session and scan for an ID again."""
        with self._lock:
            self._generation += 1
            retired = self._retire_loops()
            self.session.clear()
        self._stop_loops(retired)

        log_verification_event("SESSION_RESET", "Resetting verification flow")
        with self._lock:
            if not self._closed:
                self._started = True
                self._queue(events.PHASE_CHANGED, {'phase': self.session.phase})
                self._begin_scan()
        self._flush()

    def close(self):
        """Stop everything and release the cameras. No further sessions."""
        with self._lock:
            self._closed = True
            self._generation += 1
            retired = self._retire_loops()
        self._stop_loops(retired)
        self.id_camera.release()
        self.face_camera.release()

    def fail_face_verification(self, reason="Face verification failed"):
        """External timeout/failure signal for the face phase."""
        self._on_face_failed(self._generation, FailureCategory.FACE_TIMEOUT.value, reason)

    def handle_identifier(self, student_id):
        self._on_identifier(self._generation, student_id)

    def handle_face_verified(self, result):
        self._on_face_verified(self._generation, result)

    # -- loop plumbing -------------------------------------------------

    def _retire_loops(self):
        retired = [loop for loop in (self._scanner, self._verifier) if loop is not None]
        self._scanner = None
        self._verifier = None
        return retired

    def _stop_loops(self, loops):
        # Never called with self._lock held: stop() joins the worker thread
        for loop in loops:
            loop.stop()

    def _launch(self, loop):
        if self.threaded:
            loop.start()
        else:
            loop.prepare()

    def _bind(self, handler, generation):
        def callback(*args):
            handler(generation, *args)
        return callback

    def _begin_scan(self):
        generation = self._generation
        self._scanner = IDAcquisitionLoop(
            self.id_camera,
            self.reader,
            self.registry.valid_ids(),
            on_identifier=self._bind(self._on_identifier, generation),
            on_timeout=self._bind(self._on_scan_timeout, generation),
            on_status=self._bind(self._on_status, generation),
            on_init_error=self._bind(self._on_scan_init_error, generation),
            config=self.config,
            clock=self.clock,
        )
        self._launch(self._scanner)

    def _begin_face_verification(self):
        generation = self._generation
        self._verifier = FaceVerificationLoop(
            self.face_camera,
            self.analyzer,
            self.session.student.face_image,
            on_verified=self._bind(self._on_face_verified, generation),
            on_failed=self._bind(self._on_face_failed, generation),
            on_multiple_faces=self._bind(self._on_multiple_faces, generation),
            on_status=self._bind(self._on_status, generation),
            on_init_error=self._bind(self._on_face_init_error, generation),
            config=self.config,
            image_loader=self.image_loader,
            clock=self.clock,
        )
        self._launch(self._verifier)

    def _queue(self, event_type, payload):
        self._pending.append((event_type, payload))

    def _flush(self):
        """Deliver queued events outside the lock."""
        with self._lock:
            pending, self._pending = self._pending, []
        for event_type, payload in pending:
            self.bus.emit(event_type, payload)

    def _set_phase(self, phase):
        self.session.phase = phase
        logger.info(f"Phase -> {phase.name}")
        self._queue(events.PHASE_CHANGED, {'phase': phase})

    def _fail(self, phase, category, message):
        self.session.fail(phase, category, message)
        logger.info(f"Phase -> {phase.name} ({category.value}: {message})")
        self._queue(events.PHASE_CHANGED, {'phase': phase})

    def _is_current(self, generation, phase):
        return generation == self._generation and self.session.phase is phase

    # -- transitions ---------------------------------------------------

    def _on_status(self, generation, status):
        with self._lock:
            if generation != self._generation:
                return
            self.status = status
            self._queue(events.STATUS, status)
        self._flush()

    def _on_identifier(self, generation, student_id):
        with self._lock:
            if not self._is_current(generation, Phase.ACQUIRING_IDENTIFIER):
                return
            scanner, self._scanner = self._scanner, None

            student = self.registry.lookup(student_id)
            if student is None:
                self.session.student_id = student_id
                self._fail(
                    Phase.FAILED_IDENTIFIER_UNKNOWN,
                    FailureCategory.UNKNOWN_IDENTIFIER,
                    f"Student ID {student_id} is not registered",
                )
                log_verification_event("IDENTIFIER_UNKNOWN", f"ID {student_id} not in registry", "WARNING")
                self._queue(events.IDENTIFIER_UNKNOWN, {'student_id': student_id})
            else:
                self.session.bind_student(student_id, student)
                log_verification_event("IDENTIFIER_ACQUIRED", f"ID {student_id} ({student.name})")
                self._set_phase(Phase.VERIFYING_FACE)
                self._queue(events.IDENTIFIER_ACQUIRED, {'student_id': student_id, 'student': student})

        # The scan loop hands the camera back before the face loop takes it
        if scanner is not None:
            scanner.stop()

        with self._lock:
            if self._is_current(generation, Phase.VERIFYING_FACE) and self._verifier is None:
                self._begin_face_verification()
        self._flush()

    def _on_scan_timeout(self, generation, attempts):
        with self._lock:
            if not self._is_current(generation, Phase.ACQUIRING_IDENTIFIER):
                return
            scanner, self._scanner = self._scanner, None
            self._fail(
                Phase.FAILED_IDENTIFIER_UNKNOWN,
                FailureCategory.SCAN_TIMEOUT,
                'Could not detect student ID. Please try again.',
            )
            log_verification_event("SCAN_TIMEOUT", f"No ID after {attempts} attempts", "WARNING")
            self._queue(events.SCAN_TIMEOUT, {'attempts': attempts})
        if scanner is not None:
            scanner.stop()
        self._flush()

    def _on_scan_init_error(self, generation, error):
        with self._lock:
            if not self._is_current(generation, Phase.ACQUIRING_IDENTIFIER):
                return
            scanner, self._scanner = self._scanner, None
            self._fail(Phase.FAILED_IDENTIFIER_UNKNOWN, FailureCategory.INITIALIZATION, str(error))
            log_verification_event("SCAN_INIT_FAILED", str(error), "ERROR")
            self._queue(events.INITIALIZATION_FAILED, {
                'phase': Phase.ACQUIRING_IDENTIFIER, 'error': str(error)
            })
        if scanner is not None:
            scanner.stop()
        self._flush()

    def _on_face_init_error(self, generation, error):
        with self._lock:
            if not self._is_current(generation, Phase.VERIFYING_FACE):
                return
            verifier, self._verifier = self._verifier, None
            self._fail(Phase.FAILED_FACE_VERIFICATION, FailureCategory.INITIALIZATION, str(error))
            log_verification_event("FACE_INIT_FAILED", str(error), "ERROR")
            self._queue(events.INITIALIZATION_FAILED, {
                'phase': Phase.VERIFYING_FACE, 'error': str(error)
            })
            self._queue(events.FACE_VERIFICATION_FAILED, {
                'category': FailureCategory.INITIALIZATION, 'message': str(error)
            })
        if verifier is not None:
            verifier.stop()
        self._flush()

    def _on_face_verified(self, generation, result):
        with self._lock:
            if not self._is_current(generation, Phase.VERIFYING_FACE):
                return
            if not self.session.record_result(result['similarity'], result['confidence']):
                return
            verifier, self._verifier = self._verifier, None

            self._set_phase(Phase.SUCCEEDED)
            log_verification_event(
                "FACE_VERIFIED",
                f"ID {self.session.student_id} similarity {result['similarity']:.3f} "
                f"confidence {result['confidence']:.3f}",
            )
            self._queue(events.FACE_VERIFIED, dict(self.session.result))

        if verifier is not None:
            verifier.stop()
        if self.notifier:
            try:
                self.notifier()
            except Exception as e:
                logger.warning(f"Success notifier failed: {e}")
        self._flush()

    def _on_face_failed(self, generation, category, message):
        with self._lock:
            if not self._is_current(generation, Phase.VERIFYING_FACE):
                return
            verifier, self._verifier = self._verifier, None

            category = FailureCategory(category)
            if category is FailureCategory.FACE_MISMATCH:
                phase = Phase.FAILED_MISMATCH
            else:
                phase = Phase.FAILED_FACE_VERIFICATION
            self._fail(phase, category, message)
            log_verification_event("FACE_VERIFICATION_FAILED", message, "WARNING")
            self._queue(events.FACE_VERIFICATION_FAILED, {'category': category, 'message': message})

        if verifier is not None:
            verifier.stop()
        self._flush()

    def _on_multiple_faces(self, generation, count):
        with self._lock:
            if generation != self._generation:
                return
            self._queue(events.MULTI_FACE_REJECTED, {'faces': count})
        log_verification_event("MULTIPLE_FACES", f"{count} faces in frame", "WARNING")
        self._flush()
