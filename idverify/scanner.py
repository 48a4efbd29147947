"""ID acquisition loop: OCR the ID card until a registered student ID shows up."""

import logging

from idverify.capture import preprocess_for_ocr
from idverify.config import CONFIG
from idverify.loop import PeriodicLoop
from idverify.reconcile import find_valid_student_id

logger = logging.getLogger(__name__)


class IDAcquisitionLoop(PeriodicLoop):
    """
    Each tick grabs a frame, binarizes it, runs OCR and reconciles the text
    against the registry's valid IDs. Stops on the first ID found or when
    max_attempts ticks have produced nothing.
    """

    name = "id-scan"

    def __init__(self, camera, reader, valid_ids, on_identifier=None, on_timeout=None,
                 config=None, **kwargs):
        config = config or CONFIG
        super().__init__(camera, config["scan_interval"], **kwargs)
        self.reader = reader
        self.valid_ids = tuple(valid_ids)
        self.on_identifier = on_identifier
        self.on_timeout = on_timeout

        self.max_attempts = config["max_scan_attempts"]
        self.threshold = config["ocr_threshold"]
        self.substitutions = config["ocr_substitutions"]
        self.id_length = config["id_length"]

        self.attempts = 0
        self.student_id = None
        self.timed_out = False

    def _initialize(self):
        self.set_status('Loading OCR engine...')
        self.reader.load()
        self.set_status('Ready to scan')

    def _on_started(self):
        self.set_status('Scanning for student ID...')

    def _tick(self):
        self.set_status('Scanning for ID card...')
        try:
            frame = self.camera.read()
            text = self.reader.recognize(preprocess_for_ocr(frame, self.threshold))
            student_id = find_valid_student_id(
                text, self.valid_ids, self.substitutions, id_length=self.id_length
            )
        except Exception:
            self._count_attempt()
            raise

        # stop() may have handed the camera to the next loop while OCR ran
        if self.stopped:
            return

        if student_id:
            logger.info(f"Found student ID: {student_id}")
            self.student_id = student_id
            self._finish()
            self.set_status('ID detected!')
            if self.on_identifier:
                self.on_identifier(student_id)
            return

        self._count_attempt()

    def _count_attempt(self):
        self.attempts += 1
        self.set_status(f'Scanning... ({self.attempts}/{self.max_attempts})')

        if self.attempts >= self.max_attempts:
            logger.warning(f"No student ID after {self.attempts} attempts")
            self.timed_out = True
            self.error = 'Could not detect student ID. Please try again.'
            self._finish()
            self.set_status('Scan timeout')
            if self.on_timeout:
                self.on_timeout(self.attempts)
