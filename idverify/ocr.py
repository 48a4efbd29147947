"""Tesseract OCR adapter."""

import logging

import pytesseract

from idverify.config import CONFIG
from idverify.errors import ModelLoadError

logger = logging.getLogger(__name__)


def build_tesseract_config(psm=6, digits_only=True):
    ocr_config = f"--oem 3 --psm {psm}"
    if digits_only:
        ocr_config += " -c tessedit_char_whitelist=0123456789"
    return ocr_config


class TesseractReader:
    """Recognizes text on one preprocessed frame."""

    def __init__(self, config=None):
        config = config or CONFIG
        self.tesseract_config = build_tesseract_config(
            config["ocr_psm"], config["ocr_digit_whitelist"]
        )
        self.ready = False

    def load(self):
        """Make sure the Tesseract binary is available."""
        if self.ready:
            return
        try:
            version = pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            raise ModelLoadError(f"Tesseract OCR engine is not available: {e}") from e
        logger.info(f"Tesseract {version} ready")
        self.ready = True

    def recognize(self, image):
        """Return the raw recognized text of image."""
        text = pytesseract.image_to_string(image, config=self.tesseract_config)
        logger.debug(f"Raw OCR text: {text!r}")
        return text
