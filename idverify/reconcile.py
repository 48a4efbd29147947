"""
Text reconciliation: turn raw OCR output into one registered student ID.

Matching order, first hit wins:
    1. a registered ID contained anywhere in the digit string
    2. the first 7-digit window that is a registered ID
    3. the first 7 digits, if registered
"""

import re
import logging

logger = logging.getLogger(__name__)

ID_LENGTH = 7

# Glyphs Tesseract commonly reads in place of digits
OCR_SUBSTITUTIONS = {
    'O': '0', 'o': '0',
    'I': '1', 'l': '1', 'L': '1', '|': '1', '!': '1',
    'S': '5', 's': '5', '$': '5',
    'Z': '2', 'z': '2',
    'B': '8', 'b': '8',
    'G': '9', 'g': '9', '&': '9',
    'A': '4', 'a': '4', '@': '4',
    'T': '7', 't': '7', '+': '7',
}

_NON_DIGITS = re.compile(r'\D')


def substitute_lookalikes(text, table=None):
    """Replace letters/symbols that look like digits with those digits."""
    table = OCR_SUBSTITUTIONS if table is None else table
    return text.translate(str.maketrans(table))


def extract_digits(text, substitutions=True, table=None):
    """Return only the digits of text, after the optional look-alike pass."""
    if not text:
        return ""
    if substitutions:
        text = substitute_lookalikes(text, table)
    return _NON_DIGITS.sub('', text)


def find_valid_student_id(text, valid_ids, substitutions=True, table=None, id_length=ID_LENGTH):
    """
    Find a registered student ID inside raw OCR text.

    Args:
        text (str): Raw recognized text, any noise allowed
        valid_ids (iterable): Registered IDs, each exactly id_length digits
        substitutions (bool): Apply the look-alike table before stripping non-digits
        table (dict, optional): Replacement look-alike table
        id_length (int): Length of a student ID

    Returns:
        str or None: The matched ID, None when nothing matches
    """
    valid_ids = list(valid_ids)
    valid_set = set(valid_ids)
    digits = extract_digits(text, substitutions, table)

    logger.debug(f"All digits found: {digits} ({len(digits)} digits)")

    for valid_id in valid_ids:
        if valid_id and valid_id in digits:
            logger.debug(f"Exact match: {valid_id}")
            return valid_id

    if len(digits) >= id_length:
        for i in range(len(digits) - id_length + 1):
            candidate = digits[i:i + id_length]
            if candidate in valid_set:
                logger.debug(f"Found in window: {candidate}")
                return candidate

        first = digits[:id_length]
        if first in valid_set:
            return first

    return None
