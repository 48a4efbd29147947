"""
Student ID + face verification
------------------------------
Reads a student ID card with OCR, looks the student up in the registry and
confirms the person in front of the camera matches the registered photo.
"""

__version__ = "1.0.0"
