"""Exceptions raised by the verification core."""


class VerificationError(Exception):
    """Base class for every error raised by idverify."""


class ConfigError(VerificationError):
    """Invalid configuration value or unknown configuration key."""


class RegistryError(VerificationError):
    """Student registry source could not be read or is malformed."""


class InitializationError(VerificationError):
    """A capability could not be brought up. Fatal for the session."""


class CameraError(InitializationError):
    """Camera could not be opened."""


class ModelLoadError(InitializationError):
    """Detector, recognizer or OCR engine could not be loaded."""


class ReferenceFaceError(InitializationError):
    """No usable face descriptor could be extracted from the reference photo."""


class CaptureError(VerificationError):
    """A single frame grab failed. Transient, handled per tick."""
