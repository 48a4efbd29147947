"""
Configuration and logging setup
-------------------------------
Defaults live in one CONFIG dict. Any key can be overridden from the
environment (or a .env file) as IDVERIFY_<KEY>, and from code through
load_config(overrides).
"""

import os
import copy
import logging

from dotenv import load_dotenv

from idverify.errors import ConfigError

ENV_PREFIX = "IDVERIFY_"

# Configuration settings
CONFIG = {
    # ID scan settings
    "scan_interval": 1.0,              # Seconds between OCR attempts
    "max_scan_attempts": 60,           # Attempt budget before scan timeout
    "ocr_threshold": 128,              # Binary threshold (luminance midpoint)
    "ocr_psm": 6,                      # Tesseract page segmentation: single block
    "ocr_digit_whitelist": True,       # Restrict Tesseract to digits
    "ocr_substitutions": True,         # Map look-alike letters to digits before matching
    "id_length": 7,                    # Student IDs are exactly 7 digits

    # Face verification settings
    "detection_interval": 0.3,         # Seconds between detection ticks
    "match_throttle": 4.0,             # Minimum seconds between two comparisons
    "match_threshold": 0.5,            # Similarity needed to confirm a match
    "similarity_policy": "cosine",     # "cosine" or "distance"
    "min_detection_confidence": 0.5,   # Detector score needed by the quality gate
    "center_tolerance": 0.35,          # Max horizontal offset, fraction of frame width
    "min_face_fraction": 0.15,         # Face narrower than this is too far away
    "max_face_fraction": 0.85,         # Face wider than this is too close
    "face_timeout": 60.0,              # Wall-clock limit for the face phase (None = no limit)
    "max_mismatches": None,            # Below-threshold comparisons before failing (None = no limit)
    "start_delay": 0.5,                # Settling time between reference load and first tick

    # Camera settings
    "id_camera_index": 0,              # Camera facing the ID card ("environment")
    "face_camera_index": 0,            # Camera facing the student ("user")
    "id_camera_resolution": (1280, 720),
    "face_camera_resolution": (640, 480),

    # Detector / recognizer settings
    "detector_prototxt": "deploy.prototxt",
    "detector_model": "res10_300x300_ssd_iter_140000.caffemodel",
    "download_models": True,           # Fetch the SSD files on first run
    "landmark_model": "large",         # face_recognition landmark model: "large" or "small"
    "num_jitters": 1,                  # Re-sampling when computing descriptors

    # Registry settings
    "registry_source": "json",         # "json" or "firestore"
    "registry_path": "students.json",
    "firestore_collection": "students",
    "firebase_credentials": None,      # Path to the service account JSON
    "storage_bucket": None,            # Firebase Storage bucket for reference photos
    "reference_dir": None,             # Base directory for local reference photo paths

    # Logging
    "log_level": "INFO",
    "log_file": "verification.log",    # None logs to the console only
}

SIMILARITY_POLICIES = ("cosine", "distance")


def _parse_env_value(key, raw):
    """Convert an environment string to the type of the default value."""
    default = CONFIG[key]
    text = raw.strip()
    if text.lower() in ("none", "null", ""):
        return None
    if isinstance(default, bool):
        if text.lower() in ("1", "true", "yes", "on"):
            return True
        if text.lower() in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"{key}: expected a boolean, got {raw!r}")
    try:
        if isinstance(default, int):
            return int(text)
        if isinstance(default, float):
            return float(text)
        if isinstance(default, tuple):
            return tuple(int(part) for part in text.split(","))
    except ValueError as e:
        raise ConfigError(f"{key}: cannot parse {raw!r}") from e
    if key == "max_mismatches":
        try:
            return int(text)
        except ValueError as e:
            raise ConfigError(f"{key}: cannot parse {raw!r}") from e
    return text


def validate_config(config):
    """Raise ConfigError when a setting is out of range."""
    for key in ("match_threshold", "min_detection_confidence", "center_tolerance",
                "min_face_fraction", "max_face_fraction"):
        value = config[key]
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{key} must be within [0, 1], got {value}")

    for key in ("scan_interval", "detection_interval"):
        if config[key] <= 0:
            raise ConfigError(f"{key} must be positive, got {config[key]}")

    if config["match_throttle"] < 0 or config["start_delay"] < 0:
        raise ConfigError("match_throttle and start_delay cannot be negative")

    if config["max_scan_attempts"] < 1:
        raise ConfigError("max_scan_attempts must be at least 1")

    if config["min_face_fraction"] >= config["max_face_fraction"]:
        raise ConfigError("min_face_fraction must be smaller than max_face_fraction")

    if config["similarity_policy"] not in SIMILARITY_POLICIES:
        raise ConfigError(
            f"similarity_policy must be one of {SIMILARITY_POLICIES}, "
            f"got {config['similarity_policy']!r}"
        )

    if config["face_timeout"] is not None and config["face_timeout"] <= 0:
        raise ConfigError("face_timeout must be positive or None")

    if config["max_mismatches"] is not None and config["max_mismatches"] < 1:
        raise ConfigError("max_mismatches must be at least 1 or None")

    if config["registry_source"] not in ("json", "firestore"):
        raise ConfigError(f"unknown registry_source {config['registry_source']!r}")


def load_config(overrides=None, env_file=None):
    """
    Build a configuration dict.

    Args:
        overrides (dict, optional): Values that win over defaults and environment
        env_file (str, optional): .env file to read instead of the default lookup

    Returns:
        dict: Validated configuration
    """
    load_dotenv(env_file)
    config = copy.deepcopy(CONFIG)

    for key in CONFIG:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is not None:
            config[key] = _parse_env_value(key, raw)

    for key, value in (overrides or {}).items():
        if key not in CONFIG:
            raise ConfigError(f"unknown configuration key {key!r}")
        config[key] = value

    validate_config(config)
    return config


def setup_logging(config=None):
    """Configure console and file logging."""
    config = config or CONFIG
    handlers = [logging.StreamHandler()]
    if config.get("log_file"):
        handlers.append(logging.FileHandler(config["log_file"]))

    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )
