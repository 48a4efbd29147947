"""
Console runner: python -m idverify

Scans a student ID card, then verifies the student's face, printing
progress as it goes. Exit code 0 = verified, 1 = not verified,
2 = configuration or registry problem.
"""

import sys
import argparse
import logging
import time

from idverify import events
from idverify.capture import Camera, FACING_ENVIRONMENT, FACING_USER
from idverify.config import load_config, setup_logging
from idverify.errors import ConfigError, RegistryError
from idverify.faces import FaceAnalyzer
from idverify.flow import Phase, VerificationFlow
from idverify.ocr import TesseractReader
from idverify.registry import StudentRegistry, initialize_firebase

logger = logging.getLogger("idverify")

POLL_INTERVAL = 0.2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="idverify",
        description="Verify a student by ID card OCR and face match.",
    )
    parser.add_argument("--env-file", help=".env file with IDVERIFY_* settings")
    parser.add_argument("--registry", help="Path to the students JSON registry")
    parser.add_argument("--threshold", type=float, help="Face match threshold (0-1)")
    parser.add_argument("--policy", choices=("cosine", "distance"), help="Similarity policy")
    parser.add_argument("--face-timeout", type=float, help="Seconds allowed for the face phase")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def _overrides_from_args(args):
    overrides = {}
    if args.registry:
        overrides["registry_source"] = "json"
        overrides["registry_path"] = args.registry
    if args.threshold is not None:
        overrides["match_threshold"] = args.threshold
    if args.policy:
        overrides["similarity_policy"] = args.policy
    if args.face_timeout is not None:
        overrides["face_timeout"] = args.face_timeout
    if args.log_level:
        overrides["log_level"] = args.log_level
    return overrides


def build_flow(config):
    """Wire the real capabilities into a VerificationFlow."""
    registry = StudentRegistry.from_config(config)
    if config.get("firebase_credentials") and config.get("storage_bucket"):
        initialize_firebase(config)

    id_camera = Camera(config["id_camera_index"], config["id_camera_resolution"], FACING_ENVIRONMENT)
    if config["face_camera_index"] == config["id_camera_index"]:
        face_camera = id_camera
    else:
        face_camera = Camera(config["face_camera_index"], config["face_camera_resolution"], FACING_USER)

    return VerificationFlow(
        registry,
        TesseractReader(config),
        FaceAnalyzer(config),
        id_camera,
        face_camera,
        config=config,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_config(_overrides_from_args(args), env_file=args.env_file)
    except ConfigError as e:
        print(f"❌ Configuration error: {e}")
        return 2

    setup_logging(config)

    try:
        flow = build_flow(config)
    except RegistryError as e:
        print(f"❌ Registry error: {e}")
        return 2

    def on_status(status):
        print(f"… {status}")

    def on_identifier(payload):
        student = payload['student']
        print(f"🪪 Student {payload['student_id']}: {student.name} ({student.department}, {student.year})")

    def on_multiple_faces(payload):
        print(f"⚠️ {payload['faces']} faces in frame")

    flow.subscribe(events.STATUS, on_status)
    flow.subscribe(events.IDENTIFIER_ACQUIRED, on_identifier)
    flow.subscribe(events.MULTI_FACE_REJECTED, on_multiple_faces)

    print("🚀 Starting verification. Hold your student ID up to the camera.")
    try:
        flow.start()
        while not flow.phase.is_terminal:
            time.sleep(POLL_INTERVAL)
    except KeyboardInterrupt:
        print("\n⚠️ Verification cancelled.")
        return 1
    finally:
        flow.close()

    if flow.phase is Phase.SUCCEEDED:
        result = flow.session.result
        print(f"✅ Verified {flow.session.student.name} "
              f"(similarity {result['similarity'] * 100:.1f}%, confidence {result['confidence']:.2f})")
        return 0

    failure = flow.session.failure or {}
    category = failure.get('category')
    print(f"❌ Not verified: {failure.get('message', 'unknown error')}"
          + (f" [{category.value}]" if category else ""))
    return 1


if __name__ == "__main__":
    sys.exit(main())
