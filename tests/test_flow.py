import pytest

from idverify import events
from idverify.errors import ReferenceFaceError
from idverify.flow import FailureCategory, Phase, VerificationFlow, step_status

from conftest import (
    FakeAnalyzer,
    FakeCamera,
    FakeClock,
    FakeReader,
    Recorder,
    centered_detection,
    fake_image_loader,
    make_config,
)


def make_flow(registry, reader=None, analyzer=None, notifier=None, image_loader=fake_image_loader,
              threaded=False, **config):
    camera = FakeCamera()
    flow = VerificationFlow(
        registry,
        reader or FakeReader(),
        analyzer or FakeAnalyzer(),
        camera,
        notifier=notifier,
        config=make_config(**config),
        threaded=threaded,
        image_loader=image_loader,
        clock=FakeClock(),
    )
    return flow, camera


def subscribe_all(flow):
    recorders = {event_type: Recorder() for event_type in events.EVENT_TYPES}
    for event_type, recorder in recorders.items():
        flow.subscribe(event_type, recorder)
    return recorders


def test_end_to_end_success_and_reset(registry):
    notifier = Recorder()
    flow, camera = make_flow(
        registry,
        reader=FakeReader(["NIM: 2201547 UNIV"]),
        analyzer=FakeAnalyzer([[centered_detection(0.62)]]),
        notifier=notifier,
    )
    seen = subscribe_all(flow)
    flow.start()
    assert flow.phase is Phase.ACQUIRING_IDENTIFIER

    flow.scanner.tick()
    assert flow.phase is Phase.VERIFYING_FACE
    assert flow.session.student_id == "2201547"
    assert flow.session.student.name == "Jane Smith"
    assert flow.scanner is None
    assert seen[events.IDENTIFIER_ACQUIRED].calls[0]["student_id"] == "2201547"

    flow.verifier.tick()
    assert flow.phase is Phase.SUCCEEDED
    assert flow.session.result["similarity"] == pytest.approx(0.62)
    assert flow.session.result["student_id"] == "2201547"
    assert "timestamp" in flow.session.result
    assert len(seen[events.FACE_VERIFIED]) == 1
    assert len(notifier) == 1
    assert flow.active_loop is None
    assert not camera.is_open

    flow.reset()
    assert flow.phase is Phase.ACQUIRING_IDENTIFIER
    assert flow.session.student_id is None
    assert flow.session.student is None
    assert flow.session.result is None
    assert flow.session.failure is None
    assert flow.scanner is not None
    assert flow.verifier is None


def test_success_is_idempotent(registry):
    notifier = Recorder()
    flow, _ = make_flow(
        registry,
        reader=FakeReader(["2201547"]),
        analyzer=FakeAnalyzer(default=[centered_detection(0.9)]),
        notifier=notifier,
    )
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()
    verifier = flow.verifier
    verifier.tick()
    recorded = dict(flow.session.result)

    verifier.tick()
    flow.handle_face_verified({"similarity": 0.99, "confidence": 0.99})

    assert flow.session.result == recorded
    assert len(seen[events.FACE_VERIFIED]) == 1
    assert len(notifier) == 1


def test_unknown_id_never_starts_face_loop(registry):
    analyzer = FakeAnalyzer()
    flow, camera = make_flow(registry, reader=FakeReader(["1234567"]), analyzer=analyzer)
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()

    assert flow.phase is Phase.FAILED_IDENTIFIER_UNKNOWN
    assert flow.session.failure["category"] is FailureCategory.UNKNOWN_IDENTIFIER
    assert flow.verifier is None
    assert analyzer.load_calls == 0
    assert seen[events.IDENTIFIER_UNKNOWN].calls == [{"student_id": "1234567"}]
    assert not camera.is_open


def test_multiple_faces_keep_verifying(registry):
    analyzer = FakeAnalyzer([[centered_detection(0.9), centered_detection(0.9)]])
    flow, _ = make_flow(registry, reader=FakeReader(["2201521"]), analyzer=analyzer)
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()
    flow.verifier.tick()

    assert flow.phase is Phase.VERIFYING_FACE
    assert flow.status == "Multiple faces detected. Only one person allowed."
    assert flow.verifier.comparisons == 0
    assert seen[events.MULTI_FACE_REJECTED].calls == [{"faces": 2}]


def test_scan_timeout(registry):
    flow, camera = make_flow(registry, max_scan_attempts=2)
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()
    flow.scanner.tick()

    assert flow.phase is Phase.FAILED_IDENTIFIER_UNKNOWN
    assert flow.session.failure["category"] is FailureCategory.SCAN_TIMEOUT
    assert flow.session.student_id is None
    assert seen[events.SCAN_TIMEOUT].calls == [{"attempts": 2}]
    assert flow.scanner is None
    assert not camera.is_open


def test_scan_init_failure(registry):
    flow, _ = make_flow(registry, reader=FakeReader(fail_load=True))
    seen = subscribe_all(flow)
    flow.start()

    assert flow.phase is Phase.FAILED_IDENTIFIER_UNKNOWN
    assert flow.session.failure["category"] is FailureCategory.INITIALIZATION
    assert len(seen[events.INITIALIZATION_FAILED]) == 1


def test_reference_failure_fails_face_phase(registry):
    def broken_loader(locator, base_dir=None):
        raise ReferenceFaceError(f"Reference image not found: {locator}")

    flow, camera = make_flow(registry, reader=FakeReader(["2201547"]), image_loader=broken_loader)
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()

    assert flow.phase is Phase.FAILED_FACE_VERIFICATION
    assert flow.session.failure["category"] is FailureCategory.INITIALIZATION
    assert "jungkok.jpg" in flow.session.failure["message"]
    assert seen[events.FACE_VERIFICATION_FAILED].calls[0]["category"] is FailureCategory.INITIALIZATION
    assert flow.verifier is None
    assert not camera.is_open


def test_face_timeout(registry):
    flow, _ = make_flow(registry, reader=FakeReader(["2201547"]), face_timeout=5.0)
    flow.start()
    flow.scanner.tick()
    verifier = flow.verifier
    verifier.tick()
    flow.clock.advance(5.0)
    verifier.tick()

    assert flow.phase is Phase.FAILED_FACE_VERIFICATION
    assert flow.session.failure["category"] is FailureCategory.FACE_TIMEOUT


def test_mismatch_budget(registry):
    analyzer = FakeAnalyzer(default=[centered_detection(0.2)])
    flow, _ = make_flow(registry, reader=FakeReader(["2201547"]), analyzer=analyzer,
                        max_mismatches=1)
    flow.start()
    flow.scanner.tick()
    flow.verifier.tick()

    assert flow.phase is Phase.FAILED_MISMATCH
    assert flow.session.failure["category"] is FailureCategory.FACE_MISMATCH


def test_external_face_failure(registry):
    flow, _ = make_flow(registry, reader=FakeReader(["2201547"]))
    flow.start()
    flow.scanner.tick()
    flow.fail_face_verification("Took too long")

    assert flow.phase is Phase.FAILED_FACE_VERIFICATION
    assert flow.session.failure["message"] == "Took too long"


def test_external_failure_ignored_outside_face_phase(registry):
    flow, _ = make_flow(registry)
    flow.start()
    flow.fail_face_verification()
    assert flow.phase is Phase.ACQUIRING_IDENTIFIER


def test_callbacks_from_retired_loop_are_ignored(registry):
    flow, _ = make_flow(registry, reader=FakeReader(["2201547"]))
    flow.start()
    old_scanner = flow.scanner
    flow.reset()

    old_scanner.on_identifier("2201547")
    assert flow.phase is Phase.ACQUIRING_IDENTIFIER
    assert flow.session.student_id is None


def test_failed_state_waits_for_reset(registry):
    flow, _ = make_flow(registry, reader=FakeReader(["1234567", "2201547"]))
    flow.start()
    flow.scanner.tick()
    assert flow.phase is Phase.FAILED_IDENTIFIER_UNKNOWN
    assert flow.scanner is None

    flow.reset()
    flow.scanner.tick()
    assert flow.phase is Phase.VERIFYING_FACE


def test_close_releases_camera(registry):
    flow, camera = make_flow(registry)
    flow.start()
    assert camera.is_open
    flow.close()
    assert not camera.is_open
    with pytest.raises(RuntimeError):
        flow.start()


def test_status_events(registry):
    flow, _ = make_flow(registry, reader=FakeReader(["", "2201547"]))
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()
    assert "Scanning... (1/60)" in seen[events.STATUS].calls
    assert flow.status == "Scanning... (1/60)"


def test_step_status():
    assert step_status(Phase.ACQUIRING_IDENTIFIER, "scan_id") == "active"
    assert step_status(Phase.ACQUIRING_IDENTIFIER, "verify_face") == "pending"
    assert step_status(Phase.VERIFYING_FACE, "scan_id") == "completed"
    assert step_status(Phase.VERIFYING_FACE, "verify_face") == "active"
    assert step_status(Phase.SUCCEEDED, "verified") == "active"
    assert step_status(Phase.FAILED_MISMATCH, "scan_id") == "error"


def test_phase_properties():
    assert Phase.SUCCEEDED.is_terminal
    assert not Phase.SUCCEEDED.is_failure
    assert Phase.FAILED_MISMATCH.is_failure
    assert not Phase.VERIFYING_FACE.is_terminal


def test_threaded_session(registry):
    notifier = Recorder()
    flow, camera = make_flow(
        registry,
        reader=FakeReader(["", "2201547"]),
        analyzer=FakeAnalyzer(default=[centered_detection(0.8)]),
        notifier=notifier,
        threaded=True,
        scan_interval=0.01,
        detection_interval=0.01,
    )
    verified = Recorder()
    flow.subscribe(events.FACE_VERIFIED, verified)
    flow.start()
    try:
        assert verified.event.wait(5)
    finally:
        flow.close()

    assert flow.phase is Phase.SUCCEEDED
    assert len(notifier) == 1
    assert not camera.is_open


class BrokenDetector(FakeAnalyzer):
    def detect(self, frame, min_confidence=None, with_descriptors=False):
        raise RuntimeError("detector crashed")


def test_face_timeout_while_detection_keeps_failing(registry):
    flow, camera = make_flow(registry, reader=FakeReader(["2201547"]), analyzer=BrokenDetector(),
                             face_timeout=5.0)
    seen = subscribe_all(flow)
    flow.start()
    flow.scanner.tick()
    verifier = flow.verifier
    for _ in range(6):
        verifier.tick()
        flow.clock.advance(1.0)

    assert flow.phase is Phase.FAILED_FACE_VERIFICATION
    assert flow.session.failure["category"] is FailureCategory.FACE_TIMEOUT
    assert seen[events.FACE_VERIFICATION_FAILED].calls[0]["category"] is FailureCategory.FACE_TIMEOUT
    assert verifier.tick_errors == 6
    assert flow.verifier is None
    assert not camera.is_open
