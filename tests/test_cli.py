import json

import pytest

from idverify import __main__ as cli
from idverify.config import CONFIG
from idverify.flow import Phase

from conftest import STUDENTS


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    for key in CONFIG:
        monkeypatch.delenv("IDVERIFY_" + key.upper(), raising=False)
    monkeypatch.chdir(tmp_path)
    env_file = tmp_path / ".env"
    env_file.write_text("IDVERIFY_LOG_FILE=none\n")
    monkeypatch.setenv("IDVERIFY_LOG_FILE", "none")
    return str(env_file)


def test_invalid_threshold_exits_2(isolated):
    assert cli.main(["--env-file", isolated, "--threshold", "1.5"]) == 2


def test_missing_registry_exits_2(isolated, tmp_path):
    assert cli.main(["--env-file", isolated, "--registry", str(tmp_path / "none.json")]) == 2


def test_overrides_from_args():
    args = cli.build_parser().parse_args(
        ["--registry", "s.json", "--threshold", "0.6", "--policy", "distance", "--face-timeout", "30"]
    )
    assert cli._overrides_from_args(args) == {
        "registry_source": "json",
        "registry_path": "s.json",
        "match_threshold": 0.6,
        "similarity_policy": "distance",
        "face_timeout": 30.0,
    }


class ScriptedFlow:
    """Stands in for VerificationFlow: succeeds as soon as it starts."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.phase = Phase.ACQUIRING_IDENTIFIER
        self.closed = False
        self.session = type("Session", (), {})()

    def subscribe(self, event_type, callback):
        return lambda: None

    def start(self):
        self.phase = self.outcome
        student = type("Student", (), {"name": "Jane Smith"})()
        self.session.student = student
        self.session.result = {"similarity": 0.62, "confidence": 0.9}
        self.session.failure = None

    def close(self):
        self.closed = True


@pytest.mark.parametrize("outcome, code", [
    (Phase.SUCCEEDED, 0),
    (Phase.FAILED_IDENTIFIER_UNKNOWN, 1),
])
def test_exit_code_follows_outcome(monkeypatch, isolated, tmp_path, outcome, code):
    registry_path = tmp_path / "students.json"
    registry_path.write_text(json.dumps(STUDENTS))
    flow = ScriptedFlow(outcome)
    monkeypatch.setattr(cli, "build_flow", lambda config: flow)

    assert cli.main(["--env-file", isolated, "--registry", str(registry_path)]) == code
    assert flow.closed
