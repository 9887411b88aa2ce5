import pytest

from pipewright.errors import SecretResolutionError
from pipewright.logs import LogSink
from pipewright.model import ErrorRecord
from pipewright.secrets import REDACTED, Redactor, SecretBroker, load_secrets_file


class TestRedactor:
    def test_masks_every_occurrence(self):
        r = Redactor(["hunter2"])
        assert r.redact("pw=hunter2 again hunter2") == f"pw={REDACTED} again {REDACTED}"

    def test_longest_first(self):
        r = Redactor(["abc", "abcdef"])
        assert r.redact("token abcdef") == f"token {REDACTED}"

    def test_multiline_values_masked_line_by_line(self):
        key = "-----BEGIN KEY-----\nAAAABBBBCCCC\n-----END KEY-----"
        r = Redactor([key])
        assert "AAAABBBBCCCC" not in r.redact("leaked: AAAABBBBCCCC")

    def test_empty_redactor(self):
        r = Redactor()
        assert r.redact("nothing to hide") == "nothing to hide"

    def test_empty_redactor_is_shared_not_replaced(self, tmp_path):
        r = Redactor()
        sink = LogSink(tmp_path / "logs", r)
        broker = SecretBroker(environ={}, redactor=r)
        assert sink.redactor is r
        assert broker.redactor is r
        r.add("late-secret")
        sink.write("a", "value late-secret")
        assert "late-secret" not in sink.read("a")


class TestSecretBroker:
    def test_sources_in_order(self, tmp_path):
        path = tmp_path / "secrets.yml"
        path.write_text("TOKEN: from-file\nOTHER: other-file\n")
        broker = SecretBroker(
            {"TOKEN": "explicit"},
            secrets_file=path,
            environ={"PIPEWRIGHT_SECRET_ENVONLY": "from-env"},
        )
        resolved = broker.resolve(["TOKEN", "OTHER", "ENVONLY"], job="deploy")
        assert resolved == {"TOKEN": "explicit", "OTHER": "other-file", "ENVONLY": "from-env"}

    def test_missing_secrets(self):
        broker = SecretBroker({"A": "1"}, environ={})
        with pytest.raises(SecretResolutionError) as exc:
            broker.resolve(["B", "A", "C"], job="deploy")
        assert exc.value.missing == ["B", "C"]
        assert exc.value.job == "deploy"

    def test_resolved_values_are_redacted(self):
        environ = {}
        broker = SecretBroker(environ=environ)
        environ["PIPEWRIGHT_SECRET_LATE"] = "added-after-start"
        assert broker.redact("added-after-start") == "added-after-start"
        broker.resolve(["LATE"])
        assert broker.redact("Bearer added-after-start") == f"Bearer {REDACTED}"

    def test_prefixed_environment_is_masked_up_front(self):
        broker = SecretBroker(environ={"PIPEWRIGHT_SECRET_TOKEN": "s3cr3t-value", "HOME": "/home/ci"})
        assert broker.redact("Bearer s3cr3t-value in /home/ci") == f"Bearer {REDACTED} in /home/ci"

    def test_secrets_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(SecretResolutionError):
            load_secrets_file(path)


def test_logs_and_errors_never_hold_secrets(tmp_path):
    broker = SecretBroker({"TOKEN": "tok-123456"}, environ={})
    sink = LogSink(tmp_path / "logs", broker.redactor)
    sink.write("deploy", "using tok-123456 now")
    assert "tok-123456" not in sink.read("deploy")

    rec = ErrorRecord("step_execution", "curl -H tok-123456 failed", details={"cmd": "x tok-123456"})
    clean = rec.redacted(broker.redactor)
    assert "tok-123456" not in clean.message
    assert "tok-123456" not in clean.details["cmd"]
