from pathlib import Path

import pytest

from pipewright.errors import MalformedSpecError
from pipewright.report import to_model
from pipewright.settings import DEFAULT_RUN_DIR, Settings


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s.max_workers >= 1
        assert s.fail_fast is False
        assert s.run_dir == Path(DEFAULT_RUN_DIR)
        assert s.secret_prefix == "PIPEWRIGHT_SECRET_"

    def test_environment(self):
        s = Settings.from_env(
            {
                "PIPEWRIGHT_MAX_WORKERS": "0",
                "PIPEWRIGHT_FAIL_FAST": "yes",
                "PIPEWRIGHT_RUN_DIR": "/tmp/pw-runs",
                "PIPEWRIGHT_SECRET_PREFIX": "CI_",
                "PIPEWRIGHT_DEFAULT_SHELL": "sh",
            }
        )
        assert s.max_workers == 1
        assert s.fail_fast is True
        assert s.run_dir == Path("/tmp/pw-runs")
        assert s.secret_prefix == "CI_"
        assert s.default_shell == "sh"

    def test_worker_count_must_be_an_integer(self):
        with pytest.raises(MalformedSpecError) as exc:
            Settings.from_env({"PIPEWRIGHT_MAX_WORKERS": "four"})
        assert exc.value.where == "PIPEWRIGHT_MAX_WORKERS"
        assert "four" in exc.value.message

    def test_override_ignores_none(self):
        s = Settings(max_workers=3, fail_fast=True)
        assert s.override(max_workers=None, fail_fast=False) == Settings(max_workers=3, fail_fast=False)

    def test_workflow_keys_sit_between_settings_and_arguments(self, run_yaml, fake):
        fake.script = {"boom": 1}
        text = "fail-fast: true\njobs:\n  a:\n    steps: [{run: boom}]\n  b:\n    steps: [{run: fine}]\n"
        # settings say no fail-fast, the workflow key turns it on
        assert run_yaml(text).job("b").status.value == "cancelled"
        # an explicit argument beats the workflow key
        assert run_yaml(text, fail_fast=False).job("b").status.value == "succeeded"


def test_report_model_mirrors_run_report(run_yaml):
    report = run_yaml("name: r\njobs:\n  a:\n    steps:\n      - id: s\n        run: x\n")
    model = to_model(report)
    assert model.run_id == report.run_id
    assert model.status == "succeeded"
    assert model.order == ["a"]
    assert model.duration_seconds >= 0
    assert model.jobs[0].attempts[0].steps[0].id == "s"
    assert model.interrupted is False
