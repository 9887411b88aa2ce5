import json
import shutil

import click
import pytest
from click.testing import CliRunner

from pipewright.cli import cli, find_workflow_files, parse_inputs

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")

DIAMOND = """
name: diamond
jobs:
  build:
    steps: [{run: "true"}]
  lint:
    steps: [{run: "true"}]
  test:
    needs: build
    steps: [{run: "true"}]
  deploy:
    needs: [test, lint]
    steps: [{run: "true"}]
"""


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


def _invoke(*args):
    return CliRunner().invoke(cli, list(args))


class TestDiscovery:
    def test_default_file_wins_over_github_dir(self, project):
        (project / "pipewright.yml").write_text(DIAMOND)
        gh = project / ".github" / "workflows"
        gh.mkdir(parents=True)
        (gh / "ci.yml").write_text(DIAMOND)
        assert find_workflow_files(project) == [project / "pipewright.yml"]

    def test_github_workflows_dir(self, project):
        gh = project / ".github" / "workflows"
        gh.mkdir(parents=True)
        (gh / "ci.yml").write_text(DIAMOND)
        (gh / "notes.txt").write_text("ignored")
        assert find_workflow_files(project) == [gh / "ci.yml"]

    def test_no_workflow_found(self, project):
        result = _invoke("validate", "--source", str(project))
        assert result.exit_code == 1
        assert "No workflow file found" in result.output

    def test_several_workflows_found(self, project):
        (project / "pipewright.yml").write_text(DIAMOND)
        (project / "pipewright.yaml").write_text(DIAMOND)
        result = _invoke("validate", "--source", str(project))
        assert result.exit_code == 1
        assert "Multiple workflow files found" in result.output

    def test_missing_explicit_file(self, project):
        result = _invoke("validate", str(project / "nope.yml"), "--source", str(project))
        assert result.exit_code == 1
        assert "Workflow file not found" in result.output


class TestValidateAndPlan:
    def test_validate_ok(self, project):
        (project / "pipewright.yml").write_text(DIAMOND)
        result = _invoke("validate", "--source", str(project))
        assert result.exit_code == 0, result.output
        assert "OK (4 job(s), 3 stage(s))" in result.output

    def test_validate_reports_cycle(self, project):
        (project / "pipewright.yml").write_text(
            "jobs:\n  a: {needs: b, steps: [{run: x}]}\n  b: {needs: a, steps: [{run: y}]}\n"
        )
        result = _invoke("validate", "--source", str(project))
        assert result.exit_code == 1
        assert "Dependency cycle" in result.output

    def test_plan_prints_stages(self, project):
        (project / "pipewright.yml").write_text(DIAMOND)
        result = _invoke("plan", "--source", str(project))
        assert result.exit_code == 0, result.output
        assert "Stage 1: build, lint" in result.output
        assert "Stage 2: test" in result.output
        assert "Stage 3: deploy" in result.output

    def test_plan_job_subset(self, project):
        (project / "pipewright.yml").write_text(DIAMOND)
        result = _invoke("plan", "--job", "test", "--source", str(project))
        assert "Stage 1: build" in result.output
        assert "deploy" not in result.output


def test_parse_inputs():
    assert parse_inputs(("a=1", "b=x=y")) == {"a": "1", "b": "x=y"}
    with pytest.raises(click.BadParameter):
        parse_inputs(("novalue",))


@needs_bash
class TestRun:
    def test_success_exits_zero_and_writes_report(self, project, tmp_path):
        (project / "pipewright.yml").write_text(DIAMOND)
        report = tmp_path / "out" / "report.json"
        result = _invoke(
            "run", "--source", str(project), "--run-dir", str(tmp_path / "runs"), "--report", str(report), "--workers", "2"
        )
        assert result.exit_code == 0, result.output
        assert "RUN: SUCCEEDED" in result.output
        data = json.loads(report.read_text())
        assert data["workflow"] == "diamond"
        assert sorted(j["id"] for j in data["jobs"]) == ["build", "deploy", "lint", "test"]

    def test_failure_exits_one(self, project, tmp_path):
        (project / "pipewright.yml").write_text("jobs:\n  a:\n    steps:\n      - run: exit 4\n")
        result = _invoke("run", "--source", str(project), "--run-dir", str(tmp_path / "runs"))
        assert result.exit_code == 1
        assert "RUN: FAILED" in result.output

    def test_bad_worker_count_in_environment(self, project, tmp_path, monkeypatch):
        (project / "pipewright.yml").write_text(DIAMOND)
        monkeypatch.setenv("PIPEWRIGHT_MAX_WORKERS", "many")
        result = _invoke("run", "--source", str(project), "--run-dir", str(tmp_path / "runs"))
        assert result.exit_code == 1
        assert "PIPEWRIGHT_MAX_WORKERS" in result.output
        assert "Traceback" not in result.output

    def test_inputs_are_passed(self, project, tmp_path):
        (project / "pipewright.yml").write_text(
            """
on:
  workflow_dispatch:
    inputs:
      target: {required: true}
jobs:
  a:
    steps:
      - run: test "${{ inputs.target }}" = prod
"""
        )
        runs = str(tmp_path / "runs")
        ok = _invoke("run", "--source", str(project), "--run-dir", runs, "--input", "target=prod")
        assert ok.exit_code == 0, ok.output
        missing = _invoke("run", "--source", str(project), "--run-dir", runs)
        assert missing.exit_code == 1
        assert "Missing required input 'target'" in missing.output

    def test_malformed_input_pair(self, project, tmp_path):
        (project / "pipewright.yml").write_text(DIAMOND)
        result = _invoke("run", "--source", str(project), "--run-dir", str(tmp_path / "runs"), "--input", "oops")
        assert result.exit_code == 2
