import pytest

from pathlib import Path

from pipewright import dsl
from pipewright.dag import resolve
from pipewright.executors import CommandOutcome
from pipewright.model import ActionKind, BuiltinAction, RemoteTransfer, ShellCommand, Status
from pipewright.runner import run_workflow


class TestSteps:
    def test_sh(self):
        step = dsl.sh("Build", "make all", cwd="app", id="b", env={"N": 1}, if_="success()")
        assert isinstance(step.executable, ShellCommand)
        assert step.executable.run == "make all"
        assert step.working_directory == "app"
        assert step.env == {"N": "1"}
        assert step.condition == "success()"

    def test_uses_turns_underscores_into_dashes(self):
        step = dsl.uses("actions/upload-artifact@v4", name="dist", path="dist/", if_no_files_found="error")
        assert isinstance(step.executable, BuiltinAction)
        assert step.executable.kind is ActionKind.UPLOAD_ARTIFACT
        assert step.executable.inputs == {"name": "dist", "path": "dist/", "if-no-files-found": "error"}
        assert step.name == "actions/upload-artifact@v4"

    def test_uses_step_name_is_not_an_input(self):
        step = dsl.uses("actions/download-artifact@v4", step_name="Fetch wheel", name="wheel")
        assert step.name == "Fetch wheel"
        assert step.executable.inputs == {"name": "wheel"}

    def test_transfer(self):
        step = dsl.transfer("dist/", "deploy.example.com", "/srv/app", user="ci", port=2222)
        assert isinstance(step.executable, RemoteTransfer)
        assert step.executable.port == 2222
        assert step.name == "Transfer dist/"

    def test_lint_quotes_arguments(self):
        step = dsl.lint("Lint", "ruff", "check --select E501", files=["src dir"])
        assert step.executable.run == "ruff check --select E501 'src dir'"

    def test_test_expands_framework(self):
        steps = dsl.test("Unit", "pytest", "-q", cwd="api")
        assert [s.executable.run for s in steps] == ["python -m pip install -r requirements.txt", "pytest -q"]
        assert all(s.working_directory == "api" for s in steps)
        assert [s.executable.run for s in dsl.test("JS", "npm", install=False)] == ["npm test"]
        with pytest.raises(ValueError):
            dsl.test("x", "maven")


class TestJobs:
    def test_job_flattens_steps_and_applies_cwd(self):
        j = dsl.job("ci", dsl.sh("a", "a", cwd="keep"), dsl.test("t", "pytest"), cwd="svc", needs=["setup"])
        assert [s.working_directory for s in j.steps] == ["keep", "svc", "svc"]
        assert j.needs == ("setup",)

    def test_job_requires_steps(self):
        with pytest.raises(ValueError):
            dsl.job("empty")
        with pytest.raises(ValueError):
            dsl.job("neg", dsl.sh("a", "a"), retries=-1)

    def test_builder(self):
        j = (
            dsl.build("deploy")
            .named("Deploy")
            .depends_on("build", "test")
            .define_step("Ship", "./ship.sh")
            .with_env(STAGE="prod")
            .with_outputs(url="${{ steps.ship.outputs.url }}")
            .when("github.ref == 'refs/heads/main'")
            .in_container("alpine:3")
            .with_retries(2)
            .allow_failure()
            .with_timeout(5)
            .build()
        )
        assert j.display_name == "Deploy"
        assert j.needs == ("build", "test")
        assert j.env == {"STAGE": "prod"}
        assert j.container == "alpine:3"
        assert j.retries == 2 and j.continue_on_error and j.timeout_minutes == 5
        assert j.condition == "github.ref == 'refs/heads/main'"

    def test_builder_without_steps(self):
        with pytest.raises(ValueError):
            dsl.build("x").build()


def test_matrix_group_and_workflow():
    legs = dsl.matrix("py", ["3.10", "3.11"], group="test").jobs(
        lambda v: dsl.job(f"test-py{v}", dsl.sh("Test", f"python{v} -m pytest"))
    )
    assert [j.matrix for j in legs] == [{"py": "3.10"}, {"py": "3.11"}]
    assert all(j.declared_id == "test" for j in legs)

    spec = dsl.wf(
        dsl.job("build", dsl.sh("b", "make")),
        legs,
        dsl.job("publish", dsl.sh("p", "make publish"), needs=["test"]),
        name="py",
        fail_fast=True,
    )
    assert spec.job_ids == ["build", "test-py3.10", "test-py3.11", "publish"]
    assert spec.fail_fast is True
    graph = resolve(spec)
    assert set(graph.dependencies("publish")) == {"test-py3.10", "test-py3.11"}


def test_artifact_round_trip_through_python_workflow(settings, fake, quiet_console):
    def build(request, cancel):
        (Path(request.cwd) / "dist").mkdir()
        (Path(request.cwd) / "dist" / "app.whl").write_text("wheel")
        return CommandOutcome(exit_code=0)

    def check(request, cancel):
        return CommandOutcome(exit_code=0 if (Path(request.cwd) / "dist" / "app.whl").is_file() else 1)

    fake.script = {"make wheel": build, "test -f dist/app.whl": check}
    spec = dsl.wf(
        dsl.job(
            "build",
            dsl.sh("Build", "make wheel"),
            dsl.uses("actions/upload-artifact@v4", name="wheel", path="dist/", if_no_files_found="error"),
        ),
        dsl.job(
            "smoke",
            dsl.uses("actions/download-artifact@v4", name="wheel"),
            dsl.sh("Check", "test -f dist/app.whl"),
            needs=["build"],
        ),
    )
    report = run_workflow(spec, settings=settings, executor=fake, console=quiet_console)
    assert report.status is Status.SUCCEEDED, [j.error for j in report.jobs]
    assert report.artifacts == ["wheel"]
