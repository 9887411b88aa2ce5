import threading

from pipewright.executors import CommandOutcome
from pipewright.model import Status

DIAMOND = """
jobs:
  deploy:
    needs: [test, lint]
    steps: [{run: deploy-cmd}]
  build:
    steps: [{run: build-cmd}]
  test:
    needs: build
    steps: [{run: test-cmd}]
  lint:
    steps: [{run: lint-cmd}]
"""


def _statuses(report):
    return {j.job_id: j.status for j in report.jobs}


class TestOrdering:
    def test_execution_order_is_topological(self, run_yaml, fake):
        report = run_yaml(DIAMOND)
        assert report.status is Status.SUCCEEDED
        order = report.order
        assert set(order) == {"deploy", "build", "test", "lint"}
        assert order.index("build") < order.index("test") < order.index("deploy")
        assert order.index("lint") < order.index("deploy")
        assert fake.jobs_called() == order

    def test_fifo_with_declaration_tie_break(self, run_yaml):
        report = run_yaml(DIAMOND)
        # build and lint are ready at start (declaration order), test after build
        assert report.order == ["build", "lint", "test", "deploy"]

    def test_parallel_workers_still_respect_needs(self, run_yaml):
        report = run_yaml(DIAMOND, max_workers=4)
        order = report.order
        assert order.index("build") < order.index("test") < order.index("deploy")


class TestFailurePropagation:
    def test_failed_dependency_skips_dependents(self, run_yaml, fake):
        fake.script = {"build-cmd": 1}
        report = run_yaml(DIAMOND)
        statuses = _statuses(report)
        assert statuses["build"] is Status.FAILED
        assert statuses["test"] is Status.SKIPPED
        assert statuses["deploy"] is Status.SKIPPED
        assert statuses["lint"] is Status.SUCCEEDED
        assert report.status is Status.FAILED
        assert "test" not in fake.jobs_called()
        assert report.job("test").note == "dependency 'build' failed"

    def test_status_function_opts_into_running_after_failure(self, run_yaml, fake):
        fake.script = {"build-cmd": 1}
        report = run_yaml(
            """
jobs:
  build:
    steps: [{run: build-cmd}]
  cleanup:
    needs: build
    if: always()
    steps: [{run: cleanup-cmd}]
  notify:
    needs: build
    if: failure()
    steps: [{run: notify-cmd}]
  publish:
    needs: build
    if: success()
    steps: [{run: publish-cmd}]
"""
        )
        statuses = _statuses(report)
        assert statuses["cleanup"] is Status.SUCCEEDED
        assert statuses["notify"] is Status.SUCCEEDED
        assert statuses["publish"] is Status.SKIPPED

    def test_false_condition_skips_job_and_its_dependents(self, run_yaml, fake):
        report = run_yaml(
            """
jobs:
  release:
    if: github.event_name == 'push'
    steps: [{run: release-cmd}]
  announce:
    needs: release
    steps: [{run: announce-cmd}]
"""
        )
        statuses = _statuses(report)
        assert statuses["release"] is Status.SKIPPED
        assert statuses["announce"] is Status.SKIPPED
        assert report.status is Status.SUCCEEDED
        assert fake.calls == []

    def test_optional_job_failure_keeps_run_green(self, run_yaml, fake):
        fake.script = {"flaky-lint": 1}
        report = run_yaml(
            """
jobs:
  lint:
    continue-on-error: true
    steps: [{run: flaky-lint}]
  build:
    steps: [{run: build-cmd}]
"""
        )
        assert report.job("lint").status is Status.FAILED
        assert report.status is Status.SUCCEEDED


class TestRetries:
    def test_fail_twice_then_succeed(self, run_yaml, fake):
        fake.script = {"flaky": [1, 1, 0]}
        report = run_yaml(
            """
jobs:
  flaky:
    retries: 2
    steps: [{run: flaky}]
"""
        )
        result = report.job("flaky")
        assert result.status is Status.SUCCEEDED
        assert len(result.attempts) == 3
        assert [a.status for a in result.attempts] == [Status.FAILED, Status.FAILED, Status.SUCCEEDED]
        assert report.order == ["flaky"]

    def test_retries_exhausted(self, run_yaml, fake):
        fake.script = {"flaky": 1}
        report = run_yaml("jobs:\n  flaky:\n    retries: 1\n    steps: [{run: flaky}]\n")
        assert report.job("flaky").status is Status.FAILED
        assert len(report.job("flaky").attempts) == 2

    def test_missing_secret_fails_without_retry(self, run_yaml, fake):
        report = run_yaml(
            """
jobs:
  deploy:
    retries: 3
    steps:
      - run: deploy --token ${{ secrets.PIPEWRIGHT_TEST_NEVER_SET }}
"""
        )
        result = report.job("deploy")
        assert result.status is Status.FAILED
        assert len(result.attempts) == 1
        assert result.error.kind == "secret_resolution"
        assert fake.calls == []


class TestFailFast:
    WORKFLOW = """
jobs:
  a:
    steps: [{run: fail-cmd}]
  b:
    steps: [{run: b-cmd}]
  c:
    needs: b
    steps: [{run: c-cmd}]
"""

    def test_fail_fast_cancels_not_started_jobs(self, run_yaml, fake):
        fake.script = {"fail-cmd": 1}
        report = run_yaml(self.WORKFLOW, fail_fast=True)
        statuses = _statuses(report)
        assert statuses["a"] is Status.FAILED
        assert statuses["b"] is Status.CANCELLED
        assert statuses["c"] is Status.CANCELLED
        assert report.status is Status.CANCELLED
        assert fake.jobs_called() == ["a"]

    def test_without_fail_fast_independent_branches_complete(self, run_yaml, fake):
        fake.script = {"fail-cmd": 1}
        report = run_yaml(self.WORKFLOW, fail_fast=False)
        statuses = _statuses(report)
        assert statuses["a"] is Status.FAILED
        assert statuses["b"] is Status.SUCCEEDED
        assert statuses["c"] is Status.SUCCEEDED
        assert report.status is Status.FAILED

    def test_fail_fast_from_workflow_key(self, run_yaml, fake):
        fake.script = {"fail-cmd": 1}
        report = run_yaml("fail-fast: true\n" + self.WORKFLOW)
        assert report.status is Status.CANCELLED

    def test_running_job_is_cancelled(self, run_yaml, fake):
        started = threading.Event()

        def slow(request, cancel):
            started.set()
            cancel.wait(10)
            return CommandOutcome(exit_code=-15, cancelled=cancel.is_set())

        def failing(request, cancel):
            started.wait(10)
            return CommandOutcome(exit_code=1)

        fake.script = {"fail-cmd": failing, "b-cmd": slow}
        report = run_yaml(self.WORKFLOW, fail_fast=True, max_workers=2)
        statuses = _statuses(report)
        assert statuses["a"] is Status.FAILED
        assert statuses["b"] is Status.CANCELLED
        assert report.job("b").steps[0].status is Status.CANCELLED
        assert statuses["c"] is Status.CANCELLED

    def test_external_cancel_before_start(self, run_yaml, fake):
        cancel = threading.Event()
        cancel.set()
        report = run_yaml(self.WORKFLOW, cancel_event=cancel)
        assert all(s is Status.CANCELLED for s in _statuses(report).values())
        assert fake.calls == []
