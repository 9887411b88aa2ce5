import pytest

from pipewright.dsl import job, sh
from pipewright.errors import InvalidTransitionError
from pipewright.model import ErrorRecord, Status
from pipewright.status import StatusController


@pytest.fixture
def controller():
    return StatusController(
        [
            job("build", sh("s", "true"), retries=1),
            job("lint", sh("s", "true"), continue_on_error=True),
        ]
    )


class TestTransitions:
    def test_happy_path(self, controller):
        controller.mark_ready("build")
        attempt = controller.begin_attempt("build")
        assert attempt.number == 1
        assert controller.finish_attempt("build", Status.SUCCEEDED, outputs={"v": "1"}) is Status.SUCCEEDED
        result = controller.result("build")
        assert result.outputs == {"v": "1"}
        assert result.started_at is not None and result.finished_at is not None

    def test_failure_with_retries_goes_back_to_ready(self, controller):
        controller.mark_ready("build")
        controller.begin_attempt("build")
        assert controller.finish_attempt("build", Status.FAILED) is Status.READY
        assert controller.retries_left("build") == 1
        controller.begin_attempt("build")
        assert controller.finish_attempt("build", Status.FAILED) is Status.FAILED
        assert len(controller.result("build").attempts) == 2

    def test_no_retry_when_not_retryable(self, controller):
        controller.mark_ready("build")
        controller.begin_attempt("build")
        err = ErrorRecord("secret_resolution", "missing")
        assert controller.finish_attempt("build", Status.FAILED, error=err, retry=False) is Status.FAILED
        assert controller.result("build").error is err

    def test_illegal_transitions(self, controller):
        with pytest.raises(InvalidTransitionError):
            controller.begin_attempt("build")  # still pending
        controller.skip("lint")
        with pytest.raises(InvalidTransitionError):
            controller.mark_ready("lint")

    def test_fail_before_running(self, controller):
        controller.fail("build", ErrorRecord("expression_error", "bad"))
        assert controller.status("build") is Status.FAILED


class TestOverallStatus:
    def test_optional_job_failure_does_not_fail_run(self, controller):
        controller.mark_ready("build")
        controller.begin_attempt("build")
        controller.finish_attempt("build", Status.SUCCEEDED)
        controller.mark_ready("lint")
        controller.begin_attempt("lint")
        controller.finish_attempt("lint", Status.FAILED)
        assert controller.overall_status() is Status.SUCCEEDED

    def test_required_failure_fails_run(self, controller):
        controller.fail("build", ErrorRecord("x", "y"))
        assert controller.overall_status() is Status.FAILED

    def test_cancelled_wins(self, controller):
        controller.cancelled = True
        assert controller.overall_status() is Status.CANCELLED
