# pipewright_workflow.py
# Workflow for checking pipewright itself: lint, tests on each python, a wheel artifact
from __future__ import annotations

from pipewright import job, lint, matrix, sh, uses, wf
from pipewright import dsl


def workflow():
    return wf(
        # Lint job - ruff over the package and tests
        job(
            "lint",
            uses("actions/checkout@v4"),
            lint("Ruff check", "ruff", "check", files=["src/", "tests/"]),
            continue_on_error=True,
        ),

        # Test job - one leg per interpreter, `needs=["test"]` waits for all of them
        matrix("python", ["3.10", "3.11", "3.12"], group="test").jobs(
            lambda v: job(
                f"test-py{v}",
                uses("actions/checkout@v4"),
                uses("actions/setup-python@v5", python_version=v),
                dsl.test("Run pytest", "pytest", "-q", install=False),
                retries=1,
            )
        ),

        # Build job - wheel handed to later jobs as an artifact
        job(
            "build",
            uses("actions/checkout@v4"),
            sh("Build wheel", "python -m pip wheel --no-deps -w dist ."),
            sh(
                "Record version",
                'echo "wheel=$(ls dist/*.whl | head -n1)" >> "$PIPEWRIGHT_OUTPUT"',
                id="wheel",
            ),
            uses("actions/upload-artifact@v4", name="wheel", path="dist/", if_no_files_found="error"),
            needs=["test"],
            outputs={"wheel": "${{ steps.wheel.outputs.wheel }}"},
        ),

        # Smoke job - installs the built wheel in a clean workspace
        job(
            "smoke",
            uses("actions/download-artifact@v4", name="wheel"),
            sh("Install wheel", "python -m pip install --no-deps ${{ needs.build.outputs.wheel }}"),
            sh("CLI help", "pipewright --help"),
            needs=["build"],
        ),
        name="pipewright",
    )
