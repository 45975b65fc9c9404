# relayci_workflow.py
# Pipeline for relayci itself: lint and tests in parallel, then a wheel build
# that is handed to a smoke test through an artifact.
from __future__ import annotations

from relayci import job, sh, uses, wf


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            uses("Checkout", "actions/checkout@v4"),
            sh("Ruff check", "ruff check src tests", continue_on_error=True),
        ),

        # Test job - runs pytest on the codebase
        job(
            "test",
            uses("Checkout", "actions/checkout@v4"),
            sh("Install package", "pip install -q -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
        ),

        job(
            "build",
            uses("Checkout", "actions/checkout@v4"),
            sh("Build wheel", "pip wheel -q --no-deps -w dist ."),
            sh(
                "Record version",
                "echo \"wheel=$(ls dist/*.whl | head -n 1 | xargs basename)\" >> \"$RELAYCI_OUTPUT\"",
                id="wheel",
            ),
            needs=["lint", "test"],
            outputs={"wheel": "${{ steps.wheel.outputs.wheel }}"},
            artifacts={"wheel": "dist"},
        ),

        # Installs the built wheel into a throwaway venv and runs the CLI
        job(
            "smoke",
            sh("Install wheel", "python -m venv .venv && .venv/bin/pip install -q \"dist/$WHEEL\""),
            sh("Validate own pipeline", ".venv/bin/relayci --help"),
            needs=["build"],
            downloads={"wheel": "dist"},
            inputs={"WHEEL": "build.wheel"},
        ),
    )
