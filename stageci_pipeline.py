# stageci_pipeline.py
# Pipeline for stageci itself: lint, format check, tests on a fresh clone.
# The repository comes from the local git remote (see `stageci run --repo`).
from __future__ import annotations

from pathlib import Path

from stageci.dsl import checkout, matrix, stage
from stageci.dsl import pipeline as define

TEST_MODULES = [
    "tests/test_dag.py",
    "tests/test_scheduler.py",
    "tests/test_runner.py",
    "tests/test_executor.py",
]


def pipeline():
    return define(
        "stageci",
        checkout(retries=2, backoff=2.0),

        stage("install", "python", "-m", "pip", "install", "-e", ".[test]", needs=["checkout"], retries=1),

        # Lint + format run side by side once dependencies are installed
        stage("lint", "ruff", "check", ".", needs=["install"], required=False),
        stage("format-check", "ruff", "format", "--check", ".", needs=["install"], required=False),

        matrix("module", TEST_MODULES).stages(
            lambda path: stage(
                f"pytest-{Path(path).stem}",
                "python", "-m", "pytest", "-q", path,
                needs=["install"],
                timeout=600,
            )
        ),

        branch="main",
        env={"PYTHONDONTWRITEBYTECODE": "1"},
        max_concurrency=4,
    )
