"""
Turn a process run into a terminal job status.

The output artifact is the success oracle: the upscaler does not reliably
report its own success through its exit code, so artifact existence is
checked before the exit status is trusted.
"""

from __future__ import annotations

from .models import JobStatus
from .runner import RunOutcome


def classify(outcome: RunOutcome, artifact_exists: bool) -> JobStatus:
    """
    Decide the terminal status of a job.

    Priority order:
        1. Spawn failed -> Error
        2. Output artifact exists -> Completed (exit code ignored)
        3. Process exited but produced no artifact -> Failed
        4. Exit status unavailable and no artifact -> Error
    """
    if outcome.spawn_error is not None:
        return JobStatus.ERROR
    if artifact_exists:
        return JobStatus.COMPLETED
    if outcome.exited:
        return JobStatus.FAILED
    return JobStatus.ERROR
