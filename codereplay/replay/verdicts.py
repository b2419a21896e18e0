"""Run verdict classification.

A run of the candidate's code is judged per test case by the execution
sandbox. These helpers fold the per-case outcome into the single verdict
recorded in the run history, and map that verdict onto the coarser
categories drawn on the replay timeline.
"""

from __future__ import annotations

from collections.abc import Iterable

from codereplay.models.events import MarkerVerdict, RunVerdict

# Judge status ids
JUDGE_STATUS_ACCEPTED = 3
JUDGE_STATUS_COMPILATION_ERROR = 6
JUDGE_RUNTIME_ERROR_STATUSES = frozenset({7, 8, 9, 10, 11, 12, 14, 15})

# Per-case statuses stored with a submission
CASE_PASSED = "Passed"
CASE_COMPILATION_ERROR = "Compilation Error"
CASE_RUNTIME_ERROR = "Runtime Error"


def verdict_from_case_statuses(statuses: Iterable[str]) -> RunVerdict:
    """Classify a scored run from its per-test-case statuses.

    All cases passing wins; otherwise a compilation error anywhere takes
    precedence over a runtime error, and anything else is a plain failure.
    A run with no cases is a failure.
    """
    statuses = list(statuses)
    if statuses and all(status == CASE_PASSED for status in statuses):
        return RunVerdict.PASSED
    if any(status == CASE_COMPILATION_ERROR for status in statuses):
        return RunVerdict.COMPILE_ERROR
    if any(status == CASE_RUNTIME_ERROR for status in statuses):
        return RunVerdict.RUNTIME_ERROR
    return RunVerdict.FAILED


def verdict_from_judge_status(status_id: int | None) -> RunVerdict:
    """Classify a single custom run from the sandbox's status id."""
    if status_id == JUDGE_STATUS_ACCEPTED:
        return RunVerdict.PASSED
    if status_id == JUDGE_STATUS_COMPILATION_ERROR:
        return RunVerdict.COMPILE_ERROR
    if status_id in JUDGE_RUNTIME_ERROR_STATUSES:
        return RunVerdict.RUNTIME_ERROR
    return RunVerdict.FAILED


def display_verdict(verdict: RunVerdict) -> MarkerVerdict:
    """Collapse a run verdict onto the timeline's marker categories."""
    match verdict:
        case RunVerdict.PASSED:
            return MarkerVerdict.PASSED
        case RunVerdict.COMPILE_ERROR:
            return MarkerVerdict.COMPILE_ERROR
        case _:
            return MarkerVerdict.FAILED


__all__ = [
    "verdict_from_case_statuses",
    "verdict_from_judge_status",
    "display_verdict",
]
