"""Boundary adapter that turns raw worker output into a pipeline signal.

Workers report their outcome by printing one completion marker from a closed
vocabulary (``models.Signal``, vocabulary version 1).  The scan is whole-token
and first-match-wins in ``MARKER_PRIORITY`` order: when an output carries
several markers, the one listed first below wins, wherever it appears in the
text.  No marker at all yields ``Signal.UNRECOGNIZED``; callers must treat
that as fatal rather than pick a default.

Besides the marker, two optional line conventions are read:

* ``ISSUE: <text>`` (optionally bulleted) lines become the feature's current
  issues when the signal is a failure.
* A ``SUMMARY: <text>`` line becomes the history summary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import Signal


VOCABULARY_VERSION = 1

MARKER_PRIORITY: tuple[Signal, ...] = (
    Signal.BACKEND_DEV_COMPLETE,
    Signal.BACKEND_NO_WORK,
    Signal.BACKEND_REVIEW_PASSED,
    Signal.BACKEND_REVIEW_FAILED,
    Signal.BACKEND_REVIEW_PASSED_NO_WORK,
    Signal.BACKEND_REVIEW_PASSED_MAX_CYCLES,
    Signal.FRONTEND_DEV_COMPLETE,
    Signal.FRONTEND_NO_WORK,
    Signal.FRONTEND_REVIEW_PASSED,
    Signal.FRONTEND_REVIEW_FAILED,
    Signal.FRONTEND_REVIEW_PASSED_NO_WORK,
    Signal.FRONTEND_REVIEW_PASSED_MAX_CYCLES,
    Signal.QA_TESTING_COMPLETE,
    Signal.QA_NO_TESTING,
    Signal.QA_ISSUES_BACKEND,
    Signal.QA_ISSUES_FRONTEND,
    Signal.QA_PASSED_MAX_CYCLES,
)

_MARKER_PATTERNS: tuple[tuple[Signal, re.Pattern[str]], ...] = tuple(
    (signal, re.compile(rf"(?<![A-Za-z0-9_]){re.escape(signal.value)}(?![A-Za-z0-9_])"))
    for signal in MARKER_PRIORITY
)

ISSUE_LINE_RE = re.compile(r"^[ \t]*(?:[-*][ \t]+)?ISSUE:[ \t]*(?P<text>\S.*?)[ \t\r]*$", re.MULTILINE)
SUMMARY_LINE_RE = re.compile(r"^[ \t]*SUMMARY:[ \t]*(?P<text>\S.*?)[ \t\r]*$", re.MULTILINE)

_MAX_SUMMARY_CHARS = 500


@dataclass(frozen=True)
class ClassifiedOutput:
    signal: Signal
    issues: tuple[str, ...]
    summary: str

    @property
    def recognized(self) -> bool:
        return self.signal != Signal.UNRECOGNIZED


def classify(text: str) -> Signal:
    """Return the highest-priority marker present in *text*, or ``UNRECOGNIZED``."""
    for signal, pattern in _MARKER_PATTERNS:
        if pattern.search(text):
            return signal
    return Signal.UNRECOGNIZED


def extract_issues(text: str) -> list[str]:
    """Collect ``ISSUE:`` lines in order, dropping exact duplicates."""
    issues: list[str] = []
    for match in ISSUE_LINE_RE.finditer(text):
        issue = match.group("text")
        if issue not in issues:
            issues.append(issue)
    return issues


def extract_summary(text: str, signal: Signal) -> str:
    match = SUMMARY_LINE_RE.search(text)
    if match is None:
        return signal.value
    summary = match.group("text")
    if len(summary) > _MAX_SUMMARY_CHARS:
        summary = summary[: _MAX_SUMMARY_CHARS - 3].rstrip() + "..."
    return summary


def parse_worker_output(text: str) -> ClassifiedOutput:
    signal = classify(text)
    return ClassifiedOutput(
        signal=signal,
        issues=tuple(extract_issues(text)),
        summary=extract_summary(text, signal),
    )
