from __future__ import annotations

import re
from dataclasses import dataclass

from job_coordinator.models import (
    AttemptOutcome,
    CaseStatus,
    FailureClassification,
    NormalizedResult,
)

_RESOURCE_EXHAUSTED_PATTERNS: tuple[str, ...] = (
    "out of memory",
    "memoryerror",
    "cannot allocate memory",
    "no space left on device",
    "resource exhausted",
    "too many open files",
    "disk quota exceeded",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "permissionerror",
    "operation not permitted",
    "eacces",
    "access is denied",
)
_MISSING_DEPENDENCY_PATTERNS: tuple[str, ...] = (
    "modulenotfounderror",
    "no module named",
    "command not found",
    "cannot find module",
    "could not find a version that satisfies",
    "is not installed",
    "missing dependency",
)
_COMPILATION_PATTERNS: tuple[str, ...] = (
    "syntaxerror",
    "indentationerror",
    "parse error",
    "compilation failed",
    "compile error",
    "error while importing test module",
    "cannot compile",
)
_CRASH_PATTERNS: tuple[str, ...] = (
    "segmentation fault",
    "core dumped",
    "fatal python error",
    "abort trap",
    "crashed",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate-limit",
    "too many requests",
    "http 429",
    "status 429",
    "error 429",
    "quota exceeded",
)
_GIT_CONFLICT_PATTERNS: tuple[str, ...] = (
    "merge conflict",
    "conflict (content)",
    "automatic merge failed",
    "needs merge",
    "<<<<<<< ",
)

_RETRY_AFTER = re.compile(
    r"retry[- _]after[\"']?\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(ms|s|sec|seconds)?",
    re.IGNORECASE,
)

# Exit codes produced by a process killed by a signal (128 + signum) that
# indicate a crash rather than a controlled failure.
_CRASH_EXIT_CODES = frozenset({134, 136, 139})

_PYTEST_SECTION = re.compile(r"^=+ (.+?) =+$")
_FAILURE_LINE_PREFIXES = ("E ", "FAILED ", "> ")


@dataclass(slots=True)
class AttemptClassification:
    """Normalized failure classification result."""

    classification: FailureClassification
    matched_rule: str
    matched_pattern: str | None
    message: str
    retry_after_seconds: float | None = None


def classify_attempt(  # noqa: C901, PLR0911
    outcome: AttemptOutcome, result: NormalizedResult
) -> AttemptClassification | None:
    """Classify one attempt; returns None when the attempt succeeded.

    Cancelled attempts are not failures either and also return None; the
    caller checks `outcome.cancelled` first.
    """

    if outcome.spawn_error is not None:
        return AttemptClassification(
            classification=outcome.spawn_classification
            or FailureClassification.missing_dependency,
            matched_rule="spawn_error",
            matched_pattern=None,
            message=outcome.spawn_error,
        )
    if outcome.cancelled:
        return None
    if outcome.timed_out:
        return AttemptClassification(
            classification=FailureClassification.timeout,
            matched_rule="wall_clock_timeout",
            matched_pattern=None,
            message="runner exceeded its wall-clock timeout",
        )
    if outcome.stalled:
        return AttemptClassification(
            classification=FailureClassification.runtime_crash,
            matched_rule="unresponsive",
            matched_pattern=None,
            message="runner stopped making progress and was killed",
        )

    failed = result.summary.failed
    if outcome.exit_code == 0 and failed == 0 and result.parse_error is None:
        return None

    # Assertion text of failing tests must not trip the keyword rules.
    outside = _outside_failures(outcome.output, result) if failed > 0 else outcome.output
    scanned = outside.lower()

    for rule, patterns, classification in (
        ("resource_exhausted", _RESOURCE_EXHAUSTED_PATTERNS, FailureClassification.resource_exhausted),
        ("permission_error", _PERMISSION_PATTERNS, FailureClassification.permission_error),
        ("missing_dependency", _MISSING_DEPENDENCY_PATTERNS, FailureClassification.missing_dependency),
        ("compilation_error", _COMPILATION_PATTERNS, FailureClassification.compilation_error),
    ):
        pattern = _first_match(scanned, patterns)
        if pattern is not None:
            return AttemptClassification(
                classification=classification,
                matched_rule=rule,
                matched_pattern=pattern,
                message=_line_containing(outside, pattern),
            )

    if outcome.exit_code is not None and (
        outcome.exit_code < 0 or outcome.exit_code in _CRASH_EXIT_CODES
    ):
        return AttemptClassification(
            classification=FailureClassification.runtime_crash,
            matched_rule="signal_exit",
            matched_pattern=None,
            message=f"runner terminated abnormally (exit code {outcome.exit_code})",
        )
    pattern = _first_match(scanned, _CRASH_PATTERNS)
    if pattern is not None:
        return AttemptClassification(
            classification=FailureClassification.runtime_crash,
            matched_rule="crash_marker",
            matched_pattern=pattern,
            message=_line_containing(outside, pattern),
        )

    if failed > 0:
        return AttemptClassification(
            classification=FailureClassification.test_failure,
            matched_rule="failed_tests",
            matched_pattern=None,
            message=f"{failed} of {result.summary.total} tests failed",
        )

    pattern = _first_match(scanned, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return AttemptClassification(
            classification=FailureClassification.rate_limited,
            matched_rule="rate_limited",
            matched_pattern=pattern,
            message=_line_containing(outcome.output, pattern),
            retry_after_seconds=extract_retry_after(outcome.output),
        )

    pattern = _first_match(scanned, _GIT_CONFLICT_PATTERNS)
    if pattern is not None:
        return AttemptClassification(
            classification=FailureClassification.git_conflict,
            matched_rule="git_conflict",
            matched_pattern=pattern,
            message=_line_containing(outcome.output, pattern),
        )

    if result.parse_error is not None:
        message = f"runner output could not be parsed: {result.parse_error}"
    else:
        message = f"runner exited with code {outcome.exit_code}"
    return AttemptClassification(
        classification=FailureClassification.unknown,
        matched_rule="fallback_unknown",
        matched_pattern=None,
        message=message,
    )


def extract_retry_after(text: str) -> float | None:
    """Provider-supplied retry-after delay in seconds, if present."""

    match = _RETRY_AFTER.search(text)
    if match is None:
        return None
    value = float(match.group(1))
    if (match.group(2) or "").lower() == "ms":
        value /= 1000
    return value


_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("assert", "expected", "but was"), "Compare the expected and actual values; fix the logic under test, not the assertion."),
    (("syntaxerror", "indentationerror", "parse error"), "Fix the syntax error at the reported location before rerunning."),
    (("no module named", "modulenotfounderror", "cannot find module"), "A dependency or import path is missing; check installed packages and module names."),
    (("attributeerror", "has no attribute"), "An attribute or method is missing; check names and object types."),
    (("typeerror",), "A call received an argument of the wrong type or arity."),
    (("keyerror", "indexerror", "out of range"), "A lookup used a missing key or index; check collection contents."),
    (("null", "nonetype", "nil"), "A value was unexpectedly empty; check initialization order."),
    (("timeout", "timed out"), "The run exceeded its time budget; look for infinite loops or blocking calls."),
    (("conflict",), "Resolve the merge conflict markers before rerunning."),
)


def failure_hint(text: str) -> str:
    """Short heuristic hint derived from keywords in the error text."""

    haystack = text.lower()
    for keywords, hint in _HINTS:
        if any(keyword in haystack for keyword in keywords):
            return hint
    return "Inspect the failing output and address the first reported error."


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _line_containing(text: str, pattern: str, limit: int = 300) -> str:
    for line in text.splitlines():
        if pattern in line.lower():
            return line.strip()[:limit]
    return pattern


def _outside_failures(output: str, result: NormalizedResult) -> str:
    """Runner output minus the text reported for failing tests.

    Drops pytest's FAILURES section, assertion and summary lines, and any
    line carrying a failing test's name or message.
    """
    markers = set()
    for case in result.tests:
        if case.status != CaseStatus.failed:
            continue
        for text in (case.name, case.message, case.expected, case.actual):
            if text and len(text.strip()) > 3:
                markers.add(text.strip())

    kept = []
    in_failures = False
    for line in output.splitlines():
        section = _PYTEST_SECTION.match(line.strip())
        if section is not None:
            in_failures = section.group(1).strip().upper() == "FAILURES"
            continue
        if in_failures or line.startswith(_FAILURE_LINE_PREFIXES):
            continue
        if any(marker in line for marker in markers):
            continue
        kept.append(line)
    return "\n".join(kept)
