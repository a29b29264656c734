"""Normalize raw test-runner output into a `NormalizedResult`.

Every parser is best-effort: records that parsed are kept, tests whose
outcome never appeared are reported as `unknown`, and a parser that cannot
make sense of the payload at all yields `parse_error` instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterator
from xml.etree import ElementTree

from job_coordinator.models import (
    CaseResult,
    CaseStatus,
    NormalizedResult,
    ResultSummary,
)

logger = logging.getLogger(__name__)

_STATUS_ALIASES: dict[str, CaseStatus] = {
    "passed": CaseStatus.passed,
    "pass": CaseStatus.passed,
    "ok": CaseStatus.passed,
    "success": CaseStatus.passed,
    "xpass": CaseStatus.passed,
    "xpassed": CaseStatus.passed,
    "failed": CaseStatus.failed,
    "fail": CaseStatus.failed,
    "failure": CaseStatus.failed,
    "flaky": CaseStatus.failed,
    "skipped": CaseStatus.skipped,
    "skip": CaseStatus.skipped,
    "pending": CaseStatus.skipped,
    "xfail": CaseStatus.skipped,
    "xfailed": CaseStatus.skipped,
    "error": CaseStatus.error,
    "errored": CaseStatus.error,
    "aborted": CaseStatus.error,
}


def normalize_status(raw: object) -> CaseStatus:
    if not isinstance(raw, str):
        return CaseStatus.unknown
    return _STATUS_ALIASES.get(raw.strip().lower(), CaseStatus.unknown)


def summarize(tests: list[CaseResult]) -> ResultSummary:
    summary = ResultSummary(total=len(tests))
    for test in tests:
        if test.status == CaseStatus.passed:
            summary.passed += 1
        elif test.status in (CaseStatus.failed, CaseStatus.error):
            summary.failed += 1
        elif test.status == CaseStatus.skipped:
            summary.skipped += 1
        else:
            summary.unknown += 1
    return summary


# pytest

_PYTEST_CASE = re.compile(
    r"^(?P<id>\S+::\S+?)\s+(?P<status>PASSED|FAILED|SKIPPED|ERROR|XFAIL|XPASS)\b"
)
_PYTEST_PENDING = re.compile(r"^(?P<id>\S+::\S+)\s*$")
_PYTEST_SHORT = re.compile(r"^(?P<status>FAILED|ERROR) (?P<id>\S+)(?: - (?P<message>.*))?$")
_PYTEST_SECTION = re.compile(r"^_{3,} (?P<name>.+?) _{3,}$")
_PYTEST_FINAL = re.compile(r"^=+ (?P<body>.*?) in [\d.]+s(?: \([^)]*\))? =+$")
_PYTEST_COUNT = re.compile(
    r"(\d+) (passed|failed|skipped|errors?|xfailed|xpassed|deselected|warnings?)"
)
_PYTEST_ASSERT_EQ = re.compile(r"^E\s+(?:AssertionError: )?assert (?P<actual>.+?) == (?P<expected>.+)$")
_TRACEBACK_LOCATION = re.compile(r"^(?P<file>[^\s:]+):(?P<line>\d+): ")


def _parse_pytest(raw: str) -> NormalizedResult:  # noqa: C901
    cases: dict[str, CaseResult] = {}
    sections: dict[str, list[str]] = {}
    current_section: str | None = None
    final: ResultSummary | None = None

    for line in raw.splitlines():
        stripped = line.rstrip()
        final_match = _PYTEST_FINAL.match(stripped)
        if final_match:
            final = _pytest_counts(final_match.group("body"))
            current_section = None
            continue
        if stripped.startswith("="):
            current_section = None
            continue
        section_match = _PYTEST_SECTION.match(stripped)
        if section_match:
            current_section = section_match.group("name")
            sections[current_section] = []
            continue
        if current_section is not None:
            sections[current_section].append(stripped)
            continue

        case_match = _PYTEST_CASE.match(stripped)
        if case_match:
            node_id = case_match.group("id")
            cases[node_id] = CaseResult(
                name=node_id, status=normalize_status(case_match.group("status"))
            )
            continue
        short_match = _PYTEST_SHORT.match(stripped)
        if short_match:
            node_id = short_match.group("id")
            case = cases.get(node_id) or CaseResult(
                name=node_id, status=normalize_status(short_match.group("status"))
            )
            if short_match.group("message"):
                case.message = short_match.group("message")
            cases[node_id] = case
            continue
        pending_match = _PYTEST_PENDING.match(stripped)
        if pending_match and pending_match.group("id") not in cases:
            node_id = pending_match.group("id")
            cases[node_id] = CaseResult(name=node_id, status=CaseStatus.unknown)

    for name, lines in sections.items():
        case = _match_section(cases, name)
        if case is None:
            continue
        _apply_pytest_section(case, lines)

    tests = list(cases.values())
    if final is None:
        return NormalizedResult(summary=summarize(tests), tests=tests, truncated=True)
    final.unknown = sum(1 for t in tests if t.status == CaseStatus.unknown)
    final.total += final.unknown
    return NormalizedResult(summary=final, tests=tests)


def _pytest_counts(body: str) -> ResultSummary:
    summary = ResultSummary()
    for count, kind in _PYTEST_COUNT.findall(body):
        value = int(count)
        if kind in ("passed", "xpassed"):
            summary.passed += value
        elif kind in ("failed", "error", "errors"):
            summary.failed += value
        elif kind in ("skipped", "xfailed"):
            summary.skipped += value
    summary.total = summary.passed + summary.failed + summary.skipped
    return summary


def _match_section(cases: dict[str, CaseResult], name: str) -> CaseResult | None:
    # Section headings are "test_name" or "TestClass.test_name"; node ids are
    # "path::TestClass::test_name".
    suffix = "::" + name.replace(".", "::")
    for node_id, case in cases.items():
        if node_id.endswith(suffix):
            return case
    return None


def _apply_pytest_section(case: CaseResult, lines: list[str]) -> None:
    for line in lines:
        if case.location is None:
            location = _TRACEBACK_LOCATION.match(line)
            if location:
                case.location = f"{location.group('file')}:{location.group('line')}"
        if case.expected is None:
            assertion = _PYTEST_ASSERT_EQ.match(line)
            if assertion:
                case.actual = assertion.group("actual").strip()
                case.expected = assertion.group("expected").strip()
        if case.message is None and line.startswith("E "):
            case.message = line[1:].strip()


# gdUnit4

_GD_CASE = re.compile(
    r"Run Test:\s*(?P<suite>\S+)\s*>\s*(?P<name>[^\s:]+)\s*:\s*(?P<status>[A-Z]+)"
)
_GD_STATS = re.compile(r"^\s*(?:Statistics|Overall Summary):", re.IGNORECASE)
_GD_LINE = re.compile(r"line (?P<line>\d+):", re.IGNORECASE)
_GD_INLINE_EXPECT = re.compile(
    r"expecting:?\s*'(?P<expected>.*?)'\s*but was:?\s*'(?P<actual>.*?)'", re.IGNORECASE
)


def _parse_gdunit4(raw: str) -> NormalizedResult:  # noqa: C901
    cases: dict[str, CaseResult] = {}
    final: ResultSummary | None = None
    current: CaseResult | None = None
    current_suite = ""
    awaiting: str | None = None

    for line in raw.splitlines():
        stripped = line.strip()
        case_match = _GD_CASE.search(stripped)
        if case_match:
            current_suite = case_match.group("suite")
            name = f"{current_suite} > {case_match.group('name')}"
            status_raw = case_match.group("status")
            status = (
                CaseStatus.unknown
                if status_raw == "STARTED"
                else normalize_status(status_raw)
            )
            current = cases.get(name) or CaseResult(
                name=name, status=status, location=current_suite
            )
            current.status = status
            cases[name] = current
            awaiting = None
            continue
        if _GD_STATS.match(stripped):
            final = _gdunit_counts(stripped)
            continue
        if current is None or current.status not in (CaseStatus.failed, CaseStatus.error):
            continue
        lowered = stripped.lower()
        line_match = _GD_LINE.search(stripped)
        if line_match:
            current.location = f"{current_suite}:{line_match.group('line')}"
        inline = _GD_INLINE_EXPECT.search(stripped)
        if inline:
            current.expected = inline.group("expected")
            current.actual = inline.group("actual")
            awaiting = None
            continue
        if "expecting" in lowered:
            awaiting = "expected"
            continue
        if lowered.startswith("but was"):
            awaiting = "actual"
            continue
        if awaiting and stripped:
            value = stripped.strip("'\"")
            if awaiting == "expected":
                current.expected = value
            else:
                current.actual = value
            awaiting = None
            continue
        if stripped and current.message is None and not lowered.startswith("report"):
            current.message = stripped

    tests = list(cases.values())
    if final is None:
        return NormalizedResult(summary=summarize(tests), tests=tests, truncated=True)
    final.unknown = sum(1 for t in tests if t.status == CaseStatus.unknown)
    return NormalizedResult(summary=final, tests=tests)


def _gdunit_counts(line: str) -> ResultSummary:
    def _count(pattern: str) -> int:
        match = re.search(pattern, line, re.IGNORECASE)
        return int(match.group(1)) if match else 0

    total = _count(r"(\d+)\s+tests?\s+cases?")
    errors = _count(r"(\d+)\s+errors?")
    failed = _count(r"(\d+)\s+fail(?:ed|ures?)")
    skipped = _count(r"(\d+)\s+skipped")
    failed += errors
    return ResultSummary(
        total=total,
        passed=max(total - failed - skipped, 0),
        failed=failed,
        skipped=skipped,
    )


# JUnit XML

_XML_START = re.compile(r"<\?xml|<testsuites\b|<testsuite\b")
_EXPECTED_BUT_WAS = re.compile(
    r"expected:?\s*<(?P<expected>.*?)>\s*but was:?\s*<(?P<actual>.*?)>", re.DOTALL
)


def _parse_junit(raw: str) -> NormalizedResult:
    start = _XML_START.search(raw)
    if start is None:
        return NormalizedResult(parse_error="no JUnit XML report found in output")

    tests: list[CaseResult] = []
    closed = False
    try:
        for element in _junit_elements(raw[start.start() :]):
            if element is None:
                closed = True
                break
            tests.append(_junit_case(element))
    except ElementTree.ParseError as error:
        if not tests:
            return NormalizedResult(parse_error=f"invalid JUnit XML: {error}", truncated=True)
        logger.debug("JUnit XML truncated after %d test cases: %s", len(tests), error)

    return NormalizedResult(summary=summarize(tests), tests=tests, truncated=not closed)


def _junit_elements(document: str) -> Iterator[ElementTree.Element | None]:
    """Yield completed <testcase> elements, then None once the root closes."""

    pull = ElementTree.XMLPullParser(events=("start", "end"))
    depth = 0
    for chunk in document.splitlines(keepends=True):
        pull.feed(chunk)
        for event, element in pull.read_events():
            if event == "start":
                depth += 1
                continue
            depth -= 1
            if element.tag == "testcase":
                yield element
            if depth == 0:
                yield None
                return


def _junit_case(element: ElementTree.Element) -> CaseResult:
    classname = element.get("classname")
    name = element.get("name", "<unnamed>")
    full_name = f"{classname}::{name}" if classname else name
    location = element.get("file")
    if location and element.get("line"):
        location = f"{location}:{element.get('line')}"

    status = CaseStatus.passed
    message: str | None = None
    expected: str | None = None
    actual: str | None = None
    for child in element:
        if child.tag in ("failure", "error"):
            status = CaseStatus.failed if child.tag == "failure" else CaseStatus.error
            message = child.get("message") or (child.text or "").strip() or None
            details = f"{child.get('message') or ''}\n{child.text or ''}"
            match = _EXPECTED_BUT_WAS.search(details)
            if match:
                expected = match.group("expected")
                actual = match.group("actual")
            break
        if child.tag == "skipped":
            status = CaseStatus.skipped
            message = child.get("message")
    return CaseResult(
        name=full_name,
        status=status,
        expected=expected,
        actual=actual,
        location=location,
        message=message,
    )


# JSON lines


def _parse_jsonl(raw: str) -> NormalizedResult:  # noqa: C901
    lines = [line.strip() for line in raw.splitlines() if line.strip()]
    record_lines = [(i, line) for i, line in enumerate(lines) if line.startswith("{")]
    if not record_lines:
        return NormalizedResult(parse_error="no structured records found in output")

    tests: list[CaseResult] = []
    artifacts: list[str] = []
    reported: ResultSummary | None = None
    parsed_any = False
    truncated = False
    for index, line in record_lines:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            tests.append(CaseResult(name=f"<unparsed record {index + 1}>", status=CaseStatus.unknown))
            if index == len(lines) - 1:
                truncated = True
            continue
        if not isinstance(payload, dict):
            continue
        parsed_any = True
        if isinstance(payload.get("summary"), dict):
            reported = ResultSummary.model_validate(
                {k: v for k, v in payload["summary"].items() if k in ResultSummary.model_fields}
            )
            continue
        if isinstance(payload.get("artifact"), str):
            artifacts.append(payload["artifact"])
            continue
        if "name" in payload:
            tests.append(
                CaseResult(
                    name=str(payload["name"]),
                    status=normalize_status(payload.get("status")),
                    expected=_optional_str(payload.get("expected")),
                    actual=_optional_str(payload.get("actual")),
                    location=_optional_str(payload.get("location")),
                    message=_optional_str(payload.get("message")),
                )
            )

    if not parsed_any:
        return NormalizedResult(
            tests=tests,
            summary=summarize(tests),
            parse_error="no structured record could be decoded",
            truncated=truncated,
        )
    summary = reported or summarize(tests)
    if reported is not None:
        summary.unknown = sum(1 for t in tests if t.status == CaseStatus.unknown)
    return NormalizedResult(
        summary=summary, tests=tests, artifacts=artifacts, truncated=truncated
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _parse_command(raw: str) -> NormalizedResult:
    return NormalizedResult()


_PARSERS: dict[str, Callable[[str], NormalizedResult]] = {
    "pytest": _parse_pytest,
    "gdunit4": _parse_gdunit4,
    "junit": _parse_junit,
    "jsonl": _parse_jsonl,
    "command": _parse_command,
}


def parse(raw_output: str, framework: str) -> NormalizedResult:
    """Parse runner output; never raises."""

    parser = _PARSERS.get(framework)
    if parser is None:
        return NormalizedResult(parse_error=f"no parser for framework {framework!r}")
    try:
        return parser(raw_output)
    except Exception as error:  # noqa: BLE001
        logger.warning("Parser for %s failed: %s", framework, error)
        return NormalizedResult(parse_error=f"{type(error).__name__}: {error}")
