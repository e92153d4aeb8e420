"""
Test-run output parsing.

A pure text-in, records-out cascade over the captured output of a WebdriverIO
run. The strategy that produced the records is reported alongside them so
callers can tell a structured parse from a degraded one.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from e2e_common.models import TestError, TestResult

logger = logging.getLogger(__name__)

DEFAULT_TEST_FILE = "extracted from logs"

# Upper bound of records synthesized from one summary count
MAX_SUMMARY_RECORDS = 500

STRUCTURED_PATTERN = re.compile(
    r'Test "(?P<name>.+?)" (?P<status>passed|failed) in (?P<duration>\d+)ms '
    r"\(retries: (?P<retries>[^)]*)\)"
)
CHECKMARK_PATTERN = re.compile(r"^\s*[✓✔]\s+(?P<name>.+?)\s*$")
PASSING_PATTERN = re.compile(r"(\d+)\s+passing", re.IGNORECASE)
FAILING_PATTERN = re.compile(r"(\d+)\s+failing", re.IGNORECASE)
PENDING_PATTERN = re.compile(r"(\d+)\s+pending", re.IGNORECASE)

ERROR_INDICATORS = ("Error:", "AssertionError", "failing", "FAILED", "✗", "Test failed:")

# Output marker -> progress percentage reached when it appears
PROGRESS_MARKERS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("Starting WebDriver session",), 60),
    (("Running tests", "RUNNING in Android"), 75),
    (("Test execution", "passing"), 90),
)


class ParseStrategy(str, Enum):
    """Which stage of the cascade produced the records."""

    STRUCTURED = "structured"
    CHECKMARK = "checkmark"
    SUMMARY = "summary"
    SENTINEL = "sentinel"


@dataclass
class ParseOutcome:
    strategy: ParseStrategy
    results: list[TestResult] = field(default_factory=list)


def progress_for_line(line: str, current: int) -> int:
    """
    Return the progress reached after seeing one output line.

    Progress never goes backwards.
    """
    progress = current
    for markers, value in PROGRESS_MARKERS:
        if value > progress and any(marker in line for marker in markers):
            progress = value
    return progress


def _parse_retries(raw: str) -> int:
    raw = raw.strip()
    return int(raw) if raw.isdigit() else 0


def _first_error_line(output: str) -> str | None:
    for line in output.splitlines():
        if any(indicator in line for indicator in ERROR_INDICATORS):
            return line.strip()
    return None


def parse_test_output(
    output: str,
    application_id: str,
    job_id: str,
    test_file: str | None = None,
) -> ParseOutcome:
    """
    Extract per-test results from captured run output.

    The stages are tried in order and the first one that finds anything wins:
    1. Structured lines: Test "<name>" passed|failed in <N>ms (retries: <R>)
    2. Checkmark lines (✓ / ✔), recorded as passed with duration 0
    3. "N passing" / "N failing" / "N pending" counts, expanded into that
       many synthetic records
    4. One record for the whole run, failed iff error indicators are present

    Args:
        output: Captured stdout (and stderr) of the test run
        application_id: Application the run belongs to
        job_id: Job that produced the output
        test_file: Spec file the run targeted, if known

    Returns:
        ParseOutcome with the strategy used and at least one record
    """
    test_file = test_file or DEFAULT_TEST_FILE

    def record(
        name: str,
        status: str,
        duration: int = 0,
        retries: int = 0,
        error: TestError | None = None,
    ) -> TestResult:
        return TestResult(
            application=application_id,
            job_id=job_id,
            test_name=name,
            test_file=test_file,
            status=status,
            duration=duration,
            retries=retries,
            error=error,
        )

    lines = output.splitlines()

    structured = []
    for line in lines:
        match = STRUCTURED_PATTERN.search(line)
        if match:
            structured.append(
                record(
                    match.group("name"),
                    match.group("status"),
                    duration=int(match.group("duration")),
                    retries=_parse_retries(match.group("retries")),
                )
            )
    if structured:
        return ParseOutcome(ParseStrategy.STRUCTURED, structured)

    checkmarks = []
    for line in lines:
        match = CHECKMARK_PATTERN.match(line)
        if match:
            checkmarks.append(record(match.group("name"), "passed"))
    if checkmarks:
        return ParseOutcome(ParseStrategy.CHECKMARK, checkmarks)

    summary = []
    for pattern, status, label in (
        (PASSING_PATTERN, "passed", "Passing"),
        (FAILING_PATTERN, "failed", "Failing"),
        (PENDING_PATTERN, "skipped", "Pending"),
    ):
        match = pattern.search(output)
        if match:
            count = int(match.group(1))
            if count > MAX_SUMMARY_RECORDS:
                logger.warning(
                    f"Summary reports {count} {label.lower()} tests, "
                    f"recording the first {MAX_SUMMARY_RECORDS}"
                )
                count = MAX_SUMMARY_RECORDS
            summary.extend(
                record(f"{label} test {index}", status)
                for index in range(1, count + 1)
            )
    if summary:
        return ParseOutcome(ParseStrategy.SUMMARY, summary)

    error_line = _first_error_line(output)
    if error_line is not None:
        sentinel = record(
            "Test run", "failed", error=TestError(error_line, output[-2000:] or None)
        )
    else:
        sentinel = record("Test run", "passed")
    return ParseOutcome(ParseStrategy.SENTINEL, [sentinel])
