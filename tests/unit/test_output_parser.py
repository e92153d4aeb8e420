"""
Unit tests for test-run output parsing.
"""

from e2e_controller.output_parser import (
    DEFAULT_TEST_FILE,
    MAX_SUMMARY_RECORDS,
    ParseStrategy,
    parse_test_output,
    progress_for_line,
)


class TestParseTestOutput:
    """Test suite for the parse cascade."""

    def test_structured_line(self):
        output = 'Test "Login" passed in 1234ms (retries: 0)\n'

        outcome = parse_test_output(output, "app-1", "job-1", "login.spec.js")

        assert outcome.strategy is ParseStrategy.STRUCTURED
        assert len(outcome.results) == 1
        result = outcome.results[0]
        assert result.test_name == "Login"
        assert result.status == "passed"
        assert result.duration == 1234
        assert result.retries == 0
        assert result.test_file == "login.spec.js"
        assert result.application == "app-1"
        assert result.job_id == "job-1"

    def test_structured_wins_over_later_stages(self):
        output = "\n".join(
            [
                "[0-0] RUNNING in Android - /test/specs/login.spec.js",
                'Test "Login" passed in 1200ms (retries: 1)',
                'Test "Logout" failed in 300ms (retries: undefined)',
                "  ✓ Login",
                "1 passing (3s)",
                "1 failing",
            ]
        )

        outcome = parse_test_output(output, "app-1", "job-1")

        assert outcome.strategy is ParseStrategy.STRUCTURED
        assert [(r.test_name, r.status, r.retries) for r in outcome.results] == [
            ("Login", "passed", 1),
            ("Logout", "failed", 0),
        ]
        assert outcome.results[0].test_file == DEFAULT_TEST_FILE

    def test_checkmarks(self):
        output = "  ✓ opens the home screen\n  ✔ shows the login button  \n"

        outcome = parse_test_output(output, "app-1", "job-1")

        assert outcome.strategy is ParseStrategy.CHECKMARK
        assert [r.test_name for r in outcome.results] == [
            "opens the home screen",
            "shows the login button",
        ]
        assert all(r.status == "passed" and r.duration == 0 for r in outcome.results)

    def test_summary_counts(self):
        output = "Spec Files: 1 passed\n3 passing (12.3s)\n1 failing\n"

        outcome = parse_test_output(output, "app-1", "job-1")

        assert outcome.strategy is ParseStrategy.SUMMARY
        assert len(outcome.results) == 4
        assert [r.status for r in outcome.results].count("passed") == 3
        assert outcome.results[-1].test_name == "Failing test 1"
        assert outcome.results[-1].status == "failed"

    def test_pending_count_recorded_as_skipped(self):
        outcome = parse_test_output("1 passing\n2 pending\n", "app-1", "job-1")

        assert [r.status for r in outcome.results] == ["passed", "skipped", "skipped"]
        assert outcome.results[1].test_name == "Pending test 1"

    def test_summary_count_is_capped(self):
        outcome = parse_test_output("100000 passing\n1 failing\n", "app-1", "job-1")

        assert len(outcome.results) == MAX_SUMMARY_RECORDS + 1
        assert outcome.results[MAX_SUMMARY_RECORDS - 1].test_name == (
            f"Passing test {MAX_SUMMARY_RECORDS}"
        )
        assert outcome.results[-1].status == "failed"

    def test_sentinel_failed_on_error_indicator(self):
        output = "Launching app\nError: element (~login) still not displayed after 10000ms\n"

        outcome = parse_test_output(output, "app-1", "job-1")

        assert outcome.strategy is ParseStrategy.SENTINEL
        [result] = outcome.results
        assert result.test_name == "Test run"
        assert result.status == "failed"
        assert result.error.message.startswith("Error: element (~login)")
        assert result.error.stack == output

    def test_sentinel_passed_without_indicators(self):
        outcome = parse_test_output("All done\n", "app-1", "job-1")

        [result] = outcome.results
        assert outcome.strategy is ParseStrategy.SENTINEL
        assert result.status == "passed"
        assert result.error is None

    def test_empty_output_yields_one_record(self):
        outcome = parse_test_output("", "app-1", "job-1")

        assert len(outcome.results) == 1
        assert outcome.results[0].status == "passed"

    def test_error_stack_truncated(self):
        output = "x" * 5000 + "\nAssertionError: expected true\n"

        [result] = parse_test_output(output, "app-1", "job-1").results

        assert len(result.error.stack) == 2000
        assert result.error.stack.endswith("AssertionError: expected true\n")


class TestProgressForLine:
    """Test suite for progress_for_line()."""

    def test_markers(self):
        assert progress_for_line("Starting WebDriver session", 40) == 60
        assert progress_for_line("[0-0] RUNNING in Android - /test/specs/login.spec.js", 60) == 75
        assert progress_for_line("2 passing (4s)", 75) == 90

    def test_never_decreases(self):
        assert progress_for_line("Starting WebDriver session", 90) == 90
        assert progress_for_line("unrelated line", 42) == 42
