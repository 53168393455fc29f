import json

from exercise_sandbox import ExerciseType, parse_test_output
from exercise_sandbox.reporting import SUITE_RESULT_NAME, decode_report


def _parse(output: str):
    return parse_test_output("module-2", output, execution_time_ms=42, exercise_type=ExerciseType.SERVER)


def _report(passes: list[dict], failures: list[dict]) -> str:
    return json.dumps(
        {
            "stats": {"suites": 1, "tests": len(passes) + len(failures), "passes": len(passes), "failures": len(failures)},
            "tests": passes + failures,
            "passes": passes,
            "failures": failures,
            "pending": [],
        },
        indent=2,
    )


def test_structured_report_with_expected_and_actual() -> None:
    output = _report(
        [{"title": "adds", "fullTitle": "math adds", "duration": 1, "err": {}}],
        [{"title": "subtracts", "fullTitle": "math subtracts", "err": {"message": "expected 5 to equal got 4"}}],
    )
    suite = _parse(output)
    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (2, 1, 1)
    assert suite.results[0].name == "adds"
    assert suite.results[0].passed is True
    failed = suite.results[1]
    assert failed.passed is False
    assert failed.error == "expected 5 to equal got 4"
    assert failed.expected == "5"
    assert failed.actual == "4"
    assert suite.execution_time_ms == 42
    assert suite.exercise_type is ExerciseType.SERVER


def test_failure_without_recognizable_values_leaves_them_unset() -> None:
    suite = _parse(_report([], [{"title": "responds", "err": {"message": "connect ECONNREFUSED"}}]))
    assert suite.failed_tests == 1
    assert suite.results[0].expected is None
    assert suite.results[0].actual is None
    assert suite.results[0].error == "connect ECONNREFUSED"


def test_empty_output_is_zero_tests() -> None:
    suite = _parse("   \n")
    assert suite.to_dict()["totalTests"] == 0
    assert suite.passed_tests == 0
    assert suite.failed_tests == 0
    assert suite.results == []


def test_report_embedded_in_console_noise() -> None:
    output = "> npm test\nServer listening on 3000\n" + _report([{"title": "a"}, {"title": "b"}], []) + "\n"
    suite = _parse(output)
    assert suite.total_tests == 2
    assert suite.passed_tests == 2


def test_json_without_report_lists_is_not_structured() -> None:
    assert decode_report('{"ok": true}') is None
    assert decode_report("[1, 2, 3]") is None


def test_glyph_fallback_counts_marks() -> None:
    output = "  math\n    ✔ adds\n    ✓ multiplies\n    ✖ subtracts\n"
    suite = _parse(output)
    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (3, 2, 1)
    assert len(suite.results) == 1
    assert suite.results[0].name == SUITE_RESULT_NAME
    assert suite.results[0].passed is False
    assert suite.results[0].error == output


def test_summary_fallback_when_no_marks() -> None:
    suite = _parse("  4 passing (20ms)\n  1 failing\n")
    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (5, 4, 1)


def test_summary_fallback_all_passing() -> None:
    suite = _parse("  3 passing (8ms)\n")
    assert (suite.total_tests, suite.passed_tests, suite.failed_tests) == (3, 3, 0)
    assert suite.results[0].passed is True


def test_unrecognized_output_is_zero_tests() -> None:
    suite = _parse("Error: Cannot find module 'mocha'\n")
    assert suite.total_tests == 0
    assert suite.results == []
