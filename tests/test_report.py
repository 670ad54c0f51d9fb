from __future__ import annotations

import json

from a11y_bot.remediation.fixes import CSSFixGenerator
from a11y_bot.remediation.models import ElementContext, RemediationResult, TaskStatus
from a11y_bot.remediation.report import generate_json_report, generate_report


def results() -> list[RemediationResult]:
    fix = CSSFixGenerator().focus_fix(ElementContext(selector="#save", tag="button"))
    return [
        RemediationResult("remediation-1", "#save", True, TaskStatus.COMPLETED, applied_fixes=[fix], duration_ms=12),
        RemediationResult("remediation-2", "#menu", False, TaskStatus.FAILED, error="1 issue(s) not fixed"),
    ]


class TestMarkdownReport:
    def test_summary(self):
        report = generate_report(results())

        assert report.startswith("# Auto-Remediation Report")
        assert "- Total Tasks: 2" in report
        assert "- Successful: 1" in report
        assert "- Failed: 1" in report
        assert "- Total Fixes Applied: 1" in report

    def test_task_details(self):
        report = generate_report(results())

        assert "### Task remediation-1" in report
        assert "- Element: `#save`" in report
        assert "- Status: Success" in report
        assert "focus-visible:" in report and "WCAG 2.4.7" in report
        assert "- Error: 1 issue(s) not fixed" in report

    def test_empty_batch(self):
        report = generate_report([])
        assert "- Total Tasks: 0" in report
        assert "### Task" not in report


class TestJsonReport:
    def test_round_trips_through_json(self):
        payload = json.loads(generate_json_report(results()))

        assert payload["summary"] == {"total_tasks": 2, "successful": 1, "failed": 1, "total_fixes_applied": 1}
        assert [task["task_id"] for task in payload["tasks"]] == ["remediation-1", "remediation-2"]
        assert payload["tasks"][0]["applied_fixes"][0]["fix_type"] == "focus-visible"
        assert payload["tasks"][1]["status"] == "failed"
