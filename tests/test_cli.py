from __future__ import annotations

import json
from types import MappingProxyType

import pytest
from pydantic import ValidationError

from a11y_bot import cli
from a11y_bot.agent.coordinator import ElementFinding, LoopResult
from a11y_bot.browser.channel import Rect
from a11y_bot.browser.keyboard import FocusTrap
from a11y_bot.perception.engine import ElementDescriptor
from a11y_bot.planning.planner import RulePlanner
from a11y_bot.remediation.models import AccessibilityIssue, ElementContext, IssueType, Severity


def parse(*argv):
    return cli.build_parser().parse_args(list(argv))


class TestBuildTask:
    def test_defaults(self):
        task = cli.build_task(parse("https://example.test"))

        assert task.type == "full-audit"
        assert task.wcag_level == "AA"
        assert task.scope.selectors == []
        assert task.constraints.max_elements == 50

    def test_selectors_and_constraints(self):
        args = parse("https://example.test", "--task", "fix-verification", "-s", "#save", "-s", "nav a",
                     "-x", "#ad", "--wcag-level", "AAA", "--max-time", "30")
        task = cli.build_task(args)

        assert task.type == "fix-verification"
        assert task.scope.selectors == ["#save", "nav a"]
        assert task.constraints.excluded_selectors == ["#ad"]
        assert task.constraints.time_budget_seconds == 30
        assert task.wcag_level == "AAA"

    def test_workflow_file_implies_workflow_task(self, tmp_path):
        workflow = tmp_path / "checkout.json"
        workflow.write_text(json.dumps([
            {"action": "click", "target": "#open"},
            {"action": "type", "target": "#email", "value": "a@b.c"},
        ]))

        task = cli.build_task(parse("https://example.test", "--workflow", str(workflow)))

        assert task.type == "workflow"
        assert [step.action for step in task.scope.workflows[0]] == ["click", "type"]

    def test_workflow_task_needs_a_file(self):
        with pytest.raises(ValueError):
            cli.build_task(parse("https://example.test", "--task", "workflow"))

    def test_workflow_file_must_be_a_list(self, tmp_path):
        workflow = tmp_path / "bad.json"
        workflow.write_text(json.dumps({"action": "click"}))
        with pytest.raises(ValueError):
            cli.load_workflow(str(workflow))

    def test_missing_workflow_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            cli.load_workflow(str(tmp_path / "nope.json"))

    def test_task_file_uses_camel_case(self, tmp_path):
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({
            "type": "fix-verification",
            "wcagLevel": "AAA",
            "scope": {"selectors": ["#save"]},
            "constraints": {"timeBudgetSeconds": 20, "excludedSelectors": ["#ad"]},
        }))

        task = cli.build_task(parse("--task-file", str(task_file)))

        assert task.wcag_level == "AAA"
        assert task.scope.selectors == ["#save"]
        assert task.constraints.time_budget_seconds == 20

    def test_task_file_rejects_unknown_fields(self, tmp_path):
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({"type": "full-audit", "colour": "blue"}))

        with pytest.raises(ValidationError):
            cli.build_task(parse("--task-file", str(task_file)))


class TestPlannerChoice:
    def test_claude_without_key_falls_back_to_rules(self, monkeypatch):
        monkeypatch.setattr(cli, "ANTHROPIC_API_KEY", "")
        assert isinstance(cli.build_planner("claude"), RulePlanner)

    def test_rules(self):
        assert isinstance(cli.build_planner("rules"), RulePlanner)


class TestArguments:
    def test_tab_needs_cdp_endpoint(self, monkeypatch):
        monkeypatch.setattr(cli, "CDP_ENDPOINT", "")
        with pytest.raises(SystemExit) as exc:
            cli.main(["--tab", "0", "--cdp-endpoint", ""])
        assert exc.value.code == 2

    def test_url_required(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2

    def test_bad_task_file_exits_1(self, tmp_path, capsys):
        task_file = tmp_path / "task.json"
        task_file.write_text(json.dumps({"type": "nonsense"}))

        with pytest.raises(SystemExit) as exc:
            cli.main(["https://example.test", "--task-file", str(task_file)])

        assert exc.value.code == 1
        assert "Error:" in capsys.readouterr().err


class TestLoopReport:
    def result(self) -> LoopResult:
        element = ElementDescriptor("#save", "button", 0, MappingProxyType({}), Rect(0, 0, 10, 10), True)
        issue = AccessibilityIssue(
            IssueType.MISSING_FOCUS, Severity.MAJOR, "#save", "#save shows no visible change when focused", ("2.4.7",),
        )
        trap = FocusTrap("#a", "#b", "infinite-loop", ("#a", "#b"), 4)
        return LoopResult(
            task_id="task-1",
            success=False,
            completed_tasks=3,
            failed_tasks=1,
            cycles=4,
            terminated_reason="completed",
            duration=1.25,
            findings=[ElementFinding(element, ElementContext("#save", "button"), [issue])],
            focus_traps=[trap],
            errors=["sub-1: timed out"],
        )

    def test_sections(self):
        report = cli.format_loop_report(self.result(), "https://example.test")

        assert report.startswith("# Accessibility Report")
        assert "Target: https://example.test" in report
        assert "- Result: Failed" in report
        assert "- Sub-tasks completed: 3" in report
        assert "## Focus Traps" in report
        assert "[CRITICAL] infinite-loop at step 4: #a -> #b" in report
        assert "### `#save`" in report
        assert "[MAJOR] missing-focus (WCAG 2.4.7)" in report
        assert "## Errors" in report

    def test_no_remediation_section_without_results(self):
        report = cli.format_loop_report(self.result())
        assert "Auto-Remediation Report" not in report
        assert "Target:" not in report
