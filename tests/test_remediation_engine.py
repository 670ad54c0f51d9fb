from __future__ import annotations

import pytest

from a11y_bot.perception.engine import PerceptionEngine
from a11y_bot.remediation.detection import IssueDetector
from a11y_bot.remediation.engine import AutoRemediationEngine, RemediationConfig
from a11y_bot.remediation.models import FixType, IssueStatus, IssueType, TaskStatus, VerificationResult
from a11y_bot.remediation.verification import FixVerifier

from conftest import FakeElement


async def detect(channel, perception, selector):
    element = await perception.snapshot_element(selector)
    probe = await perception.probe_focus_indicator(selector)
    context, issues = await IssueDetector(channel, perception).detect(element, probe)
    return element, context, issues


def engine_for(channel, perception, **config) -> AutoRemediationEngine:
    config.setdefault("strategies", ("stylesheet", "rule", "inline"))
    return AutoRemediationEngine(channel, perception, RemediationConfig(**config))


async def failing_verify(self, fix, baseline):
    return VerificationResult(passed=False, confidence=0.0, reason="overridden by page styles")


class TestSingleElement:
    @pytest.mark.asyncio
    async def test_focus_visible_fix(self, channel, perception):
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#save")
        assert [i.type for i in issues] == [IssueType.MISSING_FOCUS]

        result = await engine.remediate_element(element, context, issues)

        assert result.success
        assert result.status == TaskStatus.COMPLETED
        assert [fix.fix_type for fix in result.applied_fixes] == [FixType.FOCUS_VISIBLE]
        assert issues[0].status == IssueStatus.FIXED
        verification = issues[0].attempts[0].verification
        assert verification.passed
        assert verification.evidence.focus_indicator_present
        assert "outline-style" in verification.evidence.changed_properties
        assert (await perception.probe_focus_indicator("#save")).indicator_present

    @pytest.mark.asyncio
    async def test_contrast_fix(self, channel_factory):
        channel = await channel_factory([
            FakeElement("#faint", text="Faint", style={"color": "rgb(170, 170, 170)"},
                        focus_style={"outline-style": "solid", "outline-width": "2px"}),
        ])
        perception = PerceptionEngine(channel)
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#faint")
        assert issues[0].evidence["current"] == pytest.approx(2.32, abs=0.01)

        result = await engine.remediate_element(element, context, issues)

        assert result.success
        evidence = issues[0].attempts[0].verification.evidence
        assert evidence.contrast_before == pytest.approx(2.32, abs=0.01)
        assert evidence.contrast_after >= 4.5
        assert evidence.contrast_improved
        assert (await perception.contrast_of("#faint")).ratio >= 4.5

    @pytest.mark.asyncio
    async def test_keyboard_and_label_fixes(self, channel, perception):
        engine = engine_for(channel, perception)
        menu = await detect(channel, perception, "#menu")
        email = await detect(channel, perception, "#email")

        menu_result = await engine.remediate_element(*menu)
        email_result = await engine.remediate_element(*email)

        assert menu_result.success and email_result.success
        assert channel.elements["#menu"].can_focus
        assert channel.elements["#email"].attributes["aria-label"] == "Email"

    @pytest.mark.asyncio
    async def test_issue_without_a_fix_is_skipped(self, channel_factory):
        channel = await channel_factory([
            FakeElement("#icon", focus_style={"outline-style": "solid", "outline-width": "2px"}),
        ])
        perception = PerceptionEngine(channel)
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#icon")
        assert [i.type for i in issues] == [IssueType.MISSING_LABEL]

        result = await engine.remediate_element(element, context, issues)

        assert not result.success
        assert result.error == "No applicable fixes"
        assert issues[0].status == IssueStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_same_fix_twice_keeps_the_first(self, channel, perception):
        engine = engine_for(channel, perception)
        first = await detect(channel, perception, "#save")
        second = await detect(channel, perception, "#save")

        first_result = await engine.remediate_element(*first)
        second_result = await engine.remediate_element(*second)

        assert first_result.success and second_result.success
        applied = first_result.applied_fixes[0]
        again = second[2][0].attempts
        assert len(again) == 1
        assert again[0].reused_fix_id == applied.id
        assert again[0].verification is None
        assert engine.injector.active_fix_id(FixType.FOCUS_VISIBLE, "#save") == applied.id
        assert len(channel.sheets) == 1
        assert channel.style_of("#save", focused=True)["outline-style"] == "solid"

    @pytest.mark.asyncio
    async def test_screenshots_as_evidence(self, channel, perception):
        engine = engine_for(channel, perception, capture_screenshots=True)
        element, context, issues = await detect(channel, perception, "#save")

        await engine.remediate_element(element, context, issues)

        evidence = issues[0].attempts[0].verification.evidence
        assert evidence.screenshot_before and evidence.screenshot_after
        assert evidence.screenshot_before != evidence.screenshot_after

    @pytest.mark.asyncio
    async def test_cancelled_engine_starts_nothing(self, channel, perception):
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#save")
        engine.cancel()

        result = await engine.remediate_element(element, context, issues)

        assert result.status == TaskStatus.FAILED
        assert result.error == "cancelled"
        assert channel.sheets == {}


class TestVerificationFailure:
    @pytest.mark.asyncio
    async def test_failed_verification_rolls_back(self, channel, perception, monkeypatch):
        monkeypatch.setattr(FixVerifier, "verify", failing_verify)
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#save")

        result = await engine.remediate_element(element, context, issues)

        assert not result.success
        assert result.applied_fixes == []
        assert [fix.fix_type for fix in result.failed_fixes] == [FixType.FOCUS_VISIBLE]
        assert issues[0].status == IssueStatus.FAILED
        assert issues[0].attempts[0].rolled_back
        assert channel.sheets == {}

    @pytest.mark.asyncio
    async def test_without_rollback_the_css_stays(self, channel, perception, monkeypatch):
        monkeypatch.setattr(FixVerifier, "verify", failing_verify)
        engine = engine_for(channel, perception, rollback_on_failure=False)
        element, context, issues = await detect(channel, perception, "#save")

        result = await engine.remediate_element(element, context, issues)

        assert not result.success
        assert result.applied_fixes == []
        assert len(channel.sheets) == 1
        assert not issues[0].attempts[0].rolled_back

    @pytest.mark.asyncio
    async def test_verification_disabled(self, channel, perception, monkeypatch):
        monkeypatch.setattr(FixVerifier, "verify", failing_verify)
        engine = engine_for(channel, perception, verification_enabled=False)
        element, context, issues = await detect(channel, perception, "#save")

        result = await engine.remediate_element(element, context, issues)

        assert result.success
        assert issues[0].attempts[0].verification is None

    @pytest.mark.asyncio
    async def test_rollback_that_fails_leaves_the_task_failed(self, channel, perception, monkeypatch):
        monkeypatch.setattr(FixVerifier, "verify", failing_verify)
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#save")

        def refuse_removal(name):
            if name == "remove_style_sheet":
                raise RuntimeError("Could not remove sheet")

        channel.on_operation = refuse_removal
        result = await engine.remediate_element(element, context, issues)

        task = engine.get_task(result.task_id)
        attempt = issues[0].attempts[0]
        assert result.status == TaskStatus.FAILED
        assert task.rollback_error.remaining_fix_ids == [attempt.solution.id]
        assert "Could not roll back" in result.error
        assert not attempt.rolled_back
        assert attempt.error.startswith("Rollback failed")
        assert len(issues[0].attempts) == 1
        assert len(channel.sheets) == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_injection_failure_is_retried(self, channel, perception):
        calls = []

        def flaky(name):
            if name == "add_style_sheet":
                calls.append(name)
                if len(calls) == 2:
                    channel.reject_strategies.discard("stylesheet")

        channel.reject_strategies = {"stylesheet"}
        channel.on_operation = flaky
        engine = engine_for(channel, perception, strategies=("stylesheet",), retry_attempts=1)
        element, context, issues = await detect(channel, perception, "#save")

        result = await engine.remediate_element(element, context, issues)

        assert result.success
        attempts = issues[0].attempts
        assert len(attempts) == 2
        assert "CDP_UNAVAILABLE" in attempts[0].error
        assert attempts[1].applied
        # Retries reuse the generated fix
        assert attempts[0].solution is attempts[1].solution

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self, channel, perception):
        channel.reject_strategies = {"inline"}
        engine = engine_for(channel, perception, strategies=("inline",), retry_attempts=3)
        element, context, issues = await detect(channel, perception, "#save")

        result = await engine.remediate_element(element, context, issues)

        assert not result.success
        assert len(issues[0].attempts) == 1


class TestBatches:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, channel_factory):
        channel = await channel_factory([FakeElement(f"#b{i}", text=f"B{i}") for i in range(20)])
        channel.op_delay = 0.001
        perception = PerceptionEngine(channel)
        engine = engine_for(channel, perception, max_concurrent_tasks=5)
        items = [await detect(channel, perception, f"#b{i}") for i in range(20)]

        results = await engine.remediate_multiple_elements(items)

        assert [r.selector for r in results] == [f"#b{i}" for i in range(20)]
        assert all(r.success for r in results)
        assert 1 < engine.peak_in_progress <= 5
        assert engine.get_statistics()["by_status"]["completed"] == 20

    @pytest.mark.asyncio
    async def test_one_failure_does_not_sink_the_batch(self, channel, perception):
        engine = engine_for(channel, perception)
        items = [await detect(channel, perception, s) for s in ("#save", "#cancel")]
        del channel.elements["#cancel"]

        results = await engine.remediate_multiple_elements(items)

        assert [r.success for r in results] == [True, False]

    @pytest.mark.asyncio
    async def test_critical_tasks_start_first(self, channel, perception):
        channel.op_delay = 0.001
        engine = engine_for(channel, perception, max_concurrent_tasks=1)
        items = [await detect(channel, perception, s) for s in ("#email", "#save", "#menu")]

        await engine.remediate_multiple_elements(items)

        started = sorted(engine.tasks, key=lambda task: task.started_at)
        assert [task.selector for task in started] == ["#menu", "#save", "#email"]


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback(self, channel, perception):
        engine = engine_for(channel, perception)
        result = await engine.remediate_element(*await detect(channel, perception, "#save"))
        task = engine.get_task(result.task_id)
        assert task.rollback_available

        assert await engine.rollback_remediation(result.task_id)

        assert channel.sheets == {}
        assert task.status == TaskStatus.ROLLED_BACK
        assert task.applied_fixes == []
        assert not await engine.rollback_remediation(result.task_id)

    @pytest.mark.asyncio
    async def test_unknown_or_failed_task(self, channel, perception, monkeypatch):
        engine = engine_for(channel, perception)
        assert not await engine.rollback_remediation("remediation-0-000000")

        monkeypatch.setattr(FixVerifier, "verify", failing_verify)
        result = await engine.remediate_element(*await detect(channel, perception, "#cancel"))
        assert not await engine.rollback_remediation(result.task_id)

    @pytest.mark.asyncio
    async def test_partial_rollback(self, channel_factory):
        channel = await channel_factory([FakeElement("#faint", text="Faint", style={"color": "rgb(170, 170, 170)"})])
        perception = PerceptionEngine(channel)
        engine = engine_for(channel, perception)
        element, context, issues = await detect(channel, perception, "#faint")
        assert [i.type for i in issues] == [IssueType.MISSING_FOCUS, IssueType.LOW_CONTRAST]

        result = await engine.remediate_element(element, context, issues)
        focus_fix, contrast_fix = result.applied_fixes
        channel.fail_remove = {engine.injector.get_record(focus_fix.id).handle}

        assert not await engine.rollback_remediation(result.task_id)

        task = engine.get_task(result.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.applied_fixes == [focus_fix]
        assert task.rollback_error.remaining_fix_ids == [focus_fix.id]
        assert len(channel.sheets) == 1
