"""Auto-remediation: generate, inject, verify and, when needed, roll back fixes."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from a11y_bot.browser.channel import ControlChannel
from a11y_bot.config import (
    CAPTURE_SCREENSHOTS,
    INJECTION_STRATEGIES,
    MAX_CONCURRENT_TASKS,
    ROLLBACK_ON_FAILURE,
    TARGET_CONTRAST_RATIO,
    VERIFICATION_ENABLED,
    VERIFICATION_TIMEOUT_SECONDS,
)
from a11y_bot.errors import ActionError, InjectionError, RollbackError, SessionError
from a11y_bot.perception.engine import ElementDescriptor, PerceptionEngine
from a11y_bot.planning.planner import order_issues
from .fixes import CSSFixGenerator
from .injection import StyleInjector
from .models import (
    AccessibilityIssue,
    CSSFixSolution,
    ElementContext,
    IssueStatus,
    RemediationAttempt,
    RemediationResult,
    RemediationTask,
    TaskStatus,
    VerificationResult,
    priority_for,
)
from .verification import FixVerifier


logger = logging.getLogger(__name__)

RemediationItem = tuple[ElementDescriptor, ElementContext, list[AccessibilityIssue]]


@dataclass
class RemediationConfig:
    max_concurrent_tasks: int = MAX_CONCURRENT_TASKS
    verification_enabled: bool = VERIFICATION_ENABLED
    rollback_on_failure: bool = ROLLBACK_ON_FAILURE
    # Extra attempts after a retryable injection failure
    retry_attempts: int = 1
    verification_timeout: float = VERIFICATION_TIMEOUT_SECONDS
    capture_screenshots: bool = CAPTURE_SCREENSHOTS
    strategies: tuple[str, ...] = INJECTION_STRATEGIES
    target_contrast_ratio: float = TARGET_CONTRAST_RATIO

    def __post_init__(self):
        self.max_concurrent_tasks = max(1, min(20, self.max_concurrent_tasks))
        self.retry_attempts = max(0, self.retry_attempts)


class AutoRemediationEngine:
    """
    Runs one RemediationTask per element.

    A task works through its issues in precedence order. Each fix is
    injected, verified (when enabled) and removed again if verification
    fails and rollback-on-failure is set. Batches run on a bounded pool of
    concurrent tasks; a failure in one task never reaches the others.
    """

    def __init__(
        self,
        channel: ControlChannel,
        perception: PerceptionEngine,
        config: Optional[RemediationConfig] = None,
    ):
        self.config = config or RemediationConfig()
        self._generator = CSSFixGenerator(self.config.target_contrast_ratio)
        self._injector = StyleInjector(channel, self.config.strategies)
        self._verifier = FixVerifier(channel, perception, self.config.capture_screenshots)
        self._tasks: dict[str, RemediationTask] = {}
        self._cancelled = False
        self._in_progress = 0
        self.peak_in_progress = 0

    @property
    def injector(self) -> StyleInjector:
        return self._injector

    @property
    def tasks(self) -> list[RemediationTask]:
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[RemediationTask]:
        return self._tasks.get(task_id)

    def cancel(self) -> None:
        """Stop starting new tasks. Tasks already running finish their current fix."""
        self._cancelled = True
        logger.info("Remediation cancelled; pending tasks will not start")

    # ===== Single element =====

    async def remediate_element(
        self,
        element: ElementDescriptor,
        context: ElementContext,
        issues: list[AccessibilityIssue],
    ) -> RemediationResult:
        """
        Fix every issue on one element.

        Raises:
            SessionError: The session went away; the task is marked failed first
        """
        task = self._create_task(context, issues)
        return await self._run_task(task)

    def _create_task(self, context: ElementContext, issues: list[AccessibilityIssue]) -> RemediationTask:
        task = RemediationTask(context=context, issues=order_issues(list(issues)), priority=priority_for(issues))
        self._tasks[task.id] = task
        logger.debug(f"Created {task.id} for {context.selector} ({task.priority.value}, {len(issues)} issues)")
        return task

    def _fail(self, task: RemediationTask, reason: str) -> None:
        task.error = reason
        if task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            task.transition(TaskStatus.FAILED)

    async def _run_task(self, task: RemediationTask) -> RemediationResult:
        if self._cancelled:
            self._fail(task, "cancelled")
            return RemediationResult.from_task(task)

        task.transition(TaskStatus.IN_PROGRESS)
        self._in_progress += 1
        self.peak_in_progress = max(self.peak_in_progress, self._in_progress)
        logger.info(f"Remediating {task.selector} ({task.id})")
        try:
            for issue in task.issues:
                await self._remediate_issue(task, issue)

            unresolved = [issue for issue in task.issues if issue.status == IssueStatus.FAILED]
            if task.rollback_error is not None:
                self._fail(task, str(task.rollback_error))
            elif task.applied_fixes and not unresolved:
                task.transition(TaskStatus.COMPLETED)
            else:
                self._fail(task, f"{len(unresolved)} issue(s) not fixed" if unresolved else "No applicable fixes")
        except Exception as e:
            self._fail(task, str(e))
            raise
        finally:
            self._in_progress -= 1

        logger.info(
            f"{task.id} {task.status.value}: {len(task.applied_fixes)} applied, "
            f"{len(task.failed_fixes)} failed in {task.duration_ms}ms"
        )
        return RemediationResult.from_task(task)

    async def _remediate_issue(self, task: RemediationTask, issue: AccessibilityIssue) -> None:
        fixes = self._generator.generate(issue, task.context)
        if not fixes:
            issue.status = IssueStatus.SKIPPED
            logger.info(f"No fix available for {issue.type.value} on {task.selector}")
            return
        for fix in fixes:
            if await self._attempt(task, issue, fix):
                issue.status = IssueStatus.FIXED
                return
            if task.rollback_error is not None:
                break
        issue.status = IssueStatus.FAILED

    async def _attempt(self, task: RemediationTask, issue: AccessibilityIssue, fix: CSSFixSolution) -> bool:
        """Apply one fix, retrying retryable injection failures. True once it sticks."""
        identical = self._injector.find_identical(fix)
        if identical is not None:
            # A baseline taken now would already include it
            logger.info(f"{fix.id} on {fix.selector} is already applied as {identical.fix_id}")
            issue.attempts.append(RemediationAttempt(solution=fix, applied=True, reused_fix_id=identical.fix_id))
            return True

        for attempt_number in range(1 + self.config.retry_attempts):
            attempt = RemediationAttempt(solution=fix, applied=False)
            issue.attempts.append(attempt)
            try:
                baseline = await self._verifier.capture_baseline(fix) if self.config.verification_enabled else None
                await self._injector.inject(fix)
            except InjectionError as e:
                attempt.error = str(e)
                if e.retryable and attempt_number < self.config.retry_attempts:
                    logger.warning(f"Injection of {fix.id} failed ({e.code}), retrying")
                    continue
                logger.warning(f"Injection of {fix.id} failed: {e}")
                return False
            except ActionError as e:
                attempt.error = str(e)
                return False
            attempt.applied = True

            if baseline is None:
                return True

            try:
                verification = await asyncio.wait_for(
                    self._verifier.verify(fix, baseline),
                    timeout=self.config.verification_timeout,
                )
            except asyncio.TimeoutError:
                verification = VerificationResult(passed=False, confidence=0.0, reason="verification timed out")
            except ActionError as e:
                verification = VerificationResult(passed=False, confidence=0.0, reason=str(e))
            attempt.verification = verification

            if verification.passed:
                logger.info(f"Verified {fix.id} on {fix.selector}")
                return True

            if self.config.rollback_on_failure:
                try:
                    await self._injector.remove(fix.id)
                except SessionError:
                    raise
                except Exception as e:
                    attempt.error = f"Rollback failed: {e}"
                    task.rollback_error = RollbackError(f"Could not roll back {fix.id}: {e}", [fix.id])
                    logger.error(f"{fix.id} failed verification and is still applied to {fix.selector}: {e}")
                    return False
                attempt.rolled_back = True
                logger.info(f"Rolled back {fix.id} after failed verification")
            return False
        return False

    # ===== Batches =====

    async def remediate_multiple_elements(self, items: Sequence[RemediationItem]) -> list[RemediationResult]:
        """
        Remediate many elements with at most ``max_concurrent_tasks`` running at once.

        Higher-priority tasks start first. Results come back in input order,
        and an exception in one task only fails that task.
        """
        semaphore = asyncio.Semaphore(self.config.max_concurrent_tasks)
        tasks = [self._create_task(context, issues) for _, context, issues in items]

        async def run(task: RemediationTask) -> RemediationResult:
            async with semaphore:
                try:
                    return await self._run_task(task)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"{task.id} on {task.selector} failed: {e}")
                    self._fail(task, str(e))
                    return RemediationResult.from_task(task)

        order = sorted(range(len(tasks)), key=lambda i: tasks[i].priority.rank)
        results = await asyncio.gather(*(run(tasks[i]) for i in order))

        by_index = dict(zip(order, results))
        ordered = [by_index[i] for i in range(len(tasks))]
        succeeded = sum(1 for result in ordered if result.success)
        logger.info(f"Batch remediation: {succeeded}/{len(ordered)} tasks completed")
        return ordered

    # ===== Rollback =====

    async def rollback_remediation(self, task_id: str) -> bool:
        """
        Remove every fix a completed task applied, newest first.

        Returns False when the task is unknown, not completed, or a removal
        fails. On a partial rollback the task keeps status completed, the
        fixes still on the page stay recorded, and ``task.rollback_error``
        lists them.
        """
        task = self._tasks.get(task_id)
        if task is None or not task.rollback_available:
            return False

        applied = task.applied_fixes
        remaining = [fix.id for fix in applied]
        for fix in reversed(applied):
            try:
                await self._injector.remove(fix.id)
            except SessionError:
                raise
            except Exception as e:
                task.rollback_error = RollbackError(f"Could not remove {fix.id}: {e}", list(remaining))
                logger.error(f"Partial rollback of {task_id}: {len(remaining)} fix(es) still applied")
                return False
            task.rolled_back_fix_ids.append(fix.id)
            remaining.remove(fix.id)

        task.rollback_error = None
        task.transition(TaskStatus.ROLLED_BACK)
        logger.info(f"Rolled back {task_id} ({len(applied)} fixes)")
        return True

    def get_statistics(self) -> dict:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        durations = [task.duration_ms for task in self._tasks.values() if task.duration_ms is not None]
        return {
            "total_tasks": len(self._tasks),
            "by_status": counts,
            "fixes_applied": sum(len(task.applied_fixes) for task in self._tasks.values()),
            "average_duration_ms": int(sum(durations) / len(durations)) if durations else 0,
            "peak_in_progress": self.peak_in_progress,
        }
