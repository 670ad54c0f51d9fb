"""PRAR loop: perceive, plan, act, reflect until the task queue runs dry."""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from a11y_bot.browser.channel import ControlChannel
from a11y_bot.browser.keyboard import FocusNavigationResult, FocusTrap
from a11y_bot.browser.pointer import InteractionResult
from a11y_bot.config import ERROR_THRESHOLD, MAX_CYCLE_TIME_SECONDS, MAX_CYCLES, STABILITY_TIMEOUT_SECONDS
from a11y_bot.errors import SessionError
from a11y_bot.perception.engine import ElementDescriptor, FocusProbe, PerceivedState, PerceptionEngine
from a11y_bot.planning.planner import Planner
from a11y_bot.planning.task import ActionPlan, Observation, SubTask, SubTaskKind, TaskDescriptor
from a11y_bot.remediation.detection import IssueDetector
from a11y_bot.remediation.engine import AutoRemediationEngine
from a11y_bot.remediation.models import AccessibilityIssue, ElementContext, IssueStatus, RemediationResult, Severity
from .executor import ActionExecutor, ActionResult
from .state import AgentPhase, AgentState, QueuedTask


logger = logging.getLogger(__name__)


@dataclass
class LoopConfig:
    max_cycles: int = MAX_CYCLES
    # Wall-clock budget of the whole loop, in seconds
    max_cycle_time: float = MAX_CYCLE_TIME_SECONDS
    # Consecutive failed cycles before the loop gives up
    error_threshold: int = ERROR_THRESHOLD
    stability_timeout: float = STABILITY_TIMEOUT_SECONDS
    remediate: bool = True
    release_session: bool = True


# ===== Act outcomes =====

@dataclass(frozen=True)
class Succeeded:
    result: ActionResult
    kind = "succeeded"


@dataclass(frozen=True)
class RecoveredByFallback:
    result: ActionResult
    fallback_index: int
    primary_error: Optional[str]
    kind = "recovered"


@dataclass(frozen=True)
class Failed:
    errors: tuple[str, ...]
    kind = "failed"


ActOutcome = Union[Succeeded, RecoveredByFallback, Failed]


# ===== Results =====

@dataclass
class CycleMetrics:
    cycle: int
    duration: float = 0.0
    phase_reached: str = AgentPhase.IDLE.value
    sub_task_id: Optional[str] = None
    action_type: Optional[str] = None
    outcome: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "duration": round(self.duration, 3),
            "phase_reached": self.phase_reached,
            "sub_task_id": self.sub_task_id,
            "action_type": self.action_type,
            "outcome": self.outcome,
        }


@dataclass
class ElementFinding:
    """Issues detected on one element, and what remediation did about them."""

    element: ElementDescriptor
    context: ElementContext
    issues: list[AccessibilityIssue]
    remediation: Optional[RemediationResult] = None

    @property
    def selector(self) -> str:
        return self.element.selector

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "element": self.element.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "remediation": self.remediation.to_dict() if self.remediation else None,
        }


@dataclass
class LoopResult:
    task_id: str
    success: bool = False
    completed_tasks: int = 0
    failed_tasks: int = 0
    cycles: int = 0
    terminated_reason: Optional[str] = None
    duration: float = 0.0
    metrics: list[CycleMetrics] = field(default_factory=list)
    findings: list[ElementFinding] = field(default_factory=list)
    focus_traps: list[FocusTrap] = field(default_factory=list)
    interactions: list[InteractionResult] = field(default_factory=list)
    remediation_results: list[RemediationResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    @property
    def unfixed_critical(self) -> list[AccessibilityIssue]:
        """Critical issues no remediation fixed."""
        return [
            issue
            for finding in self.findings
            for issue in finding.issues
            if issue.severity == Severity.CRITICAL and issue.status != IssueStatus.FIXED
        ]

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "cycles": self.cycles,
            "terminated_reason": self.terminated_reason,
            "duration": round(self.duration, 3),
            "metrics": [m.to_dict() for m in self.metrics],
            "findings": [f.to_dict() for f in self.findings],
            "focus_traps": [t.to_dict() for t in self.focus_traps],
            "interactions": [i.to_dict() for i in self.interactions if i.issues],
            "remediation_results": [r.to_dict() for r in self.remediation_results],
            "error": self.error,
        }


class _Cancelled(Exception):
    pass


class PRARCoordinator:
    """
    Drives one task through Perceive -> Plan -> Act -> Reflect cycles.

    A composite task is decomposed into sub-tasks in its first planning
    phase; every later cycle takes one sub-task off the queue. Cancellation
    is checked at the top of each phase, so an action that has started
    always runs to completion.
    """

    def __init__(
        self,
        channel: ControlChannel,
        perception: PerceptionEngine,
        planner: Planner,
        executor: ActionExecutor,
        remediation: Optional[AutoRemediationEngine] = None,
        detector: Optional[IssueDetector] = None,
        config: Optional[LoopConfig] = None,
    ):
        self._channel = channel
        self._perception = perception
        self._planner = planner
        self._executor = executor
        self._remediation = remediation
        self._detector = detector or IssueDetector(channel, perception)
        self.config = config or LoopConfig()

        self._state = AgentState()
        self._history: list[tuple[AgentPhase, AgentPhase]] = []
        self._metrics: list[CycleMetrics] = []
        self._cancelled = False
        self._page_changed = False
        self._task: Optional[TaskDescriptor] = None
        self._deferred: list[ElementFinding] = []
        # Dequeued but not yet counted as completed or failed
        self._in_flight: Optional[QueuedTask] = None

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def history(self) -> list[tuple[AgentPhase, AgentPhase]]:
        return list(self._history)

    @property
    def metrics(self) -> list[CycleMetrics]:
        return list(self._metrics)

    def cancel(self) -> None:
        """Ask the loop to stop after the phase in progress."""
        self._cancelled = True
        logger.info("Cancellation requested")

    def _to(self, phase: AgentPhase, **changes) -> None:
        previous = self._state.phase
        self._state = self._state.transition(phase, **changes)
        self._history.append((previous, phase))
        logger.debug(f"{previous.value} -> {phase.value}")

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise _Cancelled()

    def _on_page_change(self, _event) -> None:
        self._page_changed = True

    # ===== Loop =====

    async def start_loop(self, task: TaskDescriptor) -> LoopResult:
        """
        Run the task to completion, cancellation or a limit.

        Never raises for action or session failures: those end up in the
        returned LoopResult.
        """
        self._cancelled = False
        self._task = task
        self._deferred = []
        self._metrics = []
        self._page_changed = False
        result = LoopResult(task_id=task.id)

        capabilities = self._channel.capabilities if self._channel.is_attached else None
        self._state = AgentState(capabilities=capabilities).enqueue(task, task.priority)

        budget = self.config.max_cycle_time
        if task.constraints.time_budget_seconds:
            budget = min(budget, task.constraints.time_budget_seconds)

        unsubscribers = [
            self._perception.add_route_change_listener(self._on_page_change),
            self._perception.add_dom_change_listener(self._on_page_change),
        ]
        started = time.monotonic()
        consecutive_errors = 0
        logger.info(f"Starting {task.type} task {task.id} (budget {budget:g}s, max {self.config.max_cycles} cycles)")

        try:
            while result.terminated_reason is None:
                reason = self._limit_reached(started, budget)
                if reason:
                    result.terminated_reason = reason
                    break

                metrics = CycleMetrics(cycle=self._state.cycle + 1)
                self._in_flight = None
                cycle_started = time.monotonic()
                try:
                    await self._run_cycle(metrics, result)
                    consecutive_errors = 0
                except _Cancelled:
                    result.terminated_reason = "cancelled"
                except SessionError as e:
                    logger.error(f"Session lost in cycle {metrics.cycle}: {e}")
                    result.errors.append(str(e))
                    self._drop_in_flight(result)
                    result.terminated_reason = "session-lost"
                except Exception as e:
                    consecutive_errors += 1
                    logger.error(f"Cycle {metrics.cycle} failed in {self._state.phase.value}: {e}")
                    result.errors.append(f"cycle {metrics.cycle}: {e}")
                    self._drop_in_flight(result)
                    self._to(AgentPhase.ERROR, last_error=str(e))
                    self._to(AgentPhase.IDLE, snapshot_fresh=False)
                    if consecutive_errors >= self.config.error_threshold:
                        result.terminated_reason = "error-threshold"
                finally:
                    metrics.duration = time.monotonic() - cycle_started
                    self._metrics.append(metrics)

            if result.terminated_reason not in ("cancelled", "session-lost"):
                await self._remediate_deferred(result)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            if self._state.phase != AgentPhase.TERMINATED:
                self._to(AgentPhase.TERMINATED)
            if self.config.release_session:
                await self._release()

        result.cycles = self._state.cycle
        result.metrics = list(self._metrics)
        result.duration = time.monotonic() - started
        result.success = (
            result.terminated_reason == "queue-empty" and result.failed_tasks == 0 and not result.errors
        )
        logger.info(
            f"Task {task.id} terminated ({result.terminated_reason}) after {result.cycles} cycles: "
            f"{result.completed_tasks} completed, {result.failed_tasks} failed, {len(result.findings)} elements with issues"
        )
        return result

    def _drop_in_flight(self, result: LoopResult) -> None:
        if self._in_flight is not None:
            result.failed_tasks += 1
            self._in_flight = None

    def _limit_reached(self, started: float, budget: float) -> Optional[str]:
        if self._cancelled:
            return "cancelled"
        if not self._state.queue:
            return "queue-empty"
        if self._state.cycle >= self.config.max_cycles:
            return "max-cycles"
        if time.monotonic() - started >= budget:
            return "max-cycle-time"
        return None

    async def _release(self) -> None:
        if self._channel.session is None:
            return
        try:
            await self._channel.disconnect()
        except Exception as e:
            logger.warning(f"Error releasing session: {e}")
        self._state = AgentState(phase=AgentPhase.TERMINATED, cycle=self._state.cycle, last_error=self._state.last_error)

    async def _run_cycle(self, metrics: CycleMetrics, result: LoopResult) -> None:
        cycle = self._state.cycle + 1

        # Perceive
        self._check_cancelled()
        if self._state.snapshot_fresh and self._state.snapshot is not None and not self._page_changed:
            logger.debug(f"Cycle {cycle}: reusing snapshot")
            snapshot = self._state.snapshot
        else:
            self._to(AgentPhase.PERCEIVING, cycle=cycle)
            metrics.phase_reached = AgentPhase.PERCEIVING.value
            await self._perception.wait_for_stability(self.config.stability_timeout)
            self._page_changed = False
            snapshot = await self._perception.snapshot()

        # Plan
        self._check_cancelled()
        queued, dequeued = self._state.dequeue()
        self._in_flight = queued
        self._to(AgentPhase.PLANNING, cycle=cycle, queue=dequeued.queue, snapshot=snapshot, snapshot_fresh=False)
        metrics.phase_reached = AgentPhase.PLANNING.value
        metrics.sub_task_id = queued.id

        if queued.composite:
            sub_tasks = self._planner.decompose(queued.item, snapshot)
            self._state = self._state.enqueue_all(sub_tasks, queued.priority)
            self._in_flight = None
            self._to(AgentPhase.IDLE, snapshot_fresh=True)
            return

        sub_task: SubTask = queued.item
        plan = await self._planner.plan(sub_task, snapshot)

        # Act
        self._check_cancelled()
        self._to(AgentPhase.ACTING)
        metrics.phase_reached = AgentPhase.ACTING.value
        metrics.action_type = plan.primary.type.value
        previous_active = await self._channel.active_element()
        outcome = await self._act(plan)
        metrics.outcome = outcome.kind

        # Reflect
        self._check_cancelled()
        self._to(AgentPhase.REFLECTING)
        metrics.phase_reached = AgentPhase.REFLECTING.value
        fresh = await self._reflect(sub_task, plan, outcome, snapshot, previous_active, result)
        self._in_flight = None
        self._to(AgentPhase.IDLE, snapshot_fresh=fresh)

    async def _act(self, plan: ActionPlan) -> ActOutcome:
        primary = await self._executor.execute(plan)
        if primary.success:
            return Succeeded(primary)

        errors = [f"{plan.primary.type.value}: {primary.error}"]
        for index, fallback in enumerate(plan.fallbacks):
            logger.info(f"{plan.primary.type.value} failed ({primary.error}), trying fallback {index + 1}: {fallback.type.value}")
            attempt = await self._executor.execute(plan.with_primary(fallback))
            if attempt.success:
                return RecoveredByFallback(attempt, index, primary.error)
            errors.append(f"{fallback.type.value}: {attempt.error}")
        logger.warning(f"All actions failed for {plan.sub_task_id}: {'; '.join(errors)}")
        return Failed(tuple(errors))

    # ===== Reflect =====

    async def _reflect(
        self,
        sub_task: SubTask,
        plan: ActionPlan,
        outcome: ActOutcome,
        snapshot: PerceivedState,
        previous_active: Optional[str],
        result: LoopResult,
    ) -> bool:
        """Judge the outcome. Returns True when the snapshot is still current."""
        if isinstance(outcome, Failed):
            result.failed_tasks += 1
            result.errors.append(f"{sub_task.description}: {outcome.errors[-1]}")
            return False

        action = outcome.result
        traps: list[FocusTrap] = []
        if isinstance(action.output, FocusNavigationResult):
            traps = action.output.focus_traps
            result.focus_traps.extend(traps)
        elif isinstance(action.output, InteractionResult):
            result.interactions.append(action.output)

        descriptor = await self._perception.snapshot_element(sub_task.target) if sub_task.target else None
        probe = action.output if isinstance(action.output, FocusProbe) else None
        observation = Observation(
            active_element=await self._channel.active_element(),
            previous_active=previous_active,
            target_present=descriptor is not None,
            url_before=snapshot.url,
            url_after=await self._channel.current_url(),
            indicator_present=probe.indicator_present if probe else None,
            focus_traps=len(traps),
        )
        met = plan.expected.is_met(observation)

        remediated = False
        if sub_task.kind == SubTaskKind.VERIFICATION:
            if descriptor is None:
                result.failed_tasks += 1
                result.errors.append(f"{sub_task.description}: {sub_task.target} is gone")
                return False
            remediated = await self._inspect(sub_task, descriptor, probe, result)
        elif sub_task.kind == SubTaskKind.NAVIGATION_TEST and traps:
            result.failed_tasks += 1
            result.errors.append(
                f"{sub_task.description}: {len(traps)} focus trap(s), first at step {traps[0].detected_at_step}"
            )
            logger.info(f"{sub_task.description}: found {len(traps)} focus trap(s)")
            return False
        elif sub_task.kind == SubTaskKind.INTERACTION_TEST and not met:
            result.failed_tasks += 1
            result.errors.append(f"{sub_task.description}: expected {plan.expected.kind.value}")
            logger.info(f"{sub_task.description}: expected {plan.expected.kind.value} not observed")
            return False

        if not met:
            logger.info(f"{sub_task.description}: {plan.expected.kind.value} not met")
        result.completed_tasks += 1
        return not (action.needs_reperception or remediated or observation.url_after != snapshot.url)

    async def _inspect(
        self,
        sub_task: SubTask,
        element: ElementDescriptor,
        probe: Optional[FocusProbe],
        result: LoopResult,
    ) -> bool:
        """Detect issues on a verified element. Returns True if fixes were applied."""
        context, issues = await self._detector.detect(element, probe, sub_task.wcag_level)
        if not issues:
            return False

        finding = ElementFinding(element, context, issues)
        result.findings.append(finding)
        if self._remediation is None or not self.config.remediate:
            return False
        if self._task is not None and self._task.type == "full-audit":
            self._deferred.append(finding)
            return False

        finding.remediation = await self._remediation.remediate_element(element, context, issues)
        result.remediation_results.append(finding.remediation)
        return bool(finding.remediation.applied_fixes)

    async def _remediate_deferred(self, result: LoopResult) -> None:
        if not self._deferred or self._remediation is None:
            return
        logger.info(f"Remediating {len(self._deferred)} elements found by the audit")
        findings = self._deferred
        self._deferred = []
        remediations = await self._remediation.remediate_multiple_elements(
            [(finding.element, finding.context, finding.issues) for finding in findings]
        )
        for finding, remediation in zip(findings, remediations):
            finding.remediation = remediation
        result.remediation_results.extend(remediations)
