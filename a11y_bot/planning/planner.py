"""Planning: decompose tasks into sub-tasks and turn each sub-task into an ActionPlan."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from a11y_bot.config import ACTION_TIMEOUT_SECONDS, FOCUS_WALK_MAX_STEPS
from a11y_bot.perception.engine import PerceivedState
from a11y_bot.planning.task import (
    Action,
    ActionPlan,
    ActionType,
    ExpectedOutcome,
    OutcomeKind,
    SubTask,
    SubTaskKind,
    TaskDescriptor,
    WorkflowStep,
)


logger = logging.getLogger(__name__)

# Which issue to fix first when several hit the same element
ISSUE_PRECEDENCE = ("keyboard-inaccessible", "missing-focus", "low-contrast", "missing-label")

MAX_FALLBACKS = 2

# (normal text, large text)
_CONTRAST_TARGETS = {
    "A": (4.5, 3.0),
    "AA": (4.5, 3.0),
    "AAA": (7.0, 4.5),
}


def issue_rank(issue_type: str) -> int:
    try:
        return ISSUE_PRECEDENCE.index(issue_type)
    except ValueError:
        return len(ISSUE_PRECEDENCE)


def order_issues(issues: Iterable) -> list:
    """Sort issues (anything with a ``type`` whose value is an issue name) by precedence."""
    return sorted(issues, key=lambda issue: issue_rank(getattr(issue.type, "value", issue.type)))


def contrast_target(wcag_level: str, large_text: bool = False) -> float:
    normal, large = _CONTRAST_TARGETS.get(wcag_level, _CONTRAST_TARGETS["AA"])
    return large if large_text else normal


class Planner(ABC):
    """Turns tasks into sub-tasks and sub-tasks into action plans."""

    name = "base"

    @abstractmethod
    def decompose(self, task: TaskDescriptor, state: PerceivedState) -> list[SubTask]:
        pass

    @abstractmethod
    async def plan(self, sub_task: SubTask, state: PerceivedState) -> ActionPlan:
        pass


class RulePlanner(Planner):
    """
    Deterministic planner.

    Decomposition rules:
    - focus-trap-sweep: one tab-order walk.
    - fix-verification: for each target, focus it, then verify it.
    - full-audit: a tab-order walk, then focus + verify per perceived element,
      plus a verify for each interactive element focus can never reach.
    - workflow: the steps in order; every step that acts on an element is
      followed by a verify of that element.
    """

    name = "rules"

    def __init__(self, walk_max_steps: int = FOCUS_WALK_MAX_STEPS, action_timeout: float = ACTION_TIMEOUT_SECONDS):
        self.walk_max_steps = walk_max_steps
        self.action_timeout = action_timeout

    def decompose(self, task: TaskDescriptor, state: PerceivedState) -> list[SubTask]:
        if task.type == "focus-trap-sweep":
            sub_tasks = [self._walk(task)]
        elif task.type == "fix-verification":
            sub_tasks = self._focus_and_verify(task, self._targets(task, state))
        elif task.type == "full-audit":
            sub_tasks = [self._walk(task)]
            sub_tasks.extend(self._focus_and_verify(task, self._targets(task, state)))
            excluded = set(task.constraints.excluded_selectors)
            for element in state.unreachable:
                if element.selector in excluded:
                    continue
                sub_tasks.append(SubTask(
                    parent_id=task.id,
                    kind=SubTaskKind.VERIFICATION,
                    description=f"Verify unreachable {element.tag} {element.selector}",
                    target=element.selector,
                    wcag_level=task.wcag_level,
                ))
        else:
            sub_tasks = self._workflow(task)

        logger.info(f"Decomposed {task.type} task {task.id} into {len(sub_tasks)} sub-tasks")
        return sub_tasks

    def _targets(self, task: TaskDescriptor, state: PerceivedState) -> list[str]:
        excluded = set(task.constraints.excluded_selectors)
        if task.scope.selectors:
            candidates = list(task.scope.selectors)
        elif task.scope.derive:
            candidates = state.selectors
        else:
            candidates = []
        targets = [selector for selector in dict.fromkeys(candidates) if selector not in excluded]
        if len(targets) > task.constraints.max_elements:
            logger.info(f"Limiting {len(targets)} targets to max_elements={task.constraints.max_elements}")
            targets = targets[:task.constraints.max_elements]
        return targets

    def _walk(self, task: TaskDescriptor) -> SubTask:
        return SubTask(
            parent_id=task.id,
            kind=SubTaskKind.NAVIGATION_TEST,
            description="Walk the tab order and look for focus traps",
            wcag_level=task.wcag_level,
        )

    def _focus_and_verify(self, task: TaskDescriptor, targets: list[str]) -> list[SubTask]:
        sub_tasks = []
        for selector in targets:
            sub_tasks.append(SubTask(
                parent_id=task.id,
                kind=SubTaskKind.INTERACTION_TEST,
                description=f"Focus {selector}",
                target=selector,
                step=WorkflowStep(action="tab", target=selector),
                wcag_level=task.wcag_level,
            ))
            sub_tasks.append(SubTask(
                parent_id=task.id,
                kind=SubTaskKind.VERIFICATION,
                description=f"Verify focus visibility of {selector}",
                target=selector,
                wcag_level=task.wcag_level,
            ))
        return sub_tasks

    def _workflow(self, task: TaskDescriptor) -> list[SubTask]:
        excluded = set(task.constraints.excluded_selectors)
        sub_tasks = []
        for workflow in task.scope.workflows:
            for index, step in enumerate(workflow):
                if step.target and step.target in excluded:
                    continue
                if step.action == "verify":
                    sub_tasks.append(SubTask(
                        parent_id=task.id,
                        kind=SubTaskKind.VERIFICATION,
                        description=step.description or f"Verify {step.target}",
                        target=step.target,
                        wcag_level=task.wcag_level,
                    ))
                    continue

                sub_tasks.append(SubTask(
                    parent_id=task.id,
                    kind=SubTaskKind.INTERACTION_TEST,
                    description=step.description or f"{step.action} {step.target or step.value or ''}".strip(),
                    target=step.target,
                    step=step,
                    wcag_level=task.wcag_level,
                ))
                next_step = workflow[index + 1] if index + 1 < len(workflow) else None
                already_verified = (
                    next_step is not None and next_step.action == "verify" and next_step.target == step.target
                )
                if step.target and step.action not in ("navigate", "wait") and not already_verified:
                    sub_tasks.append(SubTask(
                        parent_id=task.id,
                        kind=SubTaskKind.VERIFICATION,
                        description=f"Verify {step.target} after {step.action}",
                        target=step.target,
                        wcag_level=task.wcag_level,
                    ))
        return sub_tasks

    async def plan(self, sub_task: SubTask, state: PerceivedState) -> ActionPlan:
        if sub_task.kind == SubTaskKind.NAVIGATION_TEST:
            return ActionPlan(
                sub_task_id=sub_task.id,
                primary=Action(
                    ActionType.KEYBOARD,
                    parameters={"walk": True, "max_steps": self.walk_max_steps},
                    description="Walk tab order",
                ),
                expected=ExpectedOutcome(OutcomeKind.NO_FOCUS_TRAP, description="No focus traps"),
                timeout=max(self.action_timeout, self.walk_max_steps * 0.5),
                planner=self.name,
            )

        if sub_task.kind == SubTaskKind.VERIFICATION:
            return ActionPlan(
                sub_task_id=sub_task.id,
                primary=Action(ActionType.VERIFY, sub_task.target, {"check": "focus-indicator"}),
                expected=ExpectedOutcome(OutcomeKind.FOCUS_INDICATOR_VISIBLE, sub_task.target),
                timeout=self.action_timeout,
                planner=self.name,
            )

        return self._plan_step(sub_task, state)

    def _plan_step(self, sub_task: SubTask, state: PerceivedState) -> ActionPlan:
        step = sub_task.step
        action = step.action if step else "tab"
        target = sub_task.target

        if action == "tab" and target:
            primary = Action(ActionType.FOCUS, target, description=f"Focus {target}")
            expected = ExpectedOutcome(OutcomeKind.FOCUS_ON_TARGET, target)
            fallbacks = (
                Action(ActionType.KEYBOARD, target, {"seek": True}, f"Tab to {target}"),
                Action(ActionType.CLICK, target, description=f"Click {target}"),
            )
        elif action == "tab":
            primary = Action(ActionType.KEYBOARD, parameters={"key": "Tab"}, description="Press Tab")
            expected = ExpectedOutcome(OutcomeKind.FOCUS_MOVED)
            fallbacks = ()
        elif action == "click":
            primary = Action(ActionType.CLICK, target, {"check_keyboard": True}, f"Click {target}")
            expected = ExpectedOutcome(OutcomeKind.ANY, target)
            fallbacks = (Action(ActionType.KEYBOARD, target, {"key": "Enter"}, f"Activate {target} with Enter"),)
        elif action == "type":
            primary = Action(ActionType.TYPE, target, {"text": step.value or ""}, f"Type into {target}")
            expected = ExpectedOutcome(OutcomeKind.FOCUS_ON_TARGET, target)
            fallbacks = (Action(ActionType.KEYBOARD, target, {"seek": True, "text": step.value or ""}, f"Tab to {target} and type"),)
        elif action == "navigate":
            url = step.value or step.target or ""
            primary = Action(ActionType.NAVIGATE, parameters={"url": url}, description=f"Navigate to {url}")
            kind = OutcomeKind.URL_CHANGED if url and url != state.url else OutcomeKind.ANY
            expected = ExpectedOutcome(kind)
            fallbacks = ()
        else:
            seconds = float(step.value) if step and step.value else 1.0
            primary = Action(ActionType.WAIT, parameters={"seconds": seconds}, description=f"Wait {seconds:g}s")
            expected = ExpectedOutcome(OutcomeKind.ANY)
            fallbacks = ()

        timeout = self.action_timeout
        if primary.type == ActionType.WAIT:
            timeout = max(timeout, primary.parameters["seconds"] + 1)

        return ActionPlan(
            sub_task_id=sub_task.id,
            primary=primary,
            expected=expected,
            fallbacks=fallbacks[:MAX_FALLBACKS],
            timeout=timeout,
            planner=self.name,
        )
