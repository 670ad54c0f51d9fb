"""Task descriptors coming in, and the plans the planners hand to the loop."""

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from a11y_bot.config import ACTION_TIMEOUT_SECONDS


# ===== Task input (external boundary, validated) =====

class _CamelModel(BaseModel):
    """Accepts both snake_case and the UI's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class WorkflowStep(_CamelModel):
    action: Literal["navigate", "click", "type", "tab", "wait", "verify"]
    target: Optional[str] = None
    value: Optional[str] = None
    description: str = ""

    @model_validator(mode="after")
    def _check_wait(self) -> "WorkflowStep":
        if self.action != "wait" or self.value is None:
            return self
        try:
            seconds = float(self.value)
        except ValueError:
            raise ValueError(f"wait value must be a number of seconds, got {self.value!r}") from None
        if seconds < 0:
            raise ValueError(f"wait value must not be negative, got {self.value!r}")
        self.value = self.value.strip()
        return self


class TaskScope(_CamelModel):
    selectors: list[str] = Field(default_factory=list)
    workflows: list[list[WorkflowStep]] = Field(default_factory=list)
    derive: bool = True  # Fall back to perceived elements when no selectors are given


class TaskConstraints(_CamelModel):
    time_budget_seconds: Optional[float] = Field(default=None, gt=0)
    excluded_selectors: list[str] = Field(default_factory=list)
    max_elements: int = Field(default=50, ge=1)


class TaskDescriptor(_CamelModel):
    """A unit of work handed to the agent by the UI or the CLI."""

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:8]}")
    type: Literal["fix-verification", "focus-trap-sweep", "full-audit", "workflow"]
    description: str = ""
    wcag_level: Literal["A", "AA", "AAA"] = "AA"
    priority: int = 0
    scope: TaskScope = Field(default_factory=TaskScope)
    constraints: TaskConstraints = Field(default_factory=TaskConstraints)


# ===== Sub-tasks =====

class SubTaskKind(str, Enum):
    NAVIGATION_TEST = "navigation-test"
    INTERACTION_TEST = "interaction-test"
    VERIFICATION = "verification"


@dataclass(frozen=True)
class SubTask:
    parent_id: str
    kind: SubTaskKind
    description: str
    target: Optional[str] = None
    step: Optional[WorkflowStep] = None
    wcag_level: str = "AA"
    id: str = field(default_factory=lambda: f"sub-{uuid.uuid4().hex[:10]}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "kind": self.kind.value,
            "description": self.description,
            "target": self.target,
        }


# ===== Actions and plans =====

class ActionType(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    FOCUS = "focus"
    KEYBOARD = "keyboard"
    WAIT = "wait"
    VERIFY = "verify"


@dataclass(frozen=True)
class Action:
    type: ActionType
    target: Optional[str] = None
    parameters: dict = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "target": self.target,
            "parameters": dict(self.parameters),
            "description": self.description,
        }


class OutcomeKind(str, Enum):
    FOCUS_ON_TARGET = "focus-on-target"
    FOCUS_MOVED = "focus-moved"
    TARGET_PRESENT = "target-present"
    URL_CHANGED = "url-changed"
    FOCUS_INDICATOR_VISIBLE = "focus-indicator-visible"
    NO_FOCUS_TRAP = "no-focus-trap"
    ANY = "any"


@dataclass(frozen=True)
class Observation:
    """What Reflect saw after an action ran."""

    active_element: Optional[str]
    previous_active: Optional[str]
    target_present: bool
    url_before: str
    url_after: str
    indicator_present: Optional[bool] = None
    focus_traps: int = 0


@dataclass(frozen=True)
class ExpectedOutcome:
    kind: OutcomeKind
    target: Optional[str] = None
    description: str = ""

    def is_met(self, observation: Observation) -> bool:
        if self.kind == OutcomeKind.FOCUS_ON_TARGET:
            return observation.active_element == self.target
        if self.kind == OutcomeKind.FOCUS_MOVED:
            return observation.active_element != observation.previous_active
        if self.kind == OutcomeKind.TARGET_PRESENT:
            return observation.target_present
        if self.kind == OutcomeKind.URL_CHANGED:
            return observation.url_after != observation.url_before
        if self.kind == OutcomeKind.FOCUS_INDICATOR_VISIBLE:
            return observation.indicator_present is True
        if self.kind == OutcomeKind.NO_FOCUS_TRAP:
            return observation.focus_traps == 0
        return True


@dataclass(frozen=True)
class ActionPlan:
    """One primary action, what it should achieve, and what to try if it fails."""

    sub_task_id: str
    primary: Action
    expected: ExpectedOutcome
    fallbacks: tuple[Action, ...] = ()
    timeout: float = ACTION_TIMEOUT_SECONDS
    planner: str = "rules"
    id: str = field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:10]}")

    def with_primary(self, action: Action) -> "ActionPlan":
        """The same plan with a fallback promoted to primary."""
        return replace(self, primary=action, fallbacks=())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sub_task_id": self.sub_task_id,
            "primary": self.primary.to_dict(),
            "expected": self.expected.kind.value,
            "fallbacks": [action.to_dict() for action in self.fallbacks],
            "timeout": self.timeout,
            "planner": self.planner,
        }
