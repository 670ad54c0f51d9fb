from .planner import ISSUE_PRECEDENCE, Planner, RulePlanner, contrast_target, order_issues
from .task import (
    Action,
    ActionPlan,
    ActionType,
    ExpectedOutcome,
    Observation,
    OutcomeKind,
    SubTask,
    SubTaskKind,
    TaskConstraints,
    TaskDescriptor,
    TaskScope,
    WorkflowStep,
)

__all__ = [
    "ISSUE_PRECEDENCE",
    "Planner",
    "RulePlanner",
    "contrast_target",
    "order_issues",
    "Action",
    "ActionPlan",
    "ActionType",
    "ExpectedOutcome",
    "Observation",
    "OutcomeKind",
    "SubTask",
    "SubTaskKind",
    "TaskConstraints",
    "TaskDescriptor",
    "TaskScope",
    "WorkflowStep",
]
