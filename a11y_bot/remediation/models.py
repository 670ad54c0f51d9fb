import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from a11y_bot.errors import InvalidTransition, RollbackError


class IssueType(str, Enum):
    MISSING_FOCUS = "missing-focus"
    LOW_CONTRAST = "low-contrast"
    KEYBOARD_INACCESSIBLE = "keyboard-inaccessible"
    MISSING_LABEL = "missing-label"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class IssueStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FixType(str, Enum):
    FOCUS_VISIBLE = "focus-visible"
    COLOR_CONTRAST = "color-contrast"
    KEYBOARD_NAVIGATION = "keyboard-navigation"
    ACCESSIBLE_NAME = "accessible-name"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return list(TaskPriority).index(self)


_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: {TaskStatus.ROLLED_BACK},
    TaskStatus.FAILED: set(),
    TaskStatus.ROLLED_BACK: set(),
}

_PRIORITY_BY_SEVERITY = {
    Severity.CRITICAL: TaskPriority.CRITICAL,
    Severity.MAJOR: TaskPriority.HIGH,
    Severity.MINOR: TaskPriority.MEDIUM,
}


def _task_id() -> str:
    return f"remediation-{int(time.time() * 1000)}-{random.randint(0, 0xFFFFFF):06x}"


@dataclass(frozen=True)
class PageTheme:
    background: str = "#ffffff"
    foreground: str = "#000000"
    dark: bool = False


@dataclass(frozen=True)
class ElementContext:
    """Where an element sits on the page; used to tune generated fixes."""

    selector: str
    tag: str
    tab_index: int = 0
    role: Optional[str] = None
    text: str = ""
    attributes: dict = field(default_factory=dict)
    parent_selector: Optional[str] = None
    sibling_count: int = 0
    in_form: bool = False
    in_navigation: bool = False
    has_label: bool = False
    computed_style: dict = field(default_factory=dict)
    theme: PageTheme = field(default_factory=PageTheme)

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "tag": self.tag,
            "tab_index": self.tab_index,
            "role": self.role,
            "parent_selector": self.parent_selector,
            "sibling_count": self.sibling_count,
            "in_form": self.in_form,
            "in_navigation": self.in_navigation,
        }


@dataclass(frozen=True)
class CSSFixSolution:
    """A generated fix. Never changed after generation; retries reuse it."""

    fix_type: FixType
    selector: str
    css: str
    description: str
    confidence: float
    priority: TaskPriority
    wcag_criteria: tuple[str, ...]
    attributes: tuple[tuple[str, str], ...] = ()  # (name, value) pairs to set on the element
    reversible: bool = True
    estimated_impact: str = "minimal"  # minimal, moderate, significant
    target_ratio: Optional[float] = None
    id: str = ""

    def __post_init__(self):
        if not self.id:
            object.__setattr__(self, "id", f"{self.fix_type.value}-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fix_type": self.fix_type.value,
            "selector": self.selector,
            "css": self.css,
            "attributes": dict(self.attributes),
            "description": self.description,
            "confidence": self.confidence,
            "priority": self.priority.value,
            "reversible": self.reversible,
            "wcag_criteria": list(self.wcag_criteria),
            "estimated_impact": self.estimated_impact,
        }


@dataclass
class VerificationEvidence:
    visual_change: bool = False
    focus_indicator_present: bool = False
    contrast_improved: bool = False
    keyboard_accessible: bool = False
    accessible_name_present: bool = False
    contrast_before: Optional[float] = None
    contrast_after: Optional[float] = None
    changed_properties: list[str] = field(default_factory=list)
    screenshot_before: Optional[str] = None  # base64 PNG
    screenshot_after: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "visual_change": self.visual_change,
            "focus_indicator_present": self.focus_indicator_present,
            "contrast_improved": self.contrast_improved,
            "keyboard_accessible": self.keyboard_accessible,
            "accessible_name_present": self.accessible_name_present,
            "contrast_before": self.contrast_before,
            "contrast_after": self.contrast_after,
            "changed_properties": self.changed_properties,
        }
        if self.screenshot_before:
            result["screenshot_before"] = self.screenshot_before
        if self.screenshot_after:
            result["screenshot_after"] = self.screenshot_after
        return result


@dataclass
class VerificationResult:
    passed: bool
    confidence: float
    evidence: VerificationEvidence = field(default_factory=VerificationEvidence)
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "confidence": self.confidence,
            "evidence": self.evidence.to_dict(),
            "reason": self.reason,
        }


@dataclass
class RemediationAttempt:
    solution: CSSFixSolution
    applied: bool
    error: Optional[str] = None
    verification: Optional[VerificationResult] = None
    rolled_back: bool = False
    # Set when an identical fix was already active and this one was not injected
    reused_fix_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        if not self.applied or self.rolled_back:
            return False
        return self.verification is None or self.verification.passed

    def to_dict(self) -> dict:
        return {
            "fix_id": self.solution.id,
            "fix_type": self.solution.fix_type.value,
            "applied": self.applied,
            "error": self.error,
            "verification": self.verification.to_dict() if self.verification else None,
            "rolled_back": self.rolled_back,
            "reused_fix_id": self.reused_fix_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AccessibilityIssue:
    type: IssueType
    severity: Severity
    selector: str
    description: str
    wcag_criteria: tuple[str, ...]
    evidence: dict = field(default_factory=dict)
    status: IssueStatus = IssueStatus.OPEN
    attempts: list[RemediationAttempt] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "selector": self.selector,
            "description": self.description,
            "wcag_criteria": list(self.wcag_criteria),
            "evidence": self.evidence,
            "status": self.status.value,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


def priority_for(issues: list[AccessibilityIssue]) -> TaskPriority:
    """Task priority from the most severe issue."""
    priorities = [_PRIORITY_BY_SEVERITY.get(issue.severity, TaskPriority.LOW) for issue in issues]
    if not priorities:
        return TaskPriority.LOW
    return min(priorities, key=lambda p: p.rank)


@dataclass
class RemediationTask:
    """
    Remediation of one element.

    Status only moves forward: pending -> in-progress -> completed | failed,
    and a completed task whose fixes are all still applied may be rolled back.
    """

    context: ElementContext
    issues: list[AccessibilityIssue]
    priority: TaskPriority = TaskPriority.LOW
    status: TaskStatus = TaskStatus.PENDING
    id: str = field(default_factory=_task_id)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    rollback_error: Optional[RollbackError] = None
    rolled_back_fix_ids: list[str] = field(default_factory=list)

    @property
    def selector(self) -> str:
        return self.context.selector

    def transition(self, status: TaskStatus) -> None:
        if status not in _TASK_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, status.value)
        self.status = status
        if status == TaskStatus.IN_PROGRESS:
            self.started_at = datetime.now()
        elif status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            self.completed_at = datetime.now()

    @property
    def attempts(self) -> list[RemediationAttempt]:
        return [attempt for issue in self.issues for attempt in issue.attempts]

    @property
    def applied_fixes(self) -> list[CSSFixSolution]:
        """Fixes currently on the page, in application order."""
        return [
            attempt.solution for attempt in self.attempts
            if attempt.succeeded and attempt.solution.id not in self.rolled_back_fix_ids
        ]

    @property
    def failed_fixes(self) -> list[CSSFixSolution]:
        """The last attempted fix of every issue that could not be fixed."""
        return [
            issue.attempts[-1].solution for issue in self.issues
            if issue.status == IssueStatus.FAILED and issue.attempts
        ]

    @property
    def rollback_available(self) -> bool:
        return (
            self.status == TaskStatus.COMPLETED
            and bool(self.applied_fixes)
            and all(fix.reversible for fix in self.applied_fixes)
        )

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "selector": self.selector,
            "status": self.status.value,
            "priority": self.priority.value,
            "context": self.context.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "applied_fixes": [fix.id for fix in self.applied_fixes],
            "failed_fixes": [fix.id for fix in self.failed_fixes],
            "rollback_available": self.rollback_available,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class RemediationResult:
    task_id: str
    selector: str
    success: bool
    status: TaskStatus
    applied_fixes: list[CSSFixSolution] = field(default_factory=list)
    failed_fixes: list[CSSFixSolution] = field(default_factory=list)
    issues: list[AccessibilityIssue] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None

    @classmethod
    def from_task(cls, task: RemediationTask) -> "RemediationResult":
        return cls(
            task_id=task.id,
            selector=task.selector,
            success=task.status == TaskStatus.COMPLETED,
            status=task.status,
            applied_fixes=task.applied_fixes,
            failed_fixes=task.failed_fixes,
            issues=task.issues,
            duration_ms=task.duration_ms or 0,
            error=task.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "selector": self.selector,
            "success": self.success,
            "status": self.status.value,
            "applied_fixes": [fix.to_dict() for fix in self.applied_fixes],
            "failed_fixes": [fix.to_dict() for fix in self.failed_fixes],
            "issues": [issue.to_dict() for issue in self.issues],
            "duration_ms": self.duration_ms,
            "error": self.error,
        }
