"""Issue detection and automatic CSS/ARIA remediation."""

from .detection import IssueDetector
from .engine import AutoRemediationEngine, RemediationConfig
from .fixes import CSSFixGenerator
from .injection import InjectionStrategy, StyleInjector
from .models import (
    AccessibilityIssue,
    CSSFixSolution,
    ElementContext,
    FixType,
    IssueType,
    RemediationResult,
    RemediationTask,
    Severity,
    TaskStatus,
)
from .report import generate_json_report, generate_report
from .verification import FixVerifier

__all__ = [
    "IssueDetector",
    "AutoRemediationEngine",
    "RemediationConfig",
    "CSSFixGenerator",
    "InjectionStrategy",
    "StyleInjector",
    "AccessibilityIssue",
    "CSSFixSolution",
    "ElementContext",
    "FixType",
    "IssueType",
    "RemediationResult",
    "RemediationTask",
    "Severity",
    "TaskStatus",
    "generate_json_report",
    "generate_report",
    "FixVerifier",
]
