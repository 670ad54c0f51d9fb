import logging
import re
from typing import Optional

from a11y_bot.config import TARGET_CONTRAST_RATIO
from a11y_bot.errors import InjectionError
from a11y_bot.perception.color import RGBA, adjust_for_contrast, contrast_ratio, parse_color, to_css
from .models import AccessibilityIssue, CSSFixSolution, ElementContext, FixType, IssueType, TaskPriority


logger = logging.getLogger(__name__)

STANDARD_INTERACTIVE_TAGS = {"button", "input", "select", "textarea", "a"}
NON_SEMANTIC_TAGS = {"div", "span", "li", "td", "img", "p", "section", "article"}

# Focus ring colours, tried in order: blue, dark blue, yellow, black
FOCUS_COLOR_CANDIDATES = ("#005fcc", "#002b80", "#ffd400", "#000000")
FOCUS_RING_MIN_CONTRAST = 3.0
DEFAULT_OUTLINE_WIDTH = 2
MAX_OUTLINE_WIDTH = 4
OUTLINE_OFFSET = 2

LABEL_SOURCES = ("title", "placeholder", "alt", "name")

_RULE_RE = re.compile(r"([^{}]+)\{([^{}]*)\}")


def split_rules(css: str) -> list[str]:
    """Split a stylesheet fragment into its top-level rules."""
    return [f"{selector.strip()} {{{body}}}" for selector, body in _RULE_RE.findall(css)]


def rule_selector(rule: str) -> str:
    return rule.split("{", 1)[0].strip()


def parse_declarations(rule: str) -> dict[str, str]:
    """``sel { a: b !important; c: d }`` -> ``{"a": "b !important", "c": "d"}``"""
    body = rule.split("{", 1)[1].rsplit("}", 1)[0] if "{" in rule else rule
    declarations = {}
    for part in body.split(";"):
        if ":" not in part:
            continue
        name, value = part.split(":", 1)
        declarations[name.strip().lower()] = value.strip()
    return declarations


def validate_css(css: str) -> None:
    """Raise InjectionError(INVALID_CSS) for CSS we would refuse to inject."""
    if css.count("{") != css.count("}"):
        raise InjectionError("INVALID_CSS", "Unbalanced braces")
    if ";;" in css.replace(" ", ""):
        raise InjectionError("INVALID_CSS", "Empty declaration")
    depth = 0
    for char in css:
        depth += {"{": 1, "}": -1}.get(char, 0)
        if depth < 0 or depth > 1:
            raise InjectionError("INVALID_CSS", "Nested or misordered braces")
    rules = split_rules(css)
    if css.strip() and not rules:
        raise InjectionError("INVALID_CSS", "No rules found")
    for rule in rules:
        if not rule_selector(rule):
            raise InjectionError("INVALID_CSS", f"Rule without a selector: {rule}")
        if not parse_declarations(rule):
            raise InjectionError("INVALID_CSS", f"Rule without declarations: {rule}")


def _px(value: Optional[str]) -> float:
    try:
        return float((value or "0").strip().removesuffix("px") or 0)
    except ValueError:
        return 0.0


class CSSFixGenerator:
    """Generates CSSFixSolutions for detected issues."""

    def __init__(self, target_contrast_ratio: float = TARGET_CONTRAST_RATIO):
        self.target_contrast_ratio = target_contrast_ratio

    def generate(self, issue: AccessibilityIssue, context: ElementContext) -> list[CSSFixSolution]:
        if issue.type == IssueType.MISSING_FOCUS:
            return [self.focus_fix(context)]
        if issue.type == IssueType.LOW_CONTRAST:
            fix = self.contrast_fix(
                context,
                current=float(issue.evidence.get("current", 1.0)),
                target=float(issue.evidence.get("target", self.target_contrast_ratio)),
                foreground=issue.evidence.get("foreground"),
                background=issue.evidence.get("background"),
            )
            return [fix] if fix else []
        if issue.type == IssueType.KEYBOARD_INACCESSIBLE:
            fix = self.keyboard_fix(context)
            return [fix] if fix else []
        if issue.type == IssueType.MISSING_LABEL:
            fix = self.accessible_name_fix(context)
            return [fix] if fix else []
        return []

    # ===== focus-visible =====

    def focus_fix(self, context: ElementContext) -> CSSFixSolution:
        style = context.computed_style
        has_outline = style.get("outline-style", "none") not in ("none", "hidden", "") and _px(style.get("outline-width")) > 0
        width = min(int(_px(style.get("outline-width"))) + 1, MAX_OUTLINE_WIDTH) if has_outline else DEFAULT_OUTLINE_WIDTH
        width = max(width, DEFAULT_OUTLINE_WIDTH)
        color = self._focus_color(context)

        selector = context.selector
        css = (
            f"{selector}:focus,\n{selector}:focus-visible {{\n"
            f"  outline: {width}px solid {color} !important;\n"
            f"  outline-offset: {OUTLINE_OFFSET}px !important;\n"
            f"}}"
        )

        confidence = 0.8
        if context.tag in STANDARD_INTERACTIVE_TAGS:
            confidence += 0.1
        if self._has_custom_styles(context):
            confidence -= 0.1
        if has_outline:
            confidence += 0.05

        return CSSFixSolution(
            fix_type=FixType.FOCUS_VISIBLE,
            selector=selector,
            css=css,
            description=f"Add a {width}px {color} outline focus indicator to {context.tag} element",
            confidence=round(min(max(confidence, 0.0), 1.0), 2),
            priority=self._focus_priority(context),
            wcag_criteria=("2.4.7",),
            estimated_impact="minimal",
        )

    def _element_background(self, context: ElementContext) -> RGBA:
        own = parse_color(context.computed_style.get("background-color"))
        if own is not None and own.opaque:
            return own
        return parse_color(context.theme.background) or RGBA(255, 255, 255)

    def _focus_color(self, context: ElementContext) -> str:
        background = self._element_background(context)
        for candidate in FOCUS_COLOR_CANDIDATES:
            if contrast_ratio(parse_color(candidate), background) >= FOCUS_RING_MIN_CONTRAST:
                return candidate
        return "#ffffff" if context.theme.dark else "#000000"

    @staticmethod
    def _has_custom_styles(context: ElementContext) -> bool:
        style = context.computed_style
        background = parse_color(style.get("background-color"))
        return (background is not None and background.a > 0) or style.get("box-shadow", "none") not in ("none", "")

    @staticmethod
    def _focus_priority(context: ElementContext) -> TaskPriority:
        if context.in_form or context.in_navigation or context.tag in ("button", "a"):
            return TaskPriority.HIGH
        if context.tag in ("input", "select", "textarea"):
            return TaskPriority.MEDIUM
        return TaskPriority.LOW

    # ===== color-contrast =====

    def contrast_fix(
        self,
        context: ElementContext,
        current: float,
        target: Optional[float] = None,
        foreground: Optional[str] = None,
        background: Optional[str] = None,
    ) -> Optional[CSSFixSolution]:
        """
        Adjust the text colour toward ``target``; also change the background
        when no text colour can reach it.
        """
        target = target or self.target_contrast_ratio
        fg = parse_color(foreground or context.computed_style.get("color")) or RGBA(0, 0, 0)
        bg = parse_color(background) or self._element_background(context)

        declarations = {}
        new_fg = adjust_for_contrast(fg, bg, target)
        if new_fg is not None:
            declarations["color"] = to_css(new_fg)
        else:
            new_bg = adjust_for_contrast(bg, fg, target)
            if new_bg is None:
                logger.warning(f"No colour pair reaches {target}:1 for {context.selector}")
                return None
            declarations["background-color"] = to_css(new_bg)

        body = "".join(f"  {name}: {value} !important;\n" for name, value in declarations.items())
        ratio = current / target if target else 1.0
        if ratio > 0.8:
            confidence = 0.9
        elif ratio > 0.6:
            confidence = 0.8
        elif ratio > 0.4:
            confidence = 0.7
        else:
            confidence = 0.6

        return CSSFixSolution(
            fix_type=FixType.COLOR_CONTRAST,
            selector=context.selector,
            css=f"{context.selector} {{\n{body}}}",
            description=f"Improve color contrast from {current:.1f}:1 to {target:g}:1",
            confidence=confidence,
            priority=TaskPriority.HIGH if current < 3 else TaskPriority.MEDIUM,
            wcag_criteria=("1.4.3", "1.4.6"),
            estimated_impact="moderate",
            target_ratio=target,
        )

    # ===== keyboard-navigation =====

    def keyboard_fix(self, context: ElementContext) -> Optional[CSSFixSolution]:
        attributes = []
        if context.tab_index < 0:
            attributes.append(("tabindex", "0"))
        if context.tag in NON_SEMANTIC_TAGS and not context.role:
            attributes.append(("role", "button"))
        if not attributes:
            return None

        confidence = 0.6 if not context.role and not context.text.strip() else 0.8
        names = ", ".join(f'{name}="{value}"' for name, value in attributes)
        return CSSFixSolution(
            fix_type=FixType.KEYBOARD_NAVIGATION,
            selector=context.selector,
            css="",
            attributes=tuple(attributes),
            description=f"Make {context.tag} keyboard accessible with {names}",
            confidence=confidence,
            priority=TaskPriority.HIGH,
            wcag_criteria=("2.1.1", "2.4.3"),
            estimated_impact="minimal",
        )

    # ===== accessible-name =====

    def accessible_name_fix(self, context: ElementContext) -> Optional[CSSFixSolution]:
        for source in LABEL_SOURCES:
            value = (context.attributes.get(source) or "").strip()
            if value:
                break
        else:
            logger.info(f"No attribute to derive an accessible name for {context.selector} from")
            return None

        return CSSFixSolution(
            fix_type=FixType.ACCESSIBLE_NAME,
            selector=context.selector,
            css="",
            attributes=(("aria-label", value),),
            description=f'Add aria-label "{value}" from the {source} attribute',
            confidence=0.7 if source in ("title", "alt") else 0.6,
            priority=TaskPriority.MEDIUM,
            wcag_criteria=("4.1.2",),
            estimated_impact="minimal",
        )
