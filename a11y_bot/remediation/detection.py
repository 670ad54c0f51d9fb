"""Turns perceived element state into AccessibilityIssues."""

import logging
from typing import Optional

from a11y_bot.browser.channel import ControlChannel, ElementInfo
from a11y_bot.errors import ElementNotFound
from a11y_bot.perception.color import is_dark, parse_color, to_css
from a11y_bot.perception.engine import ContrastMeasurement, ElementDescriptor, FocusProbe, PerceptionEngine
from a11y_bot.planning.planner import contrast_target, order_issues
from .models import AccessibilityIssue, ElementContext, IssueType, PageTheme, Severity


logger = logging.getLogger(__name__)

# Elements that need an accessible name of their own
NAMED_TAGS = {"button", "a", "input", "select", "textarea"}
NAMED_ROLES = {"button", "link", "checkbox", "radio", "switch", "tab", "menuitem", "textbox", "combobox"}
NAME_ATTRIBUTES = ("aria-label", "aria-labelledby")
VALUE_NAMED_INPUTS = {"submit", "button", "reset"}

THEME_PROPERTIES = ("background-color", "color")


def has_accessible_name(info: ElementInfo) -> bool:
    if any(info.attributes.get(name, "").strip() for name in NAME_ATTRIBUTES):
        return True
    if info.has_label or info.text.strip():
        return True
    input_type = info.attributes.get("type", "text").lower()
    if info.tag == "input" and input_type in VALUE_NAMED_INPUTS and info.attributes.get("value", "").strip():
        return True
    if info.tag == "input" and input_type == "image" and info.attributes.get("alt", "").strip():
        return True
    return False


def needs_accessible_name(info: ElementInfo) -> bool:
    if info.tag == "input" and info.attributes.get("type", "").lower() == "hidden":
        return False
    return info.tag in NAMED_TAGS or (info.role or "") in NAMED_ROLES


class IssueDetector:
    """
    Detects the four issue types on one element.

    - keyboard-inaccessible: an interactive element focus never reaches (critical, 2.1.1)
    - missing-focus: focusing changes nothing visible (major, 2.4.7)
    - low-contrast: text contrast under the WCAG level's target (1.4.3 / 1.4.6)
    - missing-label: a control with no accessible name (minor, 4.1.2)
    """

    def __init__(self, channel: ControlChannel, perception: PerceptionEngine):
        self._channel = channel
        self._perception = perception
        self._theme: Optional[PageTheme] = None

    async def page_theme(self) -> PageTheme:
        if self._theme is None:
            style = await self._channel.computed_style("body", THEME_PROPERTIES)
            background = parse_color(style.get("background-color"))
            if background is None or background.a == 0:
                background_css = "#ffffff"
                dark = False
            else:
                background_css = style["background-color"]
                dark = is_dark(background)
            self._theme = PageTheme(
                background=background_css,
                foreground=style.get("color") or "#000000",
                dark=dark,
            )
        return self._theme

    async def element_context(self, element: ElementDescriptor, info: Optional[ElementInfo] = None) -> ElementContext:
        info = info or await self._channel.describe_element(element.selector)
        if info is None:
            raise ElementNotFound(element.selector)
        return ElementContext(
            selector=element.selector,
            tag=element.tag,
            tab_index=element.tab_index,
            role=info.role,
            text=info.text,
            attributes=dict(info.attributes),
            parent_selector=info.parent_selector,
            sibling_count=info.sibling_count,
            in_form=info.in_form,
            in_navigation=info.in_navigation,
            has_label=info.has_label,
            computed_style=dict(element.computed_style),
            theme=await self.page_theme(),
        )

    async def detect(
        self,
        element: ElementDescriptor,
        probe: Optional[FocusProbe] = None,
        wcag_level: str = "AA",
    ) -> tuple[ElementContext, list[AccessibilityIssue]]:
        """
        Inspect one element.

        Args:
            element: The perceived element
            probe: Focus-indicator probe of the element, if one was taken
            wcag_level: "A", "AA" or "AAA"; sets the contrast target

        Returns:
            The element's context and its issues, most urgent first
        """
        info = await self._channel.describe_element(element.selector)
        if info is None:
            raise ElementNotFound(element.selector)
        context = await self.element_context(element, info)
        issues: list[AccessibilityIssue] = []

        if not element.focusable:
            issues.append(AccessibilityIssue(
                type=IssueType.KEYBOARD_INACCESSIBLE,
                severity=Severity.CRITICAL,
                selector=element.selector,
                description=f"{element.tag} {element.selector} is interactive but not in the tab order",
                wcag_criteria=("2.1.1",),
                evidence={"tab_index": element.tab_index, "role": info.role},
            ))
        elif probe is not None and probe.focused and not probe.indicator_present:
            issues.append(AccessibilityIssue(
                type=IssueType.MISSING_FOCUS,
                severity=Severity.MAJOR,
                selector=element.selector,
                description=f"{element.selector} shows no visible change when focused",
                wcag_criteria=("2.4.7",),
                evidence={
                    "changed_properties": list(probe.changed_properties),
                    "outline_style": probe.focused_style.get("outline-style"),
                    "outline_width": probe.focused_style.get("outline-width"),
                    "box_shadow": probe.focused_style.get("box-shadow"),
                },
            ))

        if element.text.strip():
            measurement = await self._perception.contrast_of(element.selector)
            issue = self._contrast_issue(measurement, wcag_level)
            if issue is not None:
                issues.append(issue)

        if needs_accessible_name(info) and not has_accessible_name(info):
            issues.append(AccessibilityIssue(
                type=IssueType.MISSING_LABEL,
                severity=Severity.MINOR,
                selector=element.selector,
                description=f"{element.tag} {element.selector} has no accessible name",
                wcag_criteria=("4.1.2",),
                evidence={attr: info.attributes[attr] for attr in ("title", "placeholder", "alt", "name") if info.attributes.get(attr)},
            ))

        if issues:
            logger.info(f"{element.selector}: {', '.join(issue.type.value for issue in issues)}")
        return context, order_issues(issues)

    def _contrast_issue(self, measurement: Optional[ContrastMeasurement], wcag_level: str) -> Optional[AccessibilityIssue]:
        if measurement is None:
            return None
        target = contrast_target(wcag_level, measurement.large_text)
        if measurement.ratio >= target:
            return None
        return AccessibilityIssue(
            type=IssueType.LOW_CONTRAST,
            severity=Severity.MAJOR if measurement.ratio < 3 else Severity.MINOR,
            selector=measurement.selector,
            description=f"Contrast {measurement.ratio:.2f}:1 is below {target:g}:1",
            wcag_criteria=("1.4.6",) if wcag_level == "AAA" else ("1.4.3",),
            evidence={
                "current": round(measurement.ratio, 2),
                "target": target,
                "large_text": measurement.large_text,
                "foreground": to_css(measurement.foreground),
                "background": to_css(measurement.background),
                "background_source": measurement.background_source,
            },
        )
