"""Mouse and touch simulation with accessibility cross-checks."""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from a11y_bot.browser.channel import ControlChannel, Rect
from a11y_bot.browser.keyboard import KeyboardSimulator
from a11y_bot.errors import ActionError


logger = logging.getLogger(__name__)

# WCAG 2.5.8 minimum target size in CSS pixels
MIN_TARGET_SIZE = 24


@dataclass(frozen=True)
class InteractionIssue:
    kind: str  # "keyboard-alternative", "drag-alternative", "target-size"
    wcag: str
    description: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "wcag": self.wcag, "description": self.description}


@dataclass
class InteractionResult:
    """
    Outcome of one pointer interaction.

    ``success`` says whether the interaction could be performed at all;
    ``passed`` says whether the element also met the accessibility
    expectations that go with it.
    """

    interaction_type: str
    target: str
    success: bool
    passed: bool = False
    duration: float = 0.0
    focus_changed: bool = False
    keyboard_accessible: Optional[bool] = None
    issues: list[InteractionIssue] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "interaction_type": self.interaction_type,
            "target": self.target,
            "success": self.success,
            "passed": self.passed,
            "duration": round(self.duration, 3),
            "focus_changed": self.focus_changed,
            "keyboard_accessible": self.keyboard_accessible,
            "issues": [issue.to_dict() for issue in self.issues],
            "errors": list(self.errors),
        }


class PointerSimulator:
    """
    Click, drag, tap and swipe through a control channel.

    Keyboard parity is checked against the keyboard simulator's focus path,
    which is walked once and cached until ``invalidate_keyboard_path`` is called.
    """

    def __init__(self, channel: ControlChannel, keyboard: KeyboardSimulator):
        self._channel = channel
        self._keyboard = keyboard
        self._keyboard_path: Optional[set[str]] = None

    def invalidate_keyboard_path(self) -> None:
        self._keyboard_path = None

    async def keyboard_reachable(self, selector: str) -> bool:
        if self._keyboard_path is None:
            result = await self._keyboard.walk_focus_order()
            self._keyboard_path = set(result.selectors)
            logger.debug(f"Cached keyboard focus path with {len(self._keyboard_path)} stops")
        return selector in self._keyboard_path

    async def _target_rect(self, selector: str) -> Optional[Rect]:
        rect = await self._channel.bounding_rect(selector)
        if rect is None or rect.area == 0:
            return None
        return rect

    def _finish(self, result: InteractionResult, started: float) -> InteractionResult:
        result.duration = time.monotonic() - started
        result.passed = result.success and not result.issues
        if result.issues:
            logger.info(
                f"{result.interaction_type} on {result.target}: "
                + ", ".join(issue.kind for issue in result.issues)
            )
        return result

    async def click(self, selector: str, check_keyboard: bool = True, button: str = "left") -> InteractionResult:
        started = time.monotonic()
        result = InteractionResult(interaction_type="click", target=selector, success=False)
        rect = await self._target_rect(selector)
        if rect is None:
            result.errors.append(f"Element not found or not rendered: {selector}")
            return self._finish(result, started)

        before = await self._channel.active_element()
        try:
            await self._channel.mouse_click(*rect.center, button=button)
        except ActionError as e:
            result.errors.append(str(e))
            return self._finish(result, started)
        after = await self._channel.active_element()
        result.success = True
        result.focus_changed = before != after

        if check_keyboard:
            result.keyboard_accessible = await self.keyboard_reachable(selector)
            if not result.keyboard_accessible:
                result.issues.append(InteractionIssue(
                    kind="keyboard-alternative",
                    wcag="2.1.1",
                    description=f"{selector} responds to the mouse but is not in the keyboard focus order",
                ))
        return self._finish(result, started)

    async def drag(self, from_selector: str, to_selector: str, check_keyboard: bool = True) -> InteractionResult:
        started = time.monotonic()
        result = InteractionResult(interaction_type="drag", target=from_selector, success=False)
        source = await self._target_rect(from_selector)
        destination = await self._target_rect(to_selector)
        if source is None or destination is None:
            missing = from_selector if source is None else to_selector
            result.errors.append(f"Element not found or not rendered: {missing}")
            return self._finish(result, started)

        before = await self._channel.active_element()
        try:
            await self._channel.drag(source.center, destination.center)
        except ActionError as e:
            result.errors.append(str(e))
            return self._finish(result, started)
        result.success = True
        result.focus_changed = before != await self._channel.active_element()

        if check_keyboard:
            result.keyboard_accessible = await self.keyboard_reachable(from_selector)
            if not result.keyboard_accessible:
                result.issues.append(InteractionIssue(
                    kind="drag-alternative",
                    wcag="2.5.7",
                    description=f"Dragging {from_selector} has no keyboard-operable alternative",
                ))
        return self._finish(result, started)

    async def tap(self, selector: str, check_keyboard: bool = True) -> InteractionResult:
        started = time.monotonic()
        result = InteractionResult(interaction_type="tap", target=selector, success=False)
        rect = await self._target_rect(selector)
        if rect is None:
            result.errors.append(f"Element not found or not rendered: {selector}")
            return self._finish(result, started)

        if rect.width < MIN_TARGET_SIZE or rect.height < MIN_TARGET_SIZE:
            result.issues.append(InteractionIssue(
                kind="target-size",
                wcag="2.5.8",
                description=f"{selector} is {rect.width:.0f}x{rect.height:.0f}px, below {MIN_TARGET_SIZE}x{MIN_TARGET_SIZE}px",
            ))

        before = await self._channel.active_element()
        try:
            await self._channel.tap(*rect.center)
        except ActionError as e:
            result.errors.append(str(e))
            return self._finish(result, started)
        result.success = True
        result.focus_changed = before != await self._channel.active_element()

        if check_keyboard:
            result.keyboard_accessible = await self.keyboard_reachable(selector)
            if not result.keyboard_accessible:
                result.issues.append(InteractionIssue(
                    kind="keyboard-alternative",
                    wcag="2.1.1",
                    description=f"{selector} responds to touch but is not in the keyboard focus order",
                ))
        return self._finish(result, started)

    async def swipe(self, selector: str, direction: str = "left", distance: float = 120) -> InteractionResult:
        started = time.monotonic()
        result = InteractionResult(interaction_type="swipe", target=selector, success=False)
        rect = await self._target_rect(selector)
        if rect is None:
            result.errors.append(f"Element not found or not rendered: {selector}")
            return self._finish(result, started)

        offsets = {"left": (-distance, 0), "right": (distance, 0), "up": (0, -distance), "down": (0, distance)}
        if direction not in offsets:
            raise ValueError(f"Invalid swipe direction: {direction}")
        x, y = rect.center
        dx, dy = offsets[direction]
        try:
            await self._channel.swipe((x, y), (x + dx, y + dy))
        except ActionError as e:
            result.errors.append(str(e))
            return self._finish(result, started)
        result.success = True
        return self._finish(result, started)
