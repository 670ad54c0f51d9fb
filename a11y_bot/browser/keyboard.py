"""Keyboard simulation: key sequences, focus-order walking and focus-trap detection."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from a11y_bot.browser.channel import ControlChannel, Rect
from a11y_bot.config import FOCUS_TRAP_WINDOW, FOCUS_WALK_MAX_STEPS, KEY_DELAY_SECONDS
from a11y_bot.errors import ActionError


logger = logging.getLogger(__name__)

FOCUS_RING_PROPERTIES = ("outline-style", "outline-width", "box-shadow")


@dataclass(frozen=True)
class FocusState:
    """Where focus landed after one key press."""

    selector: str
    tag: str = ""
    tab_index: int = 0
    rect: Optional[Rect] = None
    focus_ring_visible: bool = False

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "tag": self.tag,
            "tab_index": self.tab_index,
            "rect": self.rect.to_dict() if self.rect else None,
            "focus_ring_visible": self.focus_ring_visible,
        }


@dataclass(frozen=True)
class FocusTrap:
    """A region of the tab order that keyboard focus cannot leave."""

    start_selector: str
    end_selector: str
    trap_type: str  # "infinite-loop", "no-escape", "skip-content"
    elements: tuple[str, ...]
    detected_at_step: int
    severity: str = "critical"
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "start_selector": self.start_selector,
            "end_selector": self.end_selector,
            "trap_type": self.trap_type,
            "elements": list(self.elements),
            "detected_at_step": self.detected_at_step,
            "severity": self.severity,
            "description": self.description,
        }


@dataclass
class FocusNavigationResult:
    """Outcome of walking the tab order."""

    success: bool
    start_focus: Optional[FocusState] = None
    end_focus: Optional[FocusState] = None
    focus_path: list[FocusState] = field(default_factory=list)
    focus_traps: list[FocusTrap] = field(default_factory=list)
    navigation_time: float = 0.0  # seconds
    completed: bool = False  # Focus left the document after visiting every stop
    errors: list[str] = field(default_factory=list)

    @property
    def selectors(self) -> list[str]:
        return [state.selector for state in self.focus_path]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "start_focus": self.start_focus.to_dict() if self.start_focus else None,
            "end_focus": self.end_focus.to_dict() if self.end_focus else None,
            "focus_path": [state.to_dict() for state in self.focus_path],
            "focus_traps": [trap.to_dict() for trap in self.focus_traps],
            "navigation_time": round(self.navigation_time, 3),
            "completed": self.completed,
            "errors": list(self.errors),
        }


def classify_trap(region_size: int) -> str:
    """Name a trap by how many elements its cycle spans."""
    if region_size <= 1:
        return "no-escape"
    if region_size <= 3:
        return "infinite-loop"
    if region_size > 10:
        return "skip-content"
    return "no-escape"


def _px(value: str) -> float:
    try:
        return float(value.strip().removesuffix("px") or 0)
    except (AttributeError, ValueError):
        return 0.0


class KeyboardSimulator:
    """
    Drives keyboard input through a control channel.

    The focus walk presses Tab repeatedly and records where focus lands.
    Leaving the document (focus back on the body) after visiting elements
    means the whole tab order was traversed. An element that shows up again
    within the last ``trap_window`` stops before that happens marks a trap.
    """

    def __init__(
        self,
        channel: ControlChannel,
        key_delay: float = KEY_DELAY_SECONDS,
        trap_window: int = FOCUS_TRAP_WINDOW,
    ):
        self._channel = channel
        self._key_delay = key_delay
        self._trap_window = max(1, trap_window)

    async def simulate_key_sequence(self, keys: Sequence[str]) -> None:
        """Press each key in order, e.g. ``["Tab", "Tab", "Shift+Tab", "Enter"]``."""
        logger.debug(f"Key sequence: {list(keys)}")
        await self._channel.key_sequence(keys, delay=self._key_delay)

    async def focus_state(self, selector: str) -> FocusState:
        info = await self._channel.describe_element(selector)
        rect = await self._channel.bounding_rect(selector)
        ring_visible = False
        try:
            style = await self._channel.computed_style(selector, FOCUS_RING_PROPERTIES)
            ring_visible = (
                style.get("outline-style", "none") not in ("none", "hidden", "")
                and _px(style.get("outline-width", "0")) > 0
            ) or style.get("box-shadow", "none") not in ("none", "")
        except ActionError as e:
            logger.debug(f"Could not read focus style of {selector}: {e}")
        return FocusState(
            selector=selector,
            tag=info.tag if info else "",
            tab_index=info.tab_index if info else 0,
            rect=rect,
            focus_ring_visible=ring_visible,
        )

    async def walk_focus_order(
        self,
        max_steps: int = FOCUS_WALK_MAX_STEPS,
        direction: str = "forward",
        reset: bool = True,
    ) -> FocusNavigationResult:
        """
        Walk the tab order and look for focus traps.

        Args:
            max_steps: Upper bound on key presses
            direction: "forward" (Tab) or "backward" (Shift+Tab)
            reset: Move the navigation starting point to the top of the document first

        Returns:
            FocusNavigationResult with the path taken and any traps found
        """
        if direction not in ("forward", "backward"):
            raise ValueError(f"Invalid direction: {direction}")
        modifiers = ("Shift",) if direction == "backward" else ()

        started = time.monotonic()
        path: list[FocusState] = []
        traps: list[FocusTrap] = []
        visits: dict[str, int] = {}
        errors: list[str] = []
        completed = False
        exhausted = True

        if reset:
            await self._channel.blur()

        for step in range(1, max_steps + 1):
            try:
                await self._channel.press_key("Tab", modifiers)
                if self._key_delay:
                    await asyncio.sleep(self._key_delay)
                selector = await self._channel.active_element()
            except ActionError as e:
                errors.append(f"Step {step}: {e}")
                exhausted = False
                break

            if selector is None:
                if path:
                    completed = True
                    exhausted = False
                    break
                continue

            recent = [state.selector for state in path[-self._trap_window:]]
            if selector in recent:
                last_seen = len(path) - 1 - [s.selector for s in path][::-1].index(selector)
                region = tuple(state.selector for state in path[last_seen:])
                traps.append(self._make_trap(region, step))
                logger.info(f"Focus trap at step {step}: {traps[-1].description}")
                exhausted = False
                break

            if path and selector == path[0].selector:
                # Came back round to the first stop without a short cycle: the page wraps
                completed = True
                exhausted = False
                break

            path.append(await self.focus_state(selector))
            visits[selector] = visits.get(selector, 0) + 1
            logger.debug(f"Tab step {step}: {selector}")

        if exhausted:
            repeated = tuple(s for s, count in visits.items() if count > 2)
            if repeated:
                traps.append(self._make_trap(repeated, max_steps, trap_type="skip-content"))
            logger.info(f"Focus walk hit max_steps={max_steps} after visiting {len(visits)} elements")

        return FocusNavigationResult(
            success=not errors,
            start_focus=path[0] if path else None,
            end_focus=path[-1] if path else None,
            focus_path=path,
            focus_traps=traps,
            navigation_time=time.monotonic() - started,
            completed=completed,
            errors=errors,
        )

    def _make_trap(self, region: tuple[str, ...], step: int, trap_type: Optional[str] = None) -> FocusTrap:
        trap_type = trap_type or classify_trap(len(region))
        if len(region) == 1:
            description = f"Tab does not move focus away from {region[0]}"
        else:
            description = f"Tab cycles between {len(region)} elements ({region[0]} ... {region[-1]}) without reaching the rest of the page"
        return FocusTrap(
            start_selector=region[0],
            end_selector=region[-1],
            trap_type=trap_type,
            elements=region,
            detected_at_step=step,
            description=description,
        )

    async def seek(self, selector: str, max_steps: int = FOCUS_WALK_MAX_STEPS) -> bool:
        """Press Tab until selector has focus. Returns False if it never does."""
        await self._channel.blur()
        seen_any = False
        for _ in range(max_steps):
            await self._channel.press_key("Tab")
            active = await self._channel.active_element()
            if active == selector:
                return True
            if active is None and seen_any:
                return False
            seen_any = seen_any or active is not None
        return False
