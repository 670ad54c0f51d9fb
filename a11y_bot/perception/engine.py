"""Perception: immutable page snapshots, focus probes and change listeners."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from a11y_bot.browser.channel import ControlChannel, DomMutation, Rect, Viewport
from a11y_bot.browser.scripts import FOCUSABLE_SELECTOR, INTERACTIVE_SELECTOR
from a11y_bot.config import DOM_DEBOUNCE_MS, EVENT_QUEUE_SIZE, STABILITY_POLL_SECONDS, STABILITY_TIMEOUT_SECONDS
from a11y_bot.errors import ElementNotFound
from a11y_bot.perception.color import RGBA, blend, contrast_ratio, parse_color
from a11y_bot.perception.observers import Debouncer, ListenerRegistry, Unsubscribe


logger = logging.getLogger(__name__)

VISIBILITY_PROPERTIES = ("display", "visibility", "opacity")

FOCUS_INDICATOR_PROPERTIES = (
    "outline-style",
    "outline-width",
    "outline-color",
    "outline-offset",
    "box-shadow",
    "border-top-color",
    "border-right-color",
    "border-bottom-color",
    "border-left-color",
    "border-top-width",
    "border-right-width",
    "border-bottom-width",
    "border-left-width",
    "background-color",
    "text-decoration-line",
)

SNAPSHOT_PROPERTIES = VISIBILITY_PROPERTIES + FOCUS_INDICATOR_PROPERTIES + (
    "color",
    "font-size",
    "font-weight",
)

SIGNIFICANT_ATTRIBUTES = {"tabindex", "disabled", "hidden", "aria-hidden", "role", "style", "class", "inert"}

ROUTE_DEBOUNCE_SECONDS = 0.05

# Stop walking up for a background after this many ancestors
MAX_BACKGROUND_DEPTH = 15

WHITE = RGBA(255, 255, 255)


def is_rendered(rect: Optional[Rect], style: Mapping[str, str]) -> bool:
    """Visible per the snapshot filter: non-zero box, displayed, not hidden, not transparent."""
    if rect is None or rect.area <= 0:
        return False
    if style.get("display", "") == "none":
        return False
    if style.get("visibility", "") in ("hidden", "collapse"):
        return False
    try:
        return float(style.get("opacity", "1") or 1) > 0
    except ValueError:
        return True


def is_significant(mutation: DomMutation) -> bool:
    """Drop pure text edits on non-interactive nodes and structural noise."""
    if mutation.kind == "characterData" or mutation.text_only:
        return mutation.interactive
    if mutation.kind == "childList":
        return mutation.interactive
    if mutation.kind == "attributes":
        return mutation.attribute in SIGNIFICANT_ATTRIBUTES
    return False


def _px(value: Optional[str]) -> float:
    try:
        return float((value or "0").strip().removesuffix("px") or 0)
    except ValueError:
        return 0.0


@dataclass(frozen=True)
class ElementDescriptor:
    selector: str
    tag: str
    tab_index: int
    computed_style: Mapping[str, str]
    rect: Rect
    in_viewport: bool
    attributes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    text: str = ""

    @property
    def focusable(self) -> bool:
        return self.tab_index >= 0

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "tag": self.tag,
            "tab_index": self.tab_index,
            "rect": self.rect.to_dict(),
            "in_viewport": self.in_viewport,
        }


@dataclass(frozen=True)
class PerceivedState:
    """One snapshot of the page. Superseded, never mutated."""

    url: str
    viewport: Viewport
    elements: tuple[ElementDescriptor, ...]
    active_element: Optional[str]
    # Interactive-looking elements that keyboard focus can never reach
    unreachable: tuple[ElementDescriptor, ...] = ()
    captured_at: datetime = field(default_factory=datetime.now)

    def find(self, selector: str) -> Optional[ElementDescriptor]:
        for element in self.elements + self.unreachable:
            if element.selector == selector:
                return element
        return None

    @property
    def selectors(self) -> list[str]:
        return [element.selector for element in self.elements]


@dataclass(frozen=True)
class FocusProbe:
    """Computed style of one element before and after it takes focus."""

    selector: str
    focused: bool
    indicator_present: bool
    changed_properties: tuple[str, ...]
    unfocused_style: Mapping[str, str]
    focused_style: Mapping[str, str]

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "focused": self.focused,
            "indicator_present": self.indicator_present,
            "changed_properties": list(self.changed_properties),
        }


@dataclass(frozen=True)
class ContrastMeasurement:
    selector: str
    foreground: RGBA
    background: RGBA
    ratio: float
    large_text: bool
    # Selector whose background was used; None means the page default (white)
    background_source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "ratio": round(self.ratio, 2),
            "large_text": self.large_text,
            "background_source": self.background_source,
        }


def _is_large_text(style: Mapping[str, str]) -> bool:
    """WCAG large text: 24px, or 18.66px (14pt) when bold."""
    size = _px(style.get("font-size"))
    weight = style.get("font-weight", "400")
    bold = weight in ("bold", "bolder") or (weight.isdigit() and int(weight) >= 700)
    return size >= 24 or (bold and size >= 18.66)


def _indicator_visible(prop: str, style: Mapping[str, str]) -> bool:
    if prop.startswith("outline"):
        return style.get("outline-style", "none") not in ("none", "hidden", "") and _px(style.get("outline-width")) > 0
    if prop == "box-shadow":
        return style.get("box-shadow", "none") not in ("none", "")
    if prop.startswith("border-"):
        side = prop.split("-")[1]
        return _px(style.get(f"border-{side}-width")) > 0
    if prop == "text-decoration-line":
        return style.get(prop, "none") != "none"
    return True


class PerceptionEngine:
    """
    Builds PerceivedState snapshots through a control channel and turns raw
    channel events into debounced, filtered listener callbacks.
    """

    def __init__(
        self,
        channel: ControlChannel,
        debounce_ms: int = DOM_DEBOUNCE_MS,
        queue_size: int = EVENT_QUEUE_SIZE,
        poll_interval: float = STABILITY_POLL_SECONDS,
    ):
        self._channel = channel
        self._poll_interval = poll_interval
        self._route_listeners: ListenerRegistry[str] = ListenerRegistry("route-change")
        self._dom_listeners: ListenerRegistry[list[DomMutation]] = ListenerRegistry("dom-change")
        self._route_debouncer: Debouncer[str] = Debouncer(ROUTE_DEBOUNCE_SECONDS, self._flush_routes, queue_size)
        self._dom_debouncer: Debouncer[DomMutation] = Debouncer(debounce_ms / 1000, self._flush_mutations, queue_size)
        self._last_route: Optional[str] = None
        self._route_unsubscribe: Optional[Unsubscribe] = None
        self._dom_unsubscribe: Optional[Unsubscribe] = None
        # Focus is page-global; probes and focus checks must not interleave
        self.focus_lock = asyncio.Lock()

    # ===== Snapshots =====

    async def snapshot(self) -> PerceivedState:
        url = await self._channel.current_url()
        viewport = await self._channel.viewport_size()
        selectors = await self._channel.query_selector_all(FOCUSABLE_SELECTOR)

        elements = []
        for selector in selectors:
            element = await self._describe(selector, viewport)
            if element is not None:
                elements.append(element)

        focusable = set(selectors)
        unreachable = []
        for selector in await self._channel.query_selector_all(INTERACTIVE_SELECTOR):
            if selector in focusable:
                continue
            element = await self._describe(selector, viewport)
            if element is not None and not element.focusable:
                unreachable.append(element)

        active = await self._channel.active_element()
        logger.debug(f"Snapshot of {url}: {len(elements)} focusable, {len(unreachable)} unreachable")
        return PerceivedState(
            url=url,
            viewport=viewport,
            elements=tuple(elements),
            active_element=active,
            unreachable=tuple(unreachable),
        )

    async def snapshot_element(self, selector: str) -> Optional[ElementDescriptor]:
        """Re-perceive a single element; None if it is gone or not rendered."""
        viewport = await self._channel.viewport_size()
        return await self._describe(selector, viewport)

    async def _describe(self, selector: str, viewport: Viewport) -> Optional[ElementDescriptor]:
        rect = await self._channel.bounding_rect(selector)
        if rect is None:
            return None
        try:
            style = await self._channel.computed_style(selector, SNAPSHOT_PROPERTIES)
        except ElementNotFound:
            return None
        if not is_rendered(rect, style):
            return None
        info = await self._channel.describe_element(selector)
        if info is None:
            return None
        return ElementDescriptor(
            selector=selector,
            tag=info.tag,
            tab_index=info.tab_index,
            computed_style=MappingProxyType(dict(style)),
            rect=rect,
            in_viewport=rect.intersects(viewport.width, viewport.height),
            attributes=MappingProxyType(dict(info.attributes)),
            text=info.text,
        )

    async def probe_focus_indicator(self, selector: str, restore_focus: bool = True) -> FocusProbe:
        """
        Compare an element's style unfocused and focused.

        A focus indicator is present when focusing changes at least one
        indicator property and the changed property is actually visible
        (e.g. an outline with a style and non-zero width).
        """
        async with self.focus_lock:
            previous = await self._channel.active_element()
            focused_ok = False
            try:
                await self._channel.blur()
                unfocused = await self._channel.computed_style(selector, FOCUS_INDICATOR_PROPERTIES)
                focused_ok = await self._channel.focus(selector)
                focused = await self._channel.computed_style(selector, FOCUS_INDICATOR_PROPERTIES)
            finally:
                if restore_focus:
                    if previous is None:
                        await self._channel.blur()
                    elif previous != selector or not focused_ok:
                        await self._channel.focus(previous)

        changed = tuple(p for p in FOCUS_INDICATOR_PROPERTIES if unfocused.get(p) != focused.get(p))
        indicator = focused_ok and any(_indicator_visible(p, focused) for p in changed)

        return FocusProbe(
            selector=selector,
            focused=focused_ok,
            indicator_present=indicator,
            changed_properties=changed,
            unfocused_style=MappingProxyType(dict(unfocused)),
            focused_style=MappingProxyType(dict(focused)),
        )

    async def contrast_of(self, selector: str) -> Optional[ContrastMeasurement]:
        """
        Measure the text contrast of an element.

        The background is the element's own background colour composited over
        its ancestors' until an opaque one is found; the page default is white.
        Returns None when the foreground colour cannot be parsed.
        """
        style = await self._channel.computed_style(selector, ("color", "background-color", "font-size", "font-weight"))
        foreground = parse_color(style.get("color"))
        if foreground is None:
            return None

        layers = []
        source = None
        current: Optional[str] = selector
        current_style = style
        depth = 0
        while current is not None and depth < MAX_BACKGROUND_DEPTH:
            background = parse_color(current_style.get("background-color"))
            if background is not None and background.a > 0:
                layers.append(background)
                if background.opaque:
                    source = current
                    break
            info = await self._channel.describe_element(current)
            current = info.parent_selector if info else None
            depth += 1
            if current is not None:
                current_style = await self._channel.computed_style(current, ("background-color",))

        composite = WHITE
        for layer in reversed(layers):
            composite = blend(layer, composite)

        return ContrastMeasurement(
            selector=selector,
            foreground=foreground,
            background=composite,
            ratio=contrast_ratio(foreground, composite),
            large_text=_is_large_text(style),
            background_source=source,
        )

    # ===== Listeners =====

    def add_route_change_listener(self, callback: Callable[[str], None]) -> Unsubscribe:
        if self._route_unsubscribe is None:
            self._route_unsubscribe = self._channel.on_route_change(self._route_debouncer.push)
        remove = self._route_listeners.add(callback)

        def unsubscribe():
            remove()
            if not len(self._route_listeners) and self._route_unsubscribe:
                self._route_unsubscribe()
                self._route_unsubscribe = None
        return unsubscribe

    def add_dom_change_listener(self, callback: Callable[[list[DomMutation]], None]) -> Unsubscribe:
        if self._dom_unsubscribe is None:
            self._dom_unsubscribe = self._channel.on_dom_mutation(self._on_mutations)
        remove = self._dom_listeners.add(callback)

        def unsubscribe():
            remove()
            if not len(self._dom_listeners) and self._dom_unsubscribe:
                self._dom_unsubscribe()
                self._dom_unsubscribe = None
        return unsubscribe

    def _on_mutations(self, mutations: list[DomMutation]):
        for mutation in mutations:
            self._dom_debouncer.push(mutation)

    def _flush_mutations(self, batch: list[DomMutation]):
        significant = [m for m in batch if is_significant(m)]
        if not significant:
            logger.debug(f"Ignored {len(batch)} insignificant DOM mutations")
            return
        logger.debug(f"DOM change: {len(significant)} significant of {len(batch)} mutations")
        self._dom_listeners.emit(significant)

    def _flush_routes(self, batch: list[str]):
        for url in batch:
            if url == self._last_route:
                continue
            self._last_route = url
            logger.info(f"Route change: {url}")
            self._route_listeners.emit(url)

    # ===== Stability =====

    async def wait_for_stability(self, timeout: float = STABILITY_TIMEOUT_SECONDS) -> bool:
        """
        Wait until the page stops loading.

        Returns True once the loading predicate is false for two consecutive
        polls, False if the timeout elapses first. A timeout is not an error;
        callers go ahead with whatever the page shows.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        quiet_polls = 0
        while True:
            loading = await self._channel.is_loading() or self._dom_debouncer.pending
            quiet_polls = 0 if loading else quiet_polls + 1
            if quiet_polls >= 2:
                return True
            if loop.time() >= deadline:
                logger.warning(f"Page not stable after {timeout:.1f}s, continuing anyway")
                return False
            await asyncio.sleep(self._poll_interval)

    async def close(self):
        if self._route_unsubscribe:
            self._route_unsubscribe()
            self._route_unsubscribe = None
        if self._dom_unsubscribe:
            self._dom_unsubscribe()
            self._dom_unsubscribe = None
        await self._route_debouncer.close()
        await self._dom_debouncer.close()
