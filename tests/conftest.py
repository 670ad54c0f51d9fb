"""Shared fixtures: an in-memory page behind the ControlChannel interface."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import pytest
import pytest_asyncio

from a11y_bot.browser.channel import (
    Capabilities,
    ControlChannel,
    DomMutation,
    ElementInfo,
    Rect,
    Session,
    Viewport,
    channel_operation,
)
from a11y_bot.browser.keyboard import KeyboardSimulator
from a11y_bot.browser.pointer import PointerSimulator
from a11y_bot.browser.scripts import FOCUSABLE_SELECTOR, INTERACTIVE_SELECTOR
from a11y_bot.errors import ElementNotFound, SessionUnavailable
from a11y_bot.perception.engine import PerceptionEngine


NATIVE_FOCUSABLE = {"a", "button", "input", "select", "textarea", "summary"}

DEFAULT_STYLE = {
    "display": "inline-block",
    "visibility": "visible",
    "opacity": "1",
    "outline-style": "none",
    "outline-width": "0px",
    "outline-color": "rgb(0, 0, 0)",
    "outline-offset": "0px",
    "box-shadow": "none",
    "border-top-color": "rgb(0, 0, 0)",
    "border-right-color": "rgb(0, 0, 0)",
    "border-bottom-color": "rgb(0, 0, 0)",
    "border-left-color": "rgb(0, 0, 0)",
    "border-top-width": "0px",
    "border-right-width": "0px",
    "border-bottom-width": "0px",
    "border-left-width": "0px",
    "background-color": "rgba(0, 0, 0, 0)",
    "text-decoration-line": "none",
    "color": "rgb(0, 0, 0)",
    "font-size": "16px",
    "font-weight": "400",
}

_RULE = re.compile(r"([^{}]+)\{([^{}]*)\}")

OUTLINE_STYLES = {"none", "hidden", "auto", "solid", "dashed", "dotted", "double", "groove", "ridge", "inset", "outset"}


def _expand(name: str, value: str) -> dict[str, str]:
    """Expand the outline shorthand into longhands, as computed style reports them."""
    if name != "outline":
        return {name: value}
    expanded = {}
    for part in value.split():
        if part in OUTLINE_STYLES:
            expanded["outline-style"] = part
        elif part[0].isdigit():
            expanded["outline-width"] = part
        else:
            expanded["outline-color"] = part
    return expanded


@dataclass
class FakeElement:
    selector: str
    tag: str = "button"
    text: str = ""
    attributes: dict = field(default_factory=dict)
    style: dict = field(default_factory=dict)
    # Style the browser itself applies while the element is focused
    focus_style: dict = field(default_factory=dict)
    rect: Rect = field(default_factory=lambda: Rect(10, 10, 120, 32))
    parent: Optional[str] = None
    ancestors: tuple[str, ...] = ("body",)
    has_label: bool = False
    # Shows up in the interactive query even without being focusable (onclick div)
    interactive: bool = True

    @property
    def tab_index(self) -> int:
        if "tabindex" in self.attributes:
            return int(self.attributes["tabindex"])
        if self.tag == "a" and "href" not in self.attributes:
            return -1
        return 0 if self.tag in NATIVE_FOCUSABLE else -1

    @property
    def can_focus(self) -> bool:
        return "tabindex" in self.attributes or self.tab_index >= 0


def _parse_rules(css: str) -> list[tuple[str, bool, dict[str, tuple[str, bool]]]]:
    """[(selector, focus_only, {prop: (value, important)})]"""
    parsed = []
    for selectors, body in _RULE.findall(css):
        declarations = {}
        for declaration in body.split(";"):
            if ":" not in declaration:
                continue
            name, _, value = declaration.partition(":")
            value = value.strip()
            important = value.endswith("!important")
            for longhand, longhand_value in _expand(name.strip(), value.removesuffix("!important").strip()).items():
                declarations[longhand] = (longhand_value, important)
        for selector in selectors.split(","):
            selector = selector.strip()
            focus_only = False
            for pseudo in (":focus-visible", ":focus"):
                if selector.endswith(pseudo):
                    selector = selector[: -len(pseudo)]
                    focus_only = True
                    break
            parsed.append((selector, focus_only, declarations))
    return parsed


class FakeControlChannel(ControlChannel):
    """
    In-memory page model.

    Tab order is document order over focusable elements; ``next_focus``
    overrides where Tab goes from a given element, which is how tests build
    focus traps. Computed styles combine defaults, element style, the
    element's own focus style, matching rules from injected sheets and inline
    styles, with ``!important`` sheet declarations winning over inline ones.
    """

    def __init__(
        self,
        elements: Sequence[FakeElement] = (),
        url: str = "https://example.test/",
        capabilities: Optional[Capabilities] = None,
        tabs: Sequence[int] = (0,),
        registry: Optional[set] = None,
    ):
        super().__init__()
        self.elements: dict[str, FakeElement] = {element.selector: element for element in elements}
        self.url = url
        self.granted = capabilities or Capabilities(True, True, True, True)
        self.tabs = set(tabs)
        self.registry = registry if registry is not None else set()
        self.body_style = {"background-color": "rgb(255, 255, 255)", "color": "rgb(0, 0, 0)"}
        self.active: Optional[str] = None
        self.next_focus: dict[str, str] = {}

        self.sheets: dict[str, str] = {}
        self.rule_sets: dict[str, list[str]] = {}
        self.inline: dict[str, dict[str, str]] = {}
        self.typed: dict[str, str] = {}

        self.keys: list[str] = []
        self.clicks: list[tuple[float, float]] = []
        self.taps: list[tuple[float, float]] = []
        self.drags: list[tuple] = []
        self.swipes: list[tuple] = []
        self.activations: list[Optional[str]] = []
        self.navigations: list[str] = []

        # Failure injection
        self.reject_strategies: set[str] = set()
        self.fail_remove: set[str] = set()
        self.fail_attributes: set[str] = set()
        self.loading_polls = 0
        self.op_delay = 0.0
        self.on_operation: Optional[Callable[[str], None]] = None

        self.operations: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0
        self._route_callbacks: list[Callable[[str], None]] = []
        self._mutation_callbacks: list[Callable[[list[DomMutation]], None]] = []

    # ===== Helpers =====

    async def _op(self, name: str) -> None:
        self.operations.append(name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_operation:
                self.on_operation(name)
            if self.op_delay:
                await asyncio.sleep(self.op_delay)
        finally:
            self.in_flight -= 1
        self._ensure_session()

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def _element(self, selector: str) -> FakeElement:
        element = self.elements.get(selector)
        if element is None:
            raise ElementNotFound(selector)
        return element

    def lose(self, reason: str = "Target closed") -> None:
        self._mark_lost(reason)

    def emit_route(self, url: str) -> None:
        for callback in list(self._route_callbacks):
            callback(url)

    def emit_mutations(self, mutations: list[DomMutation]) -> None:
        for callback in list(self._mutation_callbacks):
            callback(mutations)

    def tab_order(self) -> list[str]:
        return [
            element.selector for element in self.elements.values()
            if element.tab_index >= 0 and element.style.get("display") != "none"
        ]

    def style_of(self, selector: str, focused: Optional[bool] = None) -> dict[str, str]:
        element = self._element(selector)
        focused = (self.active == selector) if focused is None else focused
        style = dict(DEFAULT_STYLE)
        style.update(element.style)
        if focused:
            style.update(element.focus_style)

        important: dict[str, str] = {}
        rules = [css for css in self.sheets.values()]
        rules.extend(rule for rule_set in self.rule_sets.values() for rule in rule_set)
        for css in rules:
            for rule_selector, focus_only, declarations in _parse_rules(css):
                if rule_selector != selector or (focus_only and not focused):
                    continue
                for name, (value, is_important) in declarations.items():
                    if is_important:
                        important[name] = value
                    else:
                        style[name] = value
        style.update(self.inline.get(selector, {}))
        style.update(important)
        return style

    def _element_at(self, x: float, y: float) -> Optional[FakeElement]:
        hit = None
        for element in self.elements.values():
            rect = element.rect
            if rect.x <= x <= rect.x + rect.width and rect.y <= y <= rect.y + rect.height:
                hit = element
        return hit

    # ===== Session =====

    async def connect(self, tab_id: int) -> Session:
        if self._session is not None:
            raise SessionUnavailable("Channel already attached; disconnect first")
        if tab_id not in self.tabs:
            raise SessionUnavailable(f"No tab with id {tab_id}")
        if tab_id in self.registry:
            raise SessionUnavailable(f"Tab {tab_id} is already attached")
        self.registry.add(tab_id)
        self._lost_reason = None
        self._session = Session(
            session_id=self._next_id("session"),
            tab_id=tab_id,
            url=self.url,
            capabilities=self.granted,
        )
        return self._session

    async def disconnect(self) -> None:
        if self._session is None:
            return
        self.registry.discard(self._session.tab_id)
        self._session = None
        self._route_callbacks.clear()
        self._mutation_callbacks.clear()

    # ===== Input =====

    @channel_operation(capability="can_simulate_input")
    async def press_key(self, key: str, modifiers: Sequence[str] = ()) -> None:
        await self._op("press_key")
        self.keys.append("+".join(list(modifiers) + [key]))
        if key == "Tab":
            if self.active in self.next_focus and "Shift" not in modifiers:
                self.active = self.next_focus[self.active]
                return
            order = self.tab_order()
            if "Shift" in modifiers:
                order = order[::-1]
            if self.active not in order:
                self.active = order[0] if order else None
            else:
                index = order.index(self.active) + 1
                self.active = order[index] if index < len(order) else None
        elif key in ("Enter", " ", "Space"):
            self.activations.append(self.active)

    @channel_operation(capability="can_simulate_input")
    async def type_text(self, text: str) -> None:
        await self._op("type_text")
        if self.active is not None:
            self.typed[self.active] = self.typed.get(self.active, "") + text

    @channel_operation(capability="can_simulate_input")
    async def mouse_click(self, x: float, y: float, button: str = "left") -> None:
        await self._op("mouse_click")
        self.clicks.append((x, y))
        element = self._element_at(x, y)
        self.active = element.selector if element is not None and element.can_focus else None

    @channel_operation(capability="can_simulate_input")
    async def mouse_move(self, x: float, y: float) -> None:
        await self._op("mouse_move")

    @channel_operation(capability="can_simulate_input")
    async def drag(self, start: tuple[float, float], end: tuple[float, float]) -> None:
        await self._op("drag")
        self.drags.append((start, end))

    @channel_operation(capability="can_simulate_input")
    async def tap(self, x: float, y: float) -> None:
        await self._op("tap")
        self.taps.append((x, y))
        element = self._element_at(x, y)
        if element is not None and element.can_focus:
            self.active = element.selector

    @channel_operation(capability="can_simulate_input")
    async def swipe(self, start: tuple[float, float], end: tuple[float, float], steps: int = 8) -> None:
        await self._op("swipe")
        self.swipes.append((start, end))

    # ===== Introspection =====

    @channel_operation
    async def query_selector_all(self, selector: str) -> list[str]:
        await self._op("query_selector_all")
        if selector == FOCUSABLE_SELECTOR:
            return [e.selector for e in self.elements.values() if e.tab_index >= 0]
        if selector == INTERACTIVE_SELECTOR:
            return [e.selector for e in self.elements.values() if e.tab_index >= 0 or e.interactive]
        return [e.selector for e in self.elements.values() if selector in (e.selector, e.tag)]

    @channel_operation
    async def describe_element(self, selector: str) -> Optional[ElementInfo]:
        await self._op("describe_element")
        element = self.elements.get(selector)
        if element is None:
            return None
        siblings = [e for e in self.elements.values() if e.parent == element.parent and e is not element]
        return ElementInfo(
            selector=selector,
            tag=element.tag,
            tab_index=element.tab_index,
            attributes=dict(element.attributes),
            text=element.text,
            parent_selector=element.parent,
            sibling_count=len(siblings),
            ancestor_tags=element.ancestors,
            has_label=element.has_label,
        )

    @channel_operation
    async def computed_style(self, selector: str, properties: Sequence[str]) -> dict[str, str]:
        await self._op("computed_style")
        if selector == "body" and selector not in self.elements:
            return {name: self.body_style.get(name, DEFAULT_STYLE.get(name, "")) for name in properties}
        style = self.style_of(selector)
        return {name: style.get(name, "") for name in properties}

    @channel_operation
    async def bounding_rect(self, selector: str) -> Optional[Rect]:
        await self._op("bounding_rect")
        element = self.elements.get(selector)
        return element.rect if element else None

    @channel_operation
    async def active_element(self) -> Optional[str]:
        await self._op("active_element")
        return self.active

    @channel_operation
    async def viewport_size(self) -> Viewport:
        await self._op("viewport_size")
        return Viewport(1280, 720)

    @channel_operation
    async def focus(self, selector: str) -> bool:
        await self._op("focus")
        element = self.elements.get(selector)
        if element is None or not element.can_focus:
            return False
        self.active = selector
        return True

    @channel_operation
    async def blur(self) -> None:
        await self._op("blur")
        self.active = None

    # ===== Page =====

    @channel_operation
    async def navigate(self, url: str) -> None:
        await self._op("navigate")
        self.url = url
        self.navigations.append(url)
        self.active = None
        self.emit_route(url)

    @channel_operation
    async def current_url(self) -> str:
        await self._op("current_url")
        return self.url

    @channel_operation
    async def is_loading(self) -> bool:
        await self._op("is_loading")
        if self.loading_polls > 0:
            self.loading_polls -= 1
            return True
        return False

    @channel_operation(capability="can_capture_screenshots")
    async def screenshot(self, selector: Optional[str] = None) -> bytes:
        await self._op("screenshot")
        return f"png:{selector or 'page'}:{len(self.sheets) + len(self.rule_sets)}".encode()

    # ===== Style =====

    @channel_operation(capability="can_inject_style")
    async def add_style_sheet(self, css: str) -> str:
        await self._op("add_style_sheet")
        if "stylesheet" in self.reject_strategies:
            raise RuntimeError("Protocol error (CSS.createStyleSheet): CSS agent is not enabled")
        sheet_id = self._next_id("sheet")
        self.sheets[sheet_id] = css
        return sheet_id

    @channel_operation(capability="can_inject_style")
    async def remove_style_sheet(self, sheet_id: str) -> None:
        await self._op("remove_style_sheet")
        if sheet_id in self.fail_remove:
            raise RuntimeError(f"Could not remove {sheet_id}")
        self.sheets.pop(sheet_id, None)

    @channel_operation(capability="can_modify_dom")
    async def insert_rules(self, owner_id: str, rules: Sequence[str]) -> str:
        await self._op("insert_rules")
        if "rule" in self.reject_strategies:
            raise RuntimeError("SecurityError: Failed to read the 'cssRules' property")
        handle = self._next_id(f"rules-{owner_id}")
        self.rule_sets[handle] = list(rules)
        return handle

    @channel_operation(capability="can_modify_dom")
    async def remove_rules(self, handle: str) -> None:
        await self._op("remove_rules")
        if handle in self.fail_remove:
            raise RuntimeError(f"Could not remove {handle}")
        self.rule_sets.pop(handle, None)

    @channel_operation(capability="can_modify_dom")
    async def set_inline_style(self, selector: str, declarations: dict[str, str]) -> dict[str, str]:
        await self._op("set_inline_style")
        if "inline" in self.reject_strategies:
            raise RuntimeError("Refused to apply inline style because it violates the Content Security Policy")
        self._element(selector)
        inline = self.inline.setdefault(selector, {})
        previous = {name: inline.get(name, "") for name in declarations}
        inline.update(declarations)
        return previous

    @channel_operation(capability="can_modify_dom")
    async def restore_inline_style(self, selector: str, previous: dict[str, str]) -> None:
        await self._op("restore_inline_style")
        if selector in self.fail_remove:
            raise RuntimeError(f"Could not restore inline style of {selector}")
        inline = self.inline.setdefault(selector, {})
        for name, value in previous.items():
            if value:
                inline[name] = value
            else:
                inline.pop(name, None)
        if not inline:
            del self.inline[selector]

    @channel_operation(capability="can_modify_dom")
    async def set_attribute(self, selector: str, name: str, value: str) -> Optional[str]:
        await self._op("set_attribute")
        if name in self.fail_attributes:
            raise RuntimeError(f"Element not found: {selector}")
        element = self._element(selector)
        previous = element.attributes.get(name)
        element.attributes[name] = value
        return previous

    @channel_operation(capability="can_modify_dom")
    async def remove_attribute(self, selector: str, name: str) -> None:
        await self._op("remove_attribute")
        self._element(selector).attributes.pop(name, None)

    @channel_operation
    async def count_style_rules(self) -> int:
        await self._op("count_style_rules")
        sheet_rules = sum(len(_RULE.findall(css)) for css in self.sheets.values())
        return sheet_rules + sum(len(rules) for rules in self.rule_sets.values())

    # ===== Events =====

    def on_route_change(self, callback: Callable[[str], None]):
        self._route_callbacks.append(callback)

        def unsubscribe():
            if callback in self._route_callbacks:
                self._route_callbacks.remove(callback)
        return unsubscribe

    def on_dom_mutation(self, callback: Callable[[list[DomMutation]], None]):
        self._mutation_callbacks.append(callback)

        def unsubscribe():
            if callback in self._mutation_callbacks:
                self._mutation_callbacks.remove(callback)
        return unsubscribe


# ===== Page builders =====

def nav_page() -> list[FakeElement]:
    """Header link, two buttons without focus styles, a text field, and a mouse-only div."""
    return [
        FakeElement("#home", tag="a", text="Home", attributes={"href": "/"}, ancestors=("body", "nav"),
                    focus_style={"outline-style": "auto", "outline-width": "1px"}),
        FakeElement("#save", text="Save", rect=Rect(10, 60, 120, 32)),
        FakeElement("#cancel", text="Cancel", rect=Rect(140, 60, 120, 32)),
        FakeElement("#email", tag="input", attributes={"type": "email", "placeholder": "Email"},
                    rect=Rect(10, 110, 240, 32), ancestors=("body", "form"),
                    focus_style={"box-shadow": "0 0 0 2px rgb(0, 95, 204)"}),
        FakeElement("#menu", tag="div", text="Menu", attributes={"onclick": "open()"}, rect=Rect(10, 160, 120, 32)),
    ]


@pytest.fixture
def channel_factory():
    async def make(elements: Sequence[FakeElement] = (), **kwargs) -> FakeControlChannel:
        channel = FakeControlChannel(elements, **kwargs)
        await channel.connect(0)
        return channel
    return make


@pytest_asyncio.fixture
async def channel(channel_factory) -> FakeControlChannel:
    return await channel_factory(nav_page())


@pytest.fixture
def perception(channel) -> PerceptionEngine:
    return PerceptionEngine(channel, poll_interval=0.01)


@pytest.fixture
def keyboard(channel) -> KeyboardSimulator:
    return KeyboardSimulator(channel, key_delay=0)


@pytest.fixture
def pointer(channel, keyboard) -> PointerSimulator:
    return PointerSimulator(channel, keyboard)
