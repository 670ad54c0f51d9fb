"""Control-channel contract shared by the Playwright channel and test doubles.

A channel is attached to exactly one tab. Every primitive is async and goes
through ``channel_operation``, which rejects calls on a missing or lost
session and serialises calls so only one primitive is in flight at a time.
"""

import asyncio
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from a11y_bot.errors import PermissionDenied, SessionLost, SessionUnavailable


Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class Rect:
    """Bounding box in CSS pixels, relative to the viewport."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def intersects(self, width: float, height: float) -> bool:
        """True if any part of the box lies inside a width x height viewport."""
        return (
            self.x < width and self.y < height
            and self.x + self.width > 0 and self.y + self.height > 0
        )

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class Viewport:
    width: int
    height: int


@dataclass(frozen=True)
class Capabilities:
    """What the attached session supports. Negotiated once per attach."""

    can_simulate_input: bool = False
    can_inject_style: bool = False
    can_modify_dom: bool = False
    can_capture_screenshots: bool = False

    def to_dict(self) -> dict:
        return {
            "can_simulate_input": self.can_simulate_input,
            "can_inject_style": self.can_inject_style,
            "can_modify_dom": self.can_modify_dom,
            "can_capture_screenshots": self.can_capture_screenshots,
        }


@dataclass(frozen=True)
class Session:
    session_id: str
    tab_id: int
    url: str
    capabilities: Capabilities
    attached_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ElementInfo:
    """Static description of one element, as reported by the page."""

    selector: str
    tag: str
    tab_index: int
    attributes: dict = field(default_factory=dict)
    text: str = ""
    parent_selector: Optional[str] = None
    sibling_count: int = 0
    ancestor_tags: tuple[str, ...] = ()
    has_label: bool = False  # Associated <label> element

    @property
    def role(self) -> Optional[str]:
        return self.attributes.get("role")

    @property
    def in_form(self) -> bool:
        return "form" in self.ancestor_tags

    @property
    def in_navigation(self) -> bool:
        return "nav" in self.ancestor_tags or self.attributes.get("role") == "navigation"


@dataclass(frozen=True)
class DomMutation:
    """One raw mutation record forwarded from the page."""

    kind: str  # "childList", "attributes", "characterData"
    selector: str
    tag: str = ""
    interactive: bool = False  # Target is, or contains, an interactive element
    attribute: Optional[str] = None
    text_only: bool = False


def channel_operation(func=None, *, capability: Optional[str] = None):
    """Guard a channel primitive.

    Rejects the call when no session is attached or the session is lost,
    optionally checks a capability flag, and holds the channel's operation
    lock for the duration of the call.
    """
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self, *args, **kwargs):
            self._ensure_session()
            if capability and not getattr(self.capabilities, capability):
                raise PermissionDenied(capability)
            async with self._op_lock:
                # Session may have been lost while we waited for the lock
                self._ensure_session()
                return await method(self, *args, **kwargs)
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


class ControlChannel(ABC):
    """Session-scoped client for the remote device-control protocol."""

    def __init__(self):
        self._session: Optional[Session] = None
        self._lost_reason: Optional[str] = None
        self._op_lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_attached(self) -> bool:
        return self._session is not None and self._lost_reason is None

    @property
    def capabilities(self) -> Capabilities:
        if self._session is None:
            raise SessionUnavailable("No session attached")
        return self._session.capabilities

    def _ensure_session(self) -> None:
        if self._session is None:
            raise SessionUnavailable("No session attached")
        if self._lost_reason is not None:
            raise SessionLost(self._lost_reason)

    def _mark_lost(self, reason: str) -> None:
        if self._lost_reason is None:
            self._lost_reason = reason

    # ===== Session =====

    @abstractmethod
    async def connect(self, tab_id: int) -> Session:
        """Attach to a tab. Fails with SessionUnavailable."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    # ===== Input =====

    @abstractmethod
    async def press_key(self, key: str, modifiers: Sequence[str] = ()) -> None:
        pass

    async def key_sequence(self, keys: Sequence[str], delay: float = 0.05) -> None:
        """Press keys one after another with a short pause between them.

        Keys may carry modifiers in Playwright notation, e.g. ``"Shift+Tab"``.
        """
        for index, key in enumerate(keys):
            *modifiers, name = key.split("+") if len(key) > 1 else [key]
            await self.press_key(name, tuple(modifiers))
            if delay and index < len(keys) - 1:
                await asyncio.sleep(delay)

    @abstractmethod
    async def type_text(self, text: str) -> None:
        pass

    @abstractmethod
    async def mouse_click(self, x: float, y: float, button: str = "left") -> None:
        pass

    @abstractmethod
    async def mouse_move(self, x: float, y: float) -> None:
        pass

    @abstractmethod
    async def drag(self, start: tuple[float, float], end: tuple[float, float]) -> None:
        pass

    @abstractmethod
    async def tap(self, x: float, y: float) -> None:
        pass

    @abstractmethod
    async def swipe(self, start: tuple[float, float], end: tuple[float, float], steps: int = 8) -> None:
        pass

    # ===== Introspection =====

    @abstractmethod
    async def query_selector_all(self, selector: str) -> list[str]:
        """Return a unique selector for every matching element, in document order."""
        pass

    async def query_selector(self, selector: str) -> Optional[str]:
        matches = await self.query_selector_all(selector)
        return matches[0] if matches else None

    @abstractmethod
    async def describe_element(self, selector: str) -> Optional[ElementInfo]:
        pass

    @abstractmethod
    async def computed_style(self, selector: str, properties: Sequence[str]) -> dict[str, str]:
        pass

    @abstractmethod
    async def bounding_rect(self, selector: str) -> Optional[Rect]:
        pass

    @abstractmethod
    async def active_element(self) -> Optional[str]:
        """Selector of the focused element, or None when focus is on the body."""
        pass

    @abstractmethod
    async def viewport_size(self) -> Viewport:
        pass

    @abstractmethod
    async def focus(self, selector: str) -> bool:
        pass

    @abstractmethod
    async def blur(self) -> None:
        pass

    # ===== Page =====

    @abstractmethod
    async def navigate(self, url: str) -> None:
        pass

    @abstractmethod
    async def current_url(self) -> str:
        pass

    @abstractmethod
    async def is_loading(self) -> bool:
        pass

    @abstractmethod
    async def screenshot(self, selector: Optional[str] = None) -> bytes:
        pass

    # ===== Style =====

    @abstractmethod
    async def add_style_sheet(self, css: str) -> str:
        """Create a dedicated style sheet and return its id."""
        pass

    @abstractmethod
    async def remove_style_sheet(self, sheet_id: str) -> None:
        pass

    @abstractmethod
    async def insert_rules(self, owner_id: str, rules: Sequence[str]) -> str:
        """Insert rules one by one into a sheet owned by owner_id; return a handle."""
        pass

    @abstractmethod
    async def remove_rules(self, handle: str) -> None:
        pass

    @abstractmethod
    async def set_inline_style(self, selector: str, declarations: dict[str, str]) -> dict[str, str]:
        """Apply inline declarations and return the previous inline values."""
        pass

    @abstractmethod
    async def restore_inline_style(self, selector: str, previous: dict[str, str]) -> None:
        pass

    @abstractmethod
    async def set_attribute(self, selector: str, name: str, value: str) -> Optional[str]:
        """Set an attribute and return its previous value (None if absent)."""
        pass

    @abstractmethod
    async def remove_attribute(self, selector: str, name: str) -> None:
        pass

    @abstractmethod
    async def count_style_rules(self) -> int:
        pass

    # ===== Events =====

    @abstractmethod
    def on_route_change(self, callback: Callable[[str], None]) -> Unsubscribe:
        pass

    @abstractmethod
    def on_dom_mutation(self, callback: Callable[[list[DomMutation]], None]) -> Unsubscribe:
        pass
