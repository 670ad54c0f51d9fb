from .channel import (
    Capabilities,
    ControlChannel,
    DomMutation,
    ElementInfo,
    Rect,
    Session,
    Viewport,
)
from .controller import PlaywrightControlChannel
from .keyboard import FocusNavigationResult, FocusState, FocusTrap, KeyboardSimulator
from .pointer import InteractionResult, PointerSimulator
from .session_pool import SessionPool

__all__ = [
    "Capabilities",
    "ControlChannel",
    "DomMutation",
    "ElementInfo",
    "Rect",
    "Session",
    "Viewport",
    "PlaywrightControlChannel",
    "FocusNavigationResult",
    "FocusState",
    "FocusTrap",
    "KeyboardSimulator",
    "InteractionResult",
    "PointerSimulator",
    "SessionPool",
]
