"""Executes the actions of an ActionPlan against a page."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from a11y_bot.browser.channel import ControlChannel
from a11y_bot.browser.keyboard import KeyboardSimulator
from a11y_bot.browser.pointer import PointerSimulator
from a11y_bot.errors import ActionError, ActionTimeout, ElementNotFound, UnsupportedAction
from a11y_bot.perception.engine import PerceptionEngine
from a11y_bot.planning.task import Action, ActionPlan, ActionType


logger = logging.getLogger(__name__)


class SideEffectKind(str, Enum):
    DOM_CHANGE = "dom-change"
    FOCUS_CHANGE = "focus-change"
    STYLE_CHANGE = "style-change"
    NAVIGATION = "navigation"


@dataclass(frozen=True)
class SideEffect:
    kind: SideEffectKind
    reversible: bool = True
    description: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "reversible": self.reversible, "description": self.description}


@dataclass
class ActionResult:
    """Outcome of one executed Action."""

    success: bool
    duration: float = 0.0
    output: Any = None
    side_effects: list[SideEffect] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def needs_reperception(self) -> bool:
        return any(effect.kind in (SideEffectKind.DOM_CHANGE, SideEffectKind.NAVIGATION) for effect in self.side_effects)

    def to_dict(self) -> dict:
        output = self.output.to_dict() if hasattr(self.output, "to_dict") else self.output
        return {
            "success": self.success,
            "duration": round(self.duration, 3),
            "output": output,
            "side_effects": [effect.to_dict() for effect in self.side_effects],
            "error": self.error,
            "error_code": self.error_code,
        }


class ActionExecutor(ABC):
    """Runs single actions. The PRAR loop decides which ones and in what order."""

    @abstractmethod
    async def execute(self, plan: ActionPlan) -> ActionResult:
        """
        Run the plan's primary action within the plan's timeout.

        Fallbacks are the coordinator's call: it retries with
        ``plan.with_primary(fallback)``.

        Action errors come back as a failed ActionResult. Session errors are
        raised, since no fallback can recover from them.
        """

    @abstractmethod
    def can_execute(self, action_type: ActionType) -> bool:
        pass


class ChannelActionExecutor(ActionExecutor):
    """Executes actions through the control channel and the interaction simulators."""

    SUPPORTED = frozenset(ActionType)

    def __init__(
        self,
        channel: ControlChannel,
        keyboard: KeyboardSimulator,
        pointer: PointerSimulator,
        perception: PerceptionEngine,
    ):
        self._channel = channel
        self._keyboard = keyboard
        self._pointer = pointer
        self._perception = perception

    def can_execute(self, action_type: ActionType) -> bool:
        if action_type not in self.SUPPORTED:
            return False
        if action_type in (ActionType.CLICK, ActionType.TYPE, ActionType.KEYBOARD):
            return self._channel.is_attached and self._channel.capabilities.can_simulate_input
        return True

    async def execute(self, plan: ActionPlan) -> ActionResult:
        action = plan.primary
        timeout = plan.timeout
        started = time.monotonic()
        if not self.can_execute(action.type):
            error = UnsupportedAction(f"Cannot execute {action.type.value} on this session")
            return ActionResult(False, 0.0, error=str(error), error_code=error.code)

        logger.debug(f"Executing {action.type.value} {action.target or ''} {action.parameters}")
        try:
            output, effects = await asyncio.wait_for(self._dispatch(action), timeout=timeout)
        except asyncio.TimeoutError:
            error = ActionTimeout(action.type.value, timeout)
            logger.warning(str(error))
            return ActionResult(False, time.monotonic() - started, error=str(error), error_code=error.code)
        except ActionError as e:
            logger.debug(f"{action.type.value} failed: {e}")
            return ActionResult(False, time.monotonic() - started, error=str(e), error_code=e.code)

        return ActionResult(True, time.monotonic() - started, output=output, side_effects=effects)

    async def _dispatch(self, action: Action) -> tuple[Any, list[SideEffect]]:
        params = action.parameters
        target = action.target

        if action.type == ActionType.NAVIGATE:
            await self._channel.navigate(params["url"])
            self._pointer.invalidate_keyboard_path()
            return params["url"], [SideEffect(SideEffectKind.NAVIGATION, reversible=False, description=params["url"])]

        if action.type == ActionType.CLICK:
            result = await self._pointer.click(target, check_keyboard=params.get("check_keyboard", False))
            if not result.success:
                raise ElementNotFound(target)
            effects = [SideEffect(SideEffectKind.DOM_CHANGE, reversible=False, description=f"click {target}")]
            if result.focus_changed:
                effects.append(SideEffect(SideEffectKind.FOCUS_CHANGE))
            return result, effects

        if action.type == ActionType.TYPE:
            await self._focus(target)
            await self._channel.type_text(params.get("text", ""))
            return None, [SideEffect(SideEffectKind.FOCUS_CHANGE), SideEffect(SideEffectKind.DOM_CHANGE, description=f"typed into {target}")]

        if action.type == ActionType.FOCUS:
            await self._focus(target)
            return target, [SideEffect(SideEffectKind.FOCUS_CHANGE)]

        if action.type == ActionType.KEYBOARD:
            return await self._keyboard_action(action)

        if action.type == ActionType.WAIT:
            await asyncio.sleep(float(params.get("seconds", 1.0)))
            return None, []

        if action.type == ActionType.VERIFY:
            if target is None:
                raise ActionError("verify needs a target")
            probe = await self._perception.probe_focus_indicator(target, restore_focus=False)
            return probe, [SideEffect(SideEffectKind.FOCUS_CHANGE)]

        raise UnsupportedAction(f"Unknown action type {action.type}")

    async def _focus(self, target: Optional[str]) -> None:
        if target is None:
            raise ActionError("focus needs a target")
        if not await self._channel.focus(target):
            raise ActionError(f"{target} did not take focus")

    async def _keyboard_action(self, action: Action) -> tuple[Any, list[SideEffect]]:
        params = action.parameters
        target = action.target

        if params.get("walk"):
            result = await self._keyboard.walk_focus_order(
                max_steps=int(params.get("max_steps", 50)),
                direction=params.get("direction", "forward"),
            )
            return result, [SideEffect(SideEffectKind.FOCUS_CHANGE)]

        if params.get("seek"):
            if target is None:
                raise ActionError("seek needs a target")
            if not await self._keyboard.seek(target):
                raise ActionError(f"{target} is not reachable with Tab")
            effects = [SideEffect(SideEffectKind.FOCUS_CHANGE)]
            if params.get("text"):
                await self._channel.type_text(params["text"])
                effects.append(SideEffect(SideEffectKind.DOM_CHANGE, description=f"typed into {target}"))
            return target, effects

        if target is not None:
            await self._focus(target)
        key = params.get("key", "Tab")
        await self._keyboard.simulate_key_sequence([key])
        effects = [SideEffect(SideEffectKind.FOCUS_CHANGE)]
        if key in ("Enter", " ", "Space"):
            effects.append(SideEffect(SideEffectKind.DOM_CHANGE, reversible=False, description=f"{key} on {target}"))
        return key, effects
