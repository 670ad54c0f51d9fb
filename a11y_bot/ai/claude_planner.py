import asyncio
import json
import logging
import random
import re
from typing import Literal, Optional

from anthropic import AsyncAnthropic, RateLimitError, APIError, APIConnectionError, APITimeoutError
from pydantic import BaseModel, Field, ValidationError

from a11y_bot.config import DEFAULT_MODEL
from a11y_bot.perception.engine import PerceivedState
from a11y_bot.planning.planner import MAX_FALLBACKS, RulePlanner
from a11y_bot.planning.task import Action, ActionPlan, ActionType, SubTask, SubTaskKind
from .prompts import PLANNER_SYSTEM_PROMPT, get_planner_step_prompt

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 5
INITIAL_BACKOFF = 2.0  # seconds
MAX_BACKOFF = 60.0  # seconds
BACKOFF_MULTIPLIER = 5.0
JITTER_FACTOR = 0.5  # Add up to 50% randomness to backoff

CACHE_CONTROL_EPHEMERAL = {"type": "ephemeral"}


def _calculate_wait_time(backoff: float) -> float:
    """Calculate wait time with jitter to prevent thundering herd."""
    jitter = random.random() * JITTER_FACTOR
    return min(backoff * (1 + jitter), MAX_BACKOFF)


class PlannedAction(BaseModel):
    """One action as the model proposes it."""

    type: Literal["click", "focus", "keyboard", "type", "wait"]
    target: Optional[str] = None
    key: Optional[str] = None
    text: Optional[str] = None
    seek: bool = False
    seconds: Optional[float] = Field(default=None, ge=0, le=10)
    reasoning: str = ""

    def to_action(self) -> Action:
        parameters = {}
        if self.type == "keyboard":
            if self.seek:
                parameters["seek"] = True
            elif self.key:
                parameters["key"] = self.key
            else:
                raise ValueError("keyboard action needs either 'seek' or 'key'")
            if self.text:
                parameters["text"] = self.text
        elif self.type == "type":
            parameters["text"] = self.text or ""
        elif self.type == "wait":
            parameters["seconds"] = self.seconds if self.seconds is not None else 1.0
        return Action(ActionType(self.type), self.target, parameters, self.reasoning)


class PlannerResponse(BaseModel):
    primary: PlannedAction
    fallbacks: list[PlannedAction] = Field(default_factory=list, max_length=MAX_FALLBACKS)
    reasoning: str = ""


class ClaudePlanner(RulePlanner):
    """
    Rule-based decomposition with Claude choosing how to drive interaction steps.

    Decomposition, verification steps and navigation walks always come from
    the rules. For interaction-test sub-tasks Claude picks the primary action
    and fallbacks from a fixed action set. Anything it returns that cannot be
    validated (unknown target, malformed JSON, API failure) is discarded in
    favour of the rule plan.
    """

    name = "claude"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_concurrent_calls: int = 2,
        client: Optional[AsyncAnthropic] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.model = model
        # Semaphore to limit concurrent API calls and avoid rate limiting
        self._api_semaphore = asyncio.Semaphore(max_concurrent_calls)
        self.fallback_count = 0

    async def _retry_with_backoff(self, operation_name: str, operation):
        """
        Execute an async operation with exponential backoff retry for transient errors.

        The semaphore is held only for the API call, never during the sleep.

        Retries on:
        - RateLimitError (429)
        - APIConnectionError (network issues)
        - APITimeoutError
        - Overloaded and server errors (529, 5xx)
        """
        last_exception = None
        backoff = INITIAL_BACKOFF

        for attempt in range(MAX_RETRIES):
            async with self._api_semaphore:
                try:
                    return await operation()
                except RateLimitError as e:
                    last_exception = e
                    wait_time = _calculate_wait_time(backoff)
                    if hasattr(e, 'response') and e.response:
                        retry_after = e.response.headers.get('retry-after')
                        if retry_after:
                            try:
                                wait_time = min(float(retry_after), MAX_BACKOFF)
                            except ValueError:
                                pass
                    logger.warning(
                        f"{operation_name}: Rate limited (attempt {attempt + 1}/{MAX_RETRIES}), "
                        f"retrying in {wait_time:.1f}s..."
                    )
                except (APIConnectionError, APITimeoutError) as e:
                    last_exception = e
                    wait_time = _calculate_wait_time(backoff)
                    logger.warning(
                        f"{operation_name}: Connection/timeout error (attempt {attempt + 1}/{MAX_RETRIES}), "
                        f"retrying in {wait_time:.1f}s: {e}"
                    )
                except APIError as e:
                    if hasattr(e, 'status_code') and e.status_code in (529, 500, 502, 503, 504):
                        last_exception = e
                        wait_time = _calculate_wait_time(backoff)
                        logger.warning(
                            f"{operation_name}: Server error {e.status_code} (attempt {attempt + 1}/{MAX_RETRIES}), "
                            f"retrying in {wait_time:.1f}s..."
                        )
                    else:
                        raise

            await asyncio.sleep(wait_time)
            backoff *= BACKOFF_MULTIPLIER

        logger.error(f"{operation_name}: All {MAX_RETRIES} retries exhausted")
        if last_exception is None:
            raise RuntimeError(f"{operation_name}: All retries exhausted but no exception captured")
        raise last_exception

    async def plan(self, sub_task: SubTask, state: PerceivedState) -> ActionPlan:
        rule_plan = await super().plan(sub_task, state)
        if sub_task.kind != SubTaskKind.INTERACTION_TEST:
            return rule_plan
        # Navigation steps change the page; keep them deterministic
        if sub_task.step is not None and sub_task.step.action == "navigate":
            return rule_plan

        try:
            response = await self._request_plan(sub_task, state, rule_plan)
            return self._to_plan(response, sub_task, state, rule_plan)
        except (APIError, ValidationError, ValueError) as e:
            self.fallback_count += 1
            logger.warning(f"Claude planning failed for {sub_task.description!r}, using rule plan: {e}")
            return rule_plan

    async def _request_plan(self, sub_task: SubTask, state: PerceivedState, rule_plan: ActionPlan) -> PlannerResponse:
        prompt = get_planner_step_prompt(
            kind=sub_task.kind.value,
            description=sub_task.description,
            target=sub_task.target or "",
            wcag_level=sub_task.wcag_level,
            url=state.url,
            active=state.active_element or "",
            elements=[element.to_dict() | {"text": element.text} for element in state.elements],
            default_plan=json.dumps(rule_plan.to_dict(), indent=2),
        )

        async def _make_plan_request():
            return await self.client.messages.create(
                model=self.model,
                max_tokens=1000,
                system=[{
                    "type": "text",
                    "text": PLANNER_SYSTEM_PROMPT,
                    "cache_control": CACHE_CONTROL_EPHEMERAL
                }],
                messages=[{"role": "user", "content": prompt}],
            )

        response = await self._retry_with_backoff("Planner", _make_plan_request)

        response_text = None
        for block in response.content:
            if block.type == "text":
                response_text = block.text
                break
        if not response_text:
            raise ValueError("Empty planner response")

        return self._extract_plan_from_response(response_text)

    def _extract_plan_from_response(self, text: str) -> PlannerResponse:
        """
        Extract the JSON plan from the model's response.

        Args:
            text: Raw AI response text

        Returns:
            Parsed PlannerResponse

        Raises:
            ValueError: If no JSON object is found
            ValidationError: If the JSON does not match the plan schema
        """
        text = text.strip()

        try:
            return PlannerResponse(**json.loads(text))
        except (json.JSONDecodeError, TypeError):
            pass

        match = re.search(r'```(?:json)?\s*(.*?)\s*```', text, re.DOTALL)
        if match:
            try:
                return PlannerResponse(**json.loads(match.group(1).strip()))
            except (json.JSONDecodeError, TypeError):
                pass

        # Brace-match from each opening brace before "primary"
        idx = text.find('"primary"')
        search_end = idx
        while search_end > 0:
            start = text.rfind('{', 0, search_end)
            if start < 0:
                break
            depth = 0
            for i in range(start, len(text)):
                if text[i] == '{':
                    depth += 1
                elif text[i] == '}':
                    depth -= 1
                    if depth == 0:
                        try:
                            return PlannerResponse(**json.loads(text[start:i + 1]))
                        except (json.JSONDecodeError, TypeError):
                            break
            search_end = start

        preview = text[:500] if len(text) > 500 else text
        raise ValueError(f"No valid JSON plan found in AI response. Response preview:\n{preview}")

    def _to_plan(self, response: PlannerResponse, sub_task: SubTask, state: PerceivedState, rule_plan: ActionPlan) -> ActionPlan:
        allowed = set(state.selectors) | {element.selector for element in state.unreachable}
        if sub_task.target:
            allowed.add(sub_task.target)

        actions = []
        for planned in [response.primary, *response.fallbacks]:
            if planned.target and planned.target not in allowed:
                raise ValueError(f"Planner chose target {planned.target!r} which is not on the page")
            actions.append(planned.to_action())

        logger.debug(f"Claude plan for {sub_task.description!r}: {response.reasoning}")
        return ActionPlan(
            sub_task_id=sub_task.id,
            primary=actions[0],
            expected=rule_plan.expected,
            fallbacks=tuple(actions[1:MAX_FALLBACKS + 1]),
            timeout=rule_plan.timeout,
            planner=self.name,
        )
