# =============================================================================
# Planner Prompts
# =============================================================================

PLANNER_SYSTEM_PROMPT = """You plan single keyboard-accessibility test steps on a live web page.

The test harness has already decided WHAT to test. You only choose HOW to
drive one step: a primary action and at most two fallback actions that are
tried in order if the primary fails.

## Allowed actions

Respond with JSON only. Each action is an object with a "type" and the fields it needs:

**Move focus to an element programmatically:**
{{"type": "focus", "target": "#email"}}

**Reach an element by pressing Tab (keyboard users' path):**
{{"type": "keyboard", "target": "#email", "seek": true}}

**Press a key, optionally after focusing a target:**
{{"type": "keyboard", "target": "#menu-button", "key": "Enter"}}

**Click an element:**
{{"type": "click", "target": "#submit"}}

**Type text into an element:**
{{"type": "type", "target": "#email", "text": "user@example.com"}}

**Wait for the page:**
{{"type": "wait", "seconds": 1}}

## Rules

- Only use targets from the element list you are given.
- Prefer keyboard-only paths; a step that only works with the mouse is itself a finding.
- Never navigate away from the page.
- Keep "reasoning" to one sentence.

## Response format

{{"primary": <action>, "fallbacks": [<action>, ...], "reasoning": "..."}}
"""

PLANNER_STEP_PROMPT = """## Step
Kind: {kind}
Goal: {description}
Target: {target}
WCAG level: {wcag_level}

## Page
URL: {url}
Focused element: {active}

## Focusable elements
{elements}

## Default plan
{default_plan}

Return the JSON plan for this step."""


def format_element_list(elements: list[dict], limit: int = 60) -> str:
    """Format perceived elements as one line each for the planner prompt."""
    if not elements:
        return "No focusable elements found."
    lines = []
    for element in elements[:limit]:
        text = " ".join((element.get("text") or "").split())[:40]
        lines.append(f"- {element['selector']} <{element['tag']}> tabindex={element['tab_index']}" + (f' "{text}"' if text else ""))
    if len(elements) > limit:
        lines.append(f"... and {len(elements) - limit} more")
    return "\n".join(lines)


def get_planner_step_prompt(
    kind: str,
    description: str,
    target: str,
    wcag_level: str,
    url: str,
    active: str,
    elements: list[dict],
    default_plan: str,
) -> str:
    return PLANNER_STEP_PROMPT.format(
        kind=kind,
        description=description,
        target=target or "(none)",
        wcag_level=wcag_level,
        url=url,
        active=active or "(body)",
        elements=format_element_list(elements),
        default_plan=default_plan,
    )
