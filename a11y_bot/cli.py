#!/usr/bin/env python3
"""CLI entry point for the accessibility agent.

Runs one task (audit, fix verification, focus-trap sweep or workflow)
against a page and prints a report as markdown or JSON.

Usage:
    a11y-bot https://example.com
    a11y-bot https://example.com --task fix-verification --selector "#submit" --selector "nav a"
    a11y-bot https://example.com --output json --output-file report.json

    # Attach to a running Chrome started with --remote-debugging-port=9222
    a11y-bot --cdp-endpoint http://localhost:9222 --list-tabs
    a11y-bot --cdp-endpoint http://localhost:9222 --tab 0 --task focus-trap-sweep
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from a11y_bot.config import (
    AI_MODEL,
    ANTHROPIC_API_KEY,
    BROWSER_HEADLESS,
    CDP_ENDPOINT,
    LOG_LEVEL,
    MAX_CONCURRENT_API_CALLS,
    MAX_CYCLE_TIME_SECONDS,
    MAX_CYCLES,
    PLANNER,
    VIEWPORT_HEIGHT,
    VIEWPORT_WIDTH,
)

# Configure logging with level from environment
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

from a11y_bot.agent.coordinator import LoopConfig, LoopResult, PRARCoordinator
from a11y_bot.agent.executor import ChannelActionExecutor
from a11y_bot.ai.claude_planner import ClaudePlanner
from a11y_bot.browser.controller import PlaywrightControlChannel
from a11y_bot.browser.keyboard import KeyboardSimulator
from a11y_bot.browser.pointer import PointerSimulator
from a11y_bot.browser.session_pool import SessionPool
from a11y_bot.errors import A11yBotError
from a11y_bot.perception.engine import PerceptionEngine
from a11y_bot.planning.planner import Planner, RulePlanner
from a11y_bot.planning.task import TaskConstraints, TaskDescriptor, TaskScope, WorkflowStep
from a11y_bot.remediation.detection import IssueDetector
from a11y_bot.remediation.engine import AutoRemediationEngine
from a11y_bot.remediation.report import generate_report


TASK_TYPES = ["full-audit", "fix-verification", "focus-trap-sweep", "workflow"]


def load_workflow(file_path: str) -> list[WorkflowStep]:
    """
    Read a workflow from a JSON file: a list of steps such as
    ``{"action": "click", "target": "#open-dialog"}``.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {file_path}")
    with open(path) as f:
        steps = json.load(f)
    if not isinstance(steps, list):
        raise ValueError(f"Workflow file {file_path} must contain a JSON list of steps")
    return [WorkflowStep.model_validate(step) for step in steps]


def build_task(args: argparse.Namespace) -> TaskDescriptor:
    """Build the TaskDescriptor for the parsed command line."""
    if args.task_file:
        with open(args.task_file) as f:
            return TaskDescriptor.model_validate(json.load(f))

    workflows = [load_workflow(args.workflow)] if args.workflow else []
    task_type = args.task
    if workflows and task_type == "full-audit":
        task_type = "workflow"
    if task_type == "workflow" and not workflows:
        raise ValueError("--task workflow needs --workflow FILE")

    return TaskDescriptor(
        type=task_type,
        description=f"{task_type} of {args.url or f'tab {args.tab}'}",
        wcag_level=args.wcag_level,
        scope=TaskScope(selectors=args.selectors or [], workflows=workflows),
        constraints=TaskConstraints(
            excluded_selectors=args.exclude or [],
            max_elements=args.max_elements,
            time_budget_seconds=args.max_time,
        ),
    )


def build_planner(name: str) -> Planner:
    if name == "claude":
        if not ANTHROPIC_API_KEY:
            print("Warning: ANTHROPIC_API_KEY not set, using the rule planner", file=sys.stderr)
            return RulePlanner()
        return ClaudePlanner(
            api_key=ANTHROPIC_API_KEY,
            model=AI_MODEL,
            max_concurrent_calls=MAX_CONCURRENT_API_CALLS,
        )
    return RulePlanner()


def format_loop_report(result: LoopResult, target: str = "") -> str:
    """Markdown report of one loop run."""
    lines = [
        "# Accessibility Report",
        "",
    ]
    if target:
        lines.append(f"Target: {target}")
        lines.append("")
    lines.extend([
        "## Summary",
        f"- Result: {'Passed' if result.success else 'Failed'}",
        f"- Terminated: {result.terminated_reason}",
        f"- Cycles: {result.cycles}",
        f"- Sub-tasks completed: {result.completed_tasks}",
        f"- Sub-tasks failed: {result.failed_tasks}",
        f"- Elements with issues: {len(result.findings)}",
        f"- Focus traps: {len(result.focus_traps)}",
        f"- Duration: {result.duration:.1f}s",
    ])

    if result.focus_traps:
        lines.extend(["", "## Focus Traps"])
        for trap in result.focus_traps:
            lines.append(
                f"- [{trap.severity.upper()}] {trap.trap_type} at step {trap.detected_at_step}: "
                f"{' -> '.join(trap.elements)}"
            )

    if result.findings:
        lines.extend(["", "## Issues"])
        for finding in result.findings:
            lines.extend(["", f"### `{finding.selector}`"])
            for issue in finding.issues:
                lines.append(
                    f"- [{issue.severity.value.upper()}] {issue.type.value} "
                    f"(WCAG {', '.join(issue.wcag_criteria)}): {issue.description} [{issue.status.value}]"
                )

    pointer_issues = [(i.target, issue) for i in result.interactions for issue in i.issues]
    if pointer_issues:
        lines.extend(["", "## Pointer Interactions"])
        for target, issue in pointer_issues:
            lines.append(f"- `{target}` {issue.kind} (WCAG {issue.wcag}): {issue.description}")

    if result.remediation_results:
        lines.extend(["", generate_report(result.remediation_results).replace("# ", "## ", 1)])

    if result.errors:
        lines.extend(["", "## Errors"])
        lines.extend(f"- {error}" for error in result.errors)

    return "\n".join(lines)


async def list_tabs(cdp_endpoint: str) -> list[dict]:
    pool = SessionPool(cdp_endpoint=cdp_endpoint)
    await pool.start()
    try:
        return await pool.list_targets()
    finally:
        await pool.stop()


async def run_task(
    task: TaskDescriptor,
    url: Optional[str],
    tab: Optional[int],
    cdp_endpoint: str,
    planner_name: str,
    max_cycles: int,
    max_time: float,
    remediate: bool = True,
    headless: bool = True,
) -> LoopResult:
    """
    Attach to (or open) a tab and run one task through the PRAR loop.

    Args:
        task: The task to run
        url: Page to open; in attach mode the tab navigates there first
        tab: Tab id to attach to; None opens a new tab on url
        cdp_endpoint: DevTools endpoint, empty to launch a local browser
        planner_name: "rules" or "claude"
        max_cycles: Cycle limit of the loop
        max_time: Wall-clock limit of the loop in seconds
        remediate: Inject and verify fixes for the issues found
        headless: Launch mode only

    Returns:
        The loop result
    """
    pool = SessionPool(
        cdp_endpoint=cdp_endpoint,
        headless=headless,
        viewport_width=VIEWPORT_WIDTH,
        viewport_height=VIEWPORT_HEIGHT,
    )
    await pool.start()
    try:
        tab_id = tab if tab is not None else await pool.open_tab(url)
        channel = PlaywrightControlChannel(pool)
        await channel.connect(tab_id)
        if url and tab is not None:
            await channel.navigate(url)

        perception = PerceptionEngine(channel)
        keyboard = KeyboardSimulator(channel)
        pointer = PointerSimulator(channel, keyboard)
        coordinator = PRARCoordinator(
            channel=channel,
            perception=perception,
            planner=build_planner(planner_name),
            executor=ChannelActionExecutor(channel, keyboard, pointer, perception),
            remediation=AutoRemediationEngine(channel, perception) if remediate else None,
            detector=IssueDetector(channel, perception),
            config=LoopConfig(max_cycles=max_cycles, max_cycle_time=max_time, remediate=remediate),
        )
        try:
            return await coordinator.start_loop(task)
        finally:
            await perception.close()
    finally:
        await pool.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="a11y-bot",
        description="a11y-bot - keyboard focus visibility testing and remediation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Full audit of a page in a local headless Chromium
    a11y-bot https://example.com

    # Verify specific elements and fix what is broken
    a11y-bot https://example.com --task fix-verification --selector "#login" --selector "nav a"

    # Report only, no fixes
    a11y-bot https://example.com --no-remediate

    # Walk the tab order looking for focus traps
    a11y-bot https://example.com --task focus-trap-sweep

    # Run a workflow (JSON list of steps)
    a11y-bot https://example.com --workflow checkout.json

    # Attach to a running browser
    a11y-bot --cdp-endpoint http://localhost:9222 --list-tabs
    a11y-bot --cdp-endpoint http://localhost:9222 --tab 2

    # JSON output to file
    a11y-bot https://example.com --output json --output-file report.json
        """
    )

    parser.add_argument(
        "url",
        nargs="?",
        help="Page to test (required unless attaching with --tab)"
    )
    parser.add_argument(
        "--cdp-endpoint",
        default=CDP_ENDPOINT,
        help="DevTools endpoint of a running browser (or set CDP_ENDPOINT env var)"
    )
    parser.add_argument(
        "--tab",
        type=int,
        default=None,
        help="Tab id to attach to (see --list-tabs)"
    )
    parser.add_argument(
        "--list-tabs",
        action="store_true",
        help="List the browser's tabs and exit"
    )
    parser.add_argument(
        "--task", "-t",
        choices=TASK_TYPES,
        default="full-audit",
        help="Task type (default: full-audit)"
    )
    parser.add_argument(
        "--task-file",
        help="Load the whole task from a JSON file instead"
    )
    parser.add_argument(
        "--workflow", "-w",
        help="JSON file with workflow steps (implies --task workflow)"
    )
    parser.add_argument(
        "--selector", "-s",
        action="append",
        dest="selectors",
        metavar="SELECTOR",
        help="Element to test (can be specified multiple times)"
    )
    parser.add_argument(
        "--exclude", "-x",
        action="append",
        metavar="SELECTOR",
        help="Element to skip (can be specified multiple times)"
    )
    parser.add_argument(
        "--wcag-level",
        choices=["A", "AA", "AAA"],
        default="AA",
        help="WCAG conformance level (default: AA)"
    )
    parser.add_argument(
        "--max-elements",
        type=int,
        default=50,
        help="Maximum elements to test when none are selected (default: 50)"
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=MAX_CYCLES,
        help=f"Maximum PRAR cycles (default: {MAX_CYCLES})"
    )
    parser.add_argument(
        "--max-time",
        type=float,
        default=MAX_CYCLE_TIME_SECONDS,
        help=f"Maximum loop duration in seconds (default: {MAX_CYCLE_TIME_SECONDS:g})"
    )
    parser.add_argument(
        "--no-remediate",
        action="store_true",
        help="Report issues without injecting fixes"
    )
    parser.add_argument(
        "--planner",
        choices=["rules", "claude"],
        default=PLANNER,
        help="Action planner (default: PLANNER env var or rules)"
    )
    parser.add_argument(
        "--output", "-o",
        choices=["markdown", "json"],
        default="markdown",
        help="Output format (default: markdown)"
    )
    parser.add_argument(
        "--output-file", "-f",
        help="Write output to file instead of stdout"
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Run browser in headed mode (visible, for debugging)"
    )
    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_tabs:
        if not args.cdp_endpoint:
            parser.error("--list-tabs needs --cdp-endpoint")
        try:
            tabs = asyncio.run(list_tabs(args.cdp_endpoint))
        except A11yBotError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        for tab in tabs:
            print(f"{tab['tab_id']}\t{tab.get('target_id', '-')}\t{tab['url']}\t{tab['title']}")
        sys.exit(0)

    if args.tab is not None and not args.cdp_endpoint:
        parser.error("--tab needs --cdp-endpoint")
    if not args.url and args.tab is None:
        parser.error("a URL is required unless attaching with --tab")

    try:
        task = build_task(args)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        result = asyncio.run(run_task(
            task=task,
            url=args.url,
            tab=args.tab,
            cdp_endpoint=args.cdp_endpoint,
            planner_name=args.planner,
            max_cycles=args.max_cycles,
            max_time=args.max_time,
            remediate=not args.no_remediate,
            headless=BROWSER_HEADLESS and not args.headed,
        ))
    except KeyboardInterrupt:
        print("\nRun cancelled", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error during run: {e}", file=sys.stderr)
        sys.exit(1)

    target = args.url or f"tab {args.tab}"
    if args.output == "json":
        payload = result.to_dict()
        payload.update({"target": target, "timestamp": datetime.now().isoformat()})
        output = json.dumps(payload, indent=2, default=str)
    else:
        output = format_loop_report(result, target)

    if args.output_file:
        with open(args.output_file, "w") as f:
            f.write(output)
        print(f"Output written to {args.output_file}", file=sys.stderr)
    else:
        print(output)

    if result.terminated_reason in ("session-lost", "error-threshold"):
        sys.exit(1)

    # Exit with error code if critical issues remain
    critical = result.unfixed_critical
    traps = [trap for trap in result.focus_traps if trap.severity == "critical"]
    if critical or traps:
        print(f"{len(critical)} critical issues remain unfixed, {len(traps)} focus traps found", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
