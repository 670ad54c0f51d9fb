import json

from .models import RemediationResult


def generate_report(results: list[RemediationResult]) -> str:
    """Markdown summary of a batch of remediation results."""
    successful = sum(1 for result in results if result.success)
    total_fixes = sum(len(result.applied_fixes) for result in results)

    lines = [
        "# Auto-Remediation Report",
        "",
        "## Summary",
        f"- Total Tasks: {len(results)}",
        f"- Successful: {successful}",
        f"- Failed: {len(results) - successful}",
        f"- Total Fixes Applied: {total_fixes}",
        "",
        "## Details",
    ]
    for result in results:
        lines.extend([
            "",
            f"### Task {result.task_id}",
            f"- Element: `{result.selector}`",
            f"- Status: {'Success' if result.success else 'Failed'}",
            f"- Applied Fixes: {len(result.applied_fixes)}",
            f"- Failed Fixes: {len(result.failed_fixes)}",
            f"- Duration: {result.duration_ms}ms",
        ])
        for fix in result.applied_fixes:
            lines.append(f"  - {fix.fix_type.value}: {fix.description} (confidence {fix.confidence:.2f}, WCAG {', '.join(fix.wcag_criteria)})")
        if result.error:
            lines.append(f"- Error: {result.error}")
    return "\n".join(lines)


def generate_json_report(results: list[RemediationResult]) -> str:
    successful = sum(1 for result in results if result.success)
    return json.dumps({
        "summary": {
            "total_tasks": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "total_fixes_applied": sum(len(result.applied_fixes) for result in results),
        },
        "tasks": [result.to_dict() for result in results],
    }, indent=2)
