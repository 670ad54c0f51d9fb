from .claude_planner import ClaudePlanner, PlannedAction, PlannerResponse

__all__ = ["ClaudePlanner", "PlannedAction", "PlannerResponse"]
