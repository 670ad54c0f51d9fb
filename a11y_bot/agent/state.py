from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from a11y_bot.browser.channel import Capabilities
from a11y_bot.perception.engine import PerceivedState
from a11y_bot.planning.task import SubTask, TaskDescriptor


class AgentPhase(str, Enum):
    IDLE = "idle"
    PERCEIVING = "perceiving"
    PLANNING = "planning"
    ACTING = "acting"
    REFLECTING = "reflecting"
    ERROR = "error"
    TERMINATED = "terminated"


_TRANSITIONS = {
    AgentPhase.IDLE: {AgentPhase.PERCEIVING, AgentPhase.PLANNING},
    AgentPhase.PERCEIVING: {AgentPhase.PLANNING},
    # Planning a composite task only decomposes it; the cycle ends there
    AgentPhase.PLANNING: {AgentPhase.ACTING, AgentPhase.IDLE},
    AgentPhase.ACTING: {AgentPhase.REFLECTING},
    AgentPhase.REFLECTING: {AgentPhase.IDLE},
    AgentPhase.ERROR: {AgentPhase.IDLE},
    AgentPhase.TERMINATED: set(),
}


def can_transition(current: AgentPhase, requested: AgentPhase) -> bool:
    if current == AgentPhase.TERMINATED:
        return False
    # Any phase may fail or be shut down
    if requested in (AgentPhase.ERROR, AgentPhase.TERMINATED):
        return True
    return requested in _TRANSITIONS[current]


QueueItem = Union[TaskDescriptor, SubTask]


@dataclass(frozen=True)
class QueuedTask:
    item: QueueItem
    priority: int
    sequence: int

    @property
    def composite(self) -> bool:
        return isinstance(self.item, TaskDescriptor)

    @property
    def id(self) -> str:
        return self.item.id


@dataclass(frozen=True)
class AgentState:
    """
    Everything the PRAR loop knows between phases.

    Never mutated: every phase change produces a new value through
    ``transition``, so a sequence of states is a complete audit trail.
    """

    phase: AgentPhase = AgentPhase.IDLE
    queue: tuple[QueuedTask, ...] = ()
    cycle: int = 0
    capabilities: Optional[Capabilities] = None
    last_error: Optional[str] = None
    snapshot: Optional[PerceivedState] = None
    # True when Reflect already re-perceived and the next Perceive may be skipped
    snapshot_fresh: bool = False
    next_sequence: int = 0
    updated_at: datetime = field(default_factory=datetime.now)

    def transition(self, phase: AgentPhase, **changes) -> "AgentState":
        if not can_transition(self.phase, phase):
            raise ValueError(f"Illegal agent transition {self.phase.value} -> {phase.value}")
        return replace(self, phase=phase, updated_at=datetime.now(), **changes)

    def enqueue(self, item: QueueItem, priority: int = 0) -> "AgentState":
        """Higher priority first; FIFO among equal priorities."""
        entry = QueuedTask(item, priority, self.next_sequence)
        queue = tuple(sorted(self.queue + (entry,), key=lambda q: (-q.priority, q.sequence)))
        return replace(self, queue=queue, next_sequence=self.next_sequence + 1)

    def enqueue_all(self, items: list[QueueItem], priority: int = 0) -> "AgentState":
        state = self
        for item in items:
            state = state.enqueue(item, priority)
        return state

    def dequeue(self) -> tuple[Optional[QueuedTask], "AgentState"]:
        if not self.queue:
            return None, self
        return self.queue[0], replace(self, queue=self.queue[1:])

    @property
    def head(self) -> Optional[QueuedTask]:
        return self.queue[0] if self.queue else None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "queued": len(self.queue),
            "cycle": self.cycle,
            "capabilities": self.capabilities.to_dict() if self.capabilities else None,
            "last_error": self.last_error,
        }
