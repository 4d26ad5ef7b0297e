"""Lifecycle events — ordered queue-based stream for display collaborators.

Events for one movement arrive in order (start before complete). Branch
events of a fan-out movement may interleave with each other; the parent's
``movement_complete`` is always emitted after every branch has settled.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class WorkflowEventType(str, enum.Enum):
    MOVEMENT_START = "movement_start"
    MOVEMENT_COMPLETE = "movement_complete"
    BRANCH_START = "branch_start"
    BRANCH_COMPLETE = "branch_complete"
    WORKTREE_CONFIGURED = "worktree_configured"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_ABORTED = "workflow_aborted"


TERMINAL_EVENTS = frozenset(
    {WorkflowEventType.WORKFLOW_COMPLETED, WorkflowEventType.WORKFLOW_ABORTED}
)


class WorkflowEvent(BaseModel):
    """A single lifecycle event."""

    event_type: WorkflowEventType
    workflow: str
    movement: str | None = None
    branch: str | None = None
    iteration: int = 0
    status: str | None = None  # response status on completion events
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "event_type": self.event_type.value,
            "workflow": self.workflow,
            "iteration": self.iteration,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.movement:
            data["movement"] = self.movement
        if self.branch:
            data["branch"] = self.branch
        if self.status:
            data["status"] = self.status
        if self.content:
            content = self.content
            if len(content) > 2000:
                content = content[:2000] + "... (truncated)"
            data["content"] = content
        if self.metadata:
            data["metadata"] = self.metadata
        return json.dumps(data)


class EventStream:
    """Fan-out of workflow events to subscriber queues.

    Every subscriber receives every event in emission order. A subscriber
    whose queue is full is dropped rather than blocking the engine.
    """

    def __init__(self, maxsize: int = 1000):
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[WorkflowEvent]] = []
        self._lock = asyncio.Lock()

    async def emit(self, event: WorkflowEvent) -> None:
        logger.debug(
            "event %s movement=%s branch=%s iteration=%d",
            event.event_type.value,
            event.movement,
            event.branch,
            event.iteration,
        )
        async with self._lock:
            dead = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    dead.append(queue)
            for q in dead:
                logger.warning("Dropping slow event subscriber (queue full)")
                self._subscribers.remove(q)

    async def subscribe(self) -> asyncio.Queue[WorkflowEvent]:
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue(maxsize=self._maxsize)
        async with self._lock:
            self._subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[WorkflowEvent]) -> None:
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)


async def drain(queue: asyncio.Queue[WorkflowEvent]) -> list[WorkflowEvent]:
    """Return every event currently buffered in ``queue`` without waiting."""
    events: list[WorkflowEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
