"""Parallel runner — concurrent execution of a fan-out movement's branches.

Every branch is started at once and the call only returns after all of them
have settled: there is no short-circuit (``any()`` rules still need every
branch outcome so earlier-declared rules win) and no cancellation of
siblings when one fails. Outcomes come back in declaration order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from cadence.workflow.errors import ConfigurationError, ParallelBranchError
from cadence.workflow.events import EventStream, WorkflowEvent, WorkflowEventType
from cadence.workflow.models import Movement

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BranchOutcome(Generic[T]):
    """Settled result of one branch: either ``value`` or ``error`` is set."""

    name: str
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ParallelRunner:
    """Runs sub-movements concurrently and joins them."""

    def __init__(self, events: EventStream | None = None, *, workflow: str = ""):
        self._events = events
        self._workflow = workflow

    async def _emit(self, event_type: WorkflowEventType, **kwargs) -> None:
        if self._events is not None:
            await self._events.emit(
                WorkflowEvent(event_type=event_type, workflow=self._workflow, **kwargs)
            )

    async def _run_branch(
        self,
        parent: str,
        sub: Movement,
        run_branch: Callable[[Movement], Awaitable[T]],
        iteration: int,
    ) -> BranchOutcome[T]:
        await self._emit(
            WorkflowEventType.BRANCH_START,
            movement=parent,
            branch=sub.name,
            iteration=iteration,
        )
        try:
            value = await run_branch(sub)
        except Exception as exc:
            logger.warning("Branch '%s/%s' failed: %s", parent, sub.name, exc)
            await self._emit(
                WorkflowEventType.BRANCH_COMPLETE,
                movement=parent,
                branch=sub.name,
                iteration=iteration,
                status="error",
                content=str(exc),
            )
            return BranchOutcome(name=sub.name, error=exc)

        status = getattr(value, "status", None)
        await self._emit(
            WorkflowEventType.BRANCH_COMPLETE,
            movement=parent,
            branch=sub.name,
            iteration=iteration,
            status=getattr(status, "value", status) or "done",
        )
        return BranchOutcome(name=sub.name, value=value)

    async def run_all(
        self,
        parent: str,
        sub_movements: Sequence[Movement],
        run_branch: Callable[[Movement], Awaitable[T]],
        *,
        iteration: int = 0,
    ) -> list[BranchOutcome[T]]:
        """Run every sub-movement and return their outcomes in input order.

        Raises:
            ConfigurationError: after the join, unwrapped, if a branch
                raised one.
            ParallelBranchError: after the join, if any other branch failed.
                The first failing branch (in declaration order) is reported
                and every settled outcome is attached for diagnosis.
        """
        logger.info("FAN-OUT — %s (%d branches)", parent, len(sub_movements))
        outcomes = await asyncio.gather(
            *(self._run_branch(parent, sub, run_branch, iteration) for sub in sub_movements)
        )
        outcomes = list(outcomes)

        failed = [o for o in outcomes if not o.ok]
        if failed:
            for outcome in outcomes:
                logger.info(
                    "Branch '%s/%s' settled: %s",
                    parent,
                    outcome.name,
                    "ok" if outcome.ok else f"error ({outcome.error})",
                )
            for outcome in failed:
                if isinstance(outcome.error, ConfigurationError):
                    raise outcome.error
            first = failed[0]
            raise ParallelBranchError(  # type: ignore[arg-type]
                parent, first.name, first.error, outcomes
            ) from first.error

        logger.info("JOIN — %s (all %d branches settled)", parent, len(outcomes))
        return outcomes
