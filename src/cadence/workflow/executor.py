"""Movement executor — runs one movement and resolves where to go next.

Leaf movements run the phase protocol once and match the resulting tag (or
``ai()`` judgment) against their rules. Fan-out movements run every
sub-movement through the parallel runner, classify each branch against its
own rules, then match the parent's ``all()`` / ``any()`` rules over the
branch outcomes.

Agent invocation failures propagate unchanged; a signal no rule accepts
raises ``NoMatchingRuleError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cadence.workflow.context import RunContext
from cadence.workflow.errors import NoMatchingRuleError
from cadence.workflow.events import EventStream
from cadence.workflow.instructions import InstructionContext
from cadence.workflow.interfaces import AgentInvoker, ConditionJudge
from cadence.workflow.models import (
    AgentResponse,
    MatchMethod,
    Movement,
    ResponseStatus,
    RunState,
    WorkflowDefinition,
)
from cadence.workflow.parallel import ParallelRunner
from cadence.workflow.phases import PhaseResult, PhaseRunner
from cadence.workflow.rules import (
    AggregateSignal,
    MatchedRule,
    NoMatch,
    TagSignal,
    resolve,
)

logger = logging.getLogger(__name__)


@dataclass
class BranchResult:
    """A settled fan-out branch and the condition it resolved to."""

    movement: Movement
    phase: PhaseResult
    condition: str | None
    matched: MatchedRule | None = None

    @property
    def status(self) -> ResponseStatus:
        return self.phase.response.status


@dataclass
class MovementResult:
    next_movement: str
    response: AgentResponse
    matched: MatchedRule
    responses: list[AgentResponse] = field(default_factory=list)
    branches: list[BranchResult] = field(default_factory=list)


class MovementExecutor:
    """Executes movements of one workflow definition."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        invoker: AgentInvoker,
        *,
        judge: ConditionJudge | None = None,
        events: EventStream | None = None,
    ):
        self.definition = definition
        self._judge = judge
        self._phases = PhaseRunner(invoker)
        self._parallel = ParallelRunner(events, workflow=definition.name)

    def _instruction_context(
        self,
        movement: Movement,
        state: RunState,
        ctx: RunContext,
        *,
        index_of: str | None = None,
    ) -> InstructionContext:
        previous = state.last_response if movement.pass_previous_response else None
        return InstructionContext(
            task=ctx.task,
            iteration=state.iteration,
            max_iterations=self.definition.max_iterations,
            movement_iteration=state.movement_iteration(index_of or movement.name),
            cwd=ctx.cwd,
            project_cwd=ctx.project_cwd,
            user_inputs=list(ctx.user_inputs),
            previous_response=previous,
            report_dir=ctx.report_dir,
            workflow_movements=list(self.definition.movements),
            current_movement_index=self.definition.get_movement_index(index_of or movement.name),
        )

    async def execute(self, movement: Movement, state: RunState, ctx: RunContext) -> MovementResult:
        if movement.is_fan_out:
            return await self._execute_fan_out(movement, state, ctx)
        return await self._execute_leaf(movement, state, ctx)

    # ── Leaf ─────────────────────────────────────────────────────────────────

    async def _execute_leaf(
        self, movement: Movement, state: RunState, ctx: RunContext
    ) -> MovementResult:
        phase = await self._phases.run(movement, self._instruction_context(movement, state, ctx), ctx)
        signal = TagSignal(
            phase.tag,
            phase.response.content,
            phase.method or MatchMethod.PHASE1_TAG,
        )
        matched = await resolve(movement.rules, signal, self._judge)
        if isinstance(matched, NoMatch):
            raise NoMatchingRuleError(movement.name, signal)

        logger.info(
            "Movement '%s' matched rule #%d (%s via %s) → %s",
            movement.name,
            matched.index + 1,
            matched.condition,
            matched.method.value,
            matched.next,
        )
        response = phase.response.model_copy(
            update={"matched_rule_index": matched.index, "match_method": matched.method}
        )
        responses = [response, *phase.responses[1:]]
        return MovementResult(
            next_movement=matched.next,  # type: ignore[arg-type]
            response=response,
            matched=matched,
            responses=responses,
        )

    # ── Fan-out ──────────────────────────────────────────────────────────────

    async def _run_branch(
        self,
        parent: Movement,
        sub: Movement,
        state: RunState,
        ctx: RunContext,
    ) -> BranchResult:
        instruction_context = self._instruction_context(sub, state, ctx, index_of=parent.name)
        phase = await self._phases.run(sub, instruction_context, ctx)

        if not sub.rules:
            return BranchResult(movement=sub, phase=phase, condition=phase.tag)

        signal = TagSignal(phase.tag, phase.response.content, phase.method or MatchMethod.PHASE1_TAG)
        matched = await resolve(sub.rules, signal, self._judge)
        if isinstance(matched, NoMatch):
            logger.warning(
                "Branch '%s/%s' matched none of its rules (%s)", parent.name, sub.name, signal
            )
            return BranchResult(movement=sub, phase=phase, condition=None)
        return BranchResult(movement=sub, phase=phase, condition=matched.condition, matched=matched)

    async def _execute_fan_out(
        self, movement: Movement, state: RunState, ctx: RunContext
    ) -> MovementResult:
        async def run_branch(sub: Movement) -> BranchResult:
            return await self._run_branch(movement, sub, state, ctx)

        outcomes = await self._parallel.run_all(
            movement.name, movement.parallel, run_branch, iteration=state.iteration
        )
        branches = [o.value for o in outcomes if o.value is not None]

        signal = AggregateSignal({b.movement.name: b.condition for b in branches})
        matched = await resolve(movement.rules, signal, self._judge)
        if isinstance(matched, NoMatch):
            raise NoMatchingRuleError(movement.name, signal)

        logger.info(
            "Movement '%s' matched aggregate rule #%d %s → %s",
            movement.name,
            matched.index + 1,
            matched.condition,
            matched.next,
        )

        content = "\n\n".join(
            f"## {b.movement.name}\n{b.phase.response.content}" for b in branches
        )
        response = AgentResponse(
            agent=movement.agent or movement.name,
            content=content,
            status=ResponseStatus.DONE,
            matched_rule_index=matched.index,
            match_method=MatchMethod.AGGREGATE,
        )
        responses: list[AgentResponse] = []
        for b in branches:
            responses.extend(b.phase.responses)
        return MovementResult(
            next_movement=matched.next,  # type: ignore[arg-type]
            response=response,
            matched=matched,
            responses=responses,
            branches=branches,
        )
