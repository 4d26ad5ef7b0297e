"""Phase protocol — the up-to-three round-trips of one agent invocation.

1. execute          always; the movement's main instruction
2. report           only when the movement declares report files
3. status judgment  only when the movement has tag rules and phase 1 did
                    not already emit an unambiguous tag

All phases run on the same agent session, so phases 2 and 3 see the work
done in phase 1. The session map is updated after each successful call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cadence.workflow.context import RunContext
from cadence.workflow.instructions import (
    InstructionBuilder,
    InstructionContext,
    build_report_instruction,
    build_status_judgment_instruction,
)
from cadence.workflow.interfaces import AgentInvoker
from cadence.workflow.models import AgentResponse, MatchMethod, Movement
from cadence.workflow.rules import (
    find_unambiguous_tag,
    has_tag_based_rules,
    needs_status_judgment,
    single_tag,
)

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """Outcome of one invocation: the primary response and its status tag."""

    response: AgentResponse
    tag: str | None
    method: MatchMethod | None
    responses: list[AgentResponse] = field(default_factory=list)
    report_error: str | None = None


class PhaseRunner:
    """Drives the phase protocol for a single agent (leaf or branch)."""

    def __init__(self, invoker: AgentInvoker):
        self._invoke = invoker

    async def _call(
        self,
        movement: Movement,
        instruction: str,
        ctx: RunContext,
    ) -> AgentResponse:
        agent = movement.agent or movement.name
        response = await self._invoke(
            agent,
            instruction,
            session_id=ctx.sessions.get(agent),
            cwd=ctx.cwd,
            provider=movement.provider or ctx.provider,
            model=movement.model or ctx.model,
        )
        await ctx.sessions.update(agent, response.session_id)
        return response

    async def run(
        self,
        movement: Movement,
        instruction_context: InstructionContext,
        ctx: RunContext,
    ) -> PhaseResult:
        # Phase 1: execute
        instruction = InstructionBuilder(movement, instruction_context).build()
        logger.info("PHASE 1 (execute) — %s [agent=%s]", movement.name, movement.agent)
        response = await self._call(movement, instruction, ctx)
        responses = [response]

        # Phase 2: report
        report_error = None
        if movement.report and ctx.report_dir:
            logger.info("PHASE 2 (report) — %s", movement.name)
            try:
                report = await self._call(
                    movement,
                    build_report_instruction(
                        movement,
                        report_dir=ctx.report_dir,
                        movement_iteration=instruction_context.movement_iteration,
                    ),
                    ctx,
                )
                responses.append(report)
            except Exception as exc:
                logger.exception("Report phase failed for movement '%s'", movement.name)
                report_error = str(exc)

        # Phase 3: status judgment, skipped when phase 1 already decided
        tag = find_unambiguous_tag(response.content, movement)
        method: MatchMethod | None = MatchMethod.PHASE1_TAG if tag else None

        if tag is None and needs_status_judgment(movement):
            logger.info("PHASE 3 (status judgment) — %s", movement.name)
            judgment = await self._call(movement, build_status_judgment_instruction(movement), ctx)
            responses.append(judgment)
            tag = single_tag(judgment.content, movement.name)
            method = MatchMethod.PHASE3_TAG if tag else None
        elif tag is None and not has_tag_based_rules(movement):
            # Rule-less branches are summarized by whatever tag they emitted.
            tag = single_tag(response.content, movement.name)
            method = MatchMethod.PHASE1_TAG if tag else None

        response = response.model_copy(update={"tag": tag})
        responses[0] = response
        return PhaseResult(
            response=response,
            tag=tag,
            method=method,
            responses=responses,
            report_error=report_error,
        )
