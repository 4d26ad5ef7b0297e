"""Workflow engine — the run loop over a workflow definition.

Key exports:
    WorkflowEngine — owns the run state of one ``run()`` call: sequences
        movements, applies the iteration limit and loop detection, keeps
        the agent session map, and emits lifecycle events.

The loop itself is strictly sequential; concurrency only happens inside a
fan-out movement (see ``cadence.workflow.parallel``).
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime

from cadence.config import EngineConfig
from cadence.workflow.context import RunContext, SessionMap
from cadence.workflow.errors import (
    ERROR_MESSAGES,
    ConfigurationError,
    MovementExecutionError,
    UnknownMovementError,
)
from cadence.workflow.events import EventStream, WorkflowEvent, WorkflowEventType
from cadence.workflow.executor import MovementExecutor, MovementResult
from cadence.workflow.interfaces import (
    AgentInvoker,
    ConditionJudge,
    SessionStore,
    WorktreeProvisioner,
)
from cadence.workflow.models import (
    ABORT_MOVEMENT,
    COMPLETE_MOVEMENT,
    AbortReason,
    HistoryEntry,
    Movement,
    RunState,
    RunStatus,
    WorkflowDefinition,
    WorkflowResult,
    WorktreeInfo,
)
from cadence.workflow.rules import parse_worktree_config

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Drives one workflow definition from its initial movement to a terminal state.

    Collaborators are injected: ``invoker`` runs agents, ``judge`` evaluates
    ``ai()`` conditions, ``session_store`` persists session tokens between
    runs and ``worktree_provisioner`` materializes a git worktree when a
    movement asks for one. Only ``invoker`` is required.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        invoker: AgentInvoker,
        *,
        task: str,
        cwd: str,
        judge: ConditionJudge | None = None,
        session_store: SessionStore | None = None,
        worktree_provisioner: WorktreeProvisioner | None = None,
        events: EventStream | None = None,
        config: EngineConfig | None = None,
        project_cwd: str | None = None,
        report_dir: str | None = None,
    ):
        self.definition = definition
        self.task = task
        self.config = config or EngineConfig()
        self.events = events or EventStream()
        self.cwd = os.path.abspath(cwd)
        self.project_cwd = os.path.abspath(project_cwd or cwd)
        self.worktree: WorktreeInfo | None = None
        self.state: RunState | None = None

        self._executor = MovementExecutor(definition, invoker, judge=judge, events=self.events)
        self._store = session_store
        self._provisioner = worktree_provisioner
        self._report_dir = report_dir
        self._pending_inputs: list[str] = []
        self._ctx: RunContext | None = None
        self._worktree_configured = False
        self._running = False

    # ── Hooks for collaborators ─────────────────────────────────────────────

    def update_cwd(self, path: str) -> None:
        """Redirect every subsequent movement execution to ``path``.

        Reports and session storage stay anchored at ``project_cwd``.
        """
        self.cwd = os.path.abspath(path)
        if self._ctx is not None:
            self._ctx.cwd = self.cwd
        logger.info("Working directory for '%s' is now %s", self.definition.name, self.cwd)

    def add_user_input(self, text: str) -> None:
        """Queue additional user input for the instructions of later movements."""
        if self._ctx is not None:
            self._ctx.add_user_input(text)
        else:
            self._pending_inputs.append(text)

    # ── Run ─────────────────────────────────────────────────────────────────

    async def run(self, *, resume: bool = False) -> WorkflowResult:
        """Run the workflow until it completes or aborts.

        Args:
            resume: Continue the persisted agent sessions instead of
                clearing them first.

        Returns:
            The final WorkflowResult for completed runs and for graceful
            aborts (loop detected, iteration limit, ``ABORT`` sentinel).

        Raises:
            ConfigurationError: unknown movement or no rule matched.
            MovementExecutionError: an agent invocation failed.
        """
        if self._running:
            raise RuntimeError(f"Workflow '{self.definition.name}' is already running")
        self._running = True
        try:
            return await self._run(resume)
        finally:
            self._running = False
            self._ctx = None

    async def _load_sessions(self, resume: bool) -> SessionMap:
        initial: dict[str, str] = {}
        if self._store is not None:
            if resume:
                initial = await self._store.load()
                logger.info("Resuming with %d persisted agent session(s)", len(initial))
            else:
                await self._store.clear()
                logger.info("Starting fresh: cleared persisted agent sessions")
        return SessionMap(initial, self._store)

    def _resolve_report_dir(self) -> str | None:
        if self._report_dir:
            return os.path.abspath(self._report_dir)
        wants_reports = any(
            m.report or any(sub.report for sub in m.parallel) for m in self.definition.movements
        )
        if not wants_reports:
            return None
        slug = re.sub(r"[^a-z0-9-]+", "-", self.definition.name.lower()).strip("-") or "workflow"
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return os.path.join(self.project_cwd, self.config.reports_dir, f"{stamp}-{slug}")

    async def _run(self, resume: bool) -> WorkflowResult:
        sessions = await self._load_sessions(resume)
        report_dir = self._resolve_report_dir()
        if report_dir:
            os.makedirs(report_dir, exist_ok=True)

        ctx = RunContext(
            task=self.task,
            cwd=self.cwd,
            project_cwd=self.project_cwd,
            sessions=sessions,
            events=self.events,
            report_dir=report_dir,
            provider=self.config.provider,
            model=self.config.model,
            quiet=self.config.quiet,
            max_user_inputs=self.config.max_user_inputs,
            max_input_length=self.config.max_input_length,
        )
        for text in self._pending_inputs:
            ctx.add_user_input(text)
        self._pending_inputs.clear()
        self._ctx = ctx
        self._worktree_configured = False

        state = RunState(current_movement=self.definition.initial_movement)
        self.state = state
        logger.info(
            "WORKFLOW START — %s (initial=%s, max_iterations=%d, resume=%s)",
            self.definition.name,
            state.current_movement,
            self.definition.max_iterations,
            resume,
        )

        while state.status == RunStatus.RUNNING:
            if state.iteration >= self.definition.max_iterations:
                await self._abort(
                    state,
                    AbortReason.MAX_ITERATIONS_REACHED,
                    ERROR_MESSAGES["MAX_ITERATIONS_REACHED"],
                )
                break

            movement = self.definition.get_movement(state.current_movement)
            if movement is None:
                error = UnknownMovementError(state.current_movement)
                await self._abort(state, AbortReason.UNKNOWN_MOVEMENT, str(error))
                raise error

            result = await self._execute(movement, state, ctx)
            await self._configure_worktree(movement, result, state)

            next_movement = result.next_movement
            if (
                next_movement == movement.name
                and state.consecutive_count >= self.config.loop_threshold
            ):
                message = ERROR_MESSAGES["LOOP_DETECTED"].format(
                    movement=movement.name, count=state.consecutive_count
                )
                await self._abort(state, AbortReason.LOOP_DETECTED, message)
                break

            state.current_movement = next_movement
            if next_movement == COMPLETE_MOVEMENT:
                await self._complete(state)
            elif next_movement == ABORT_MOVEMENT:
                await self._abort(
                    state,
                    AbortReason.ABORT_MOVEMENT,
                    f"Movement '{movement.name}' selected {ABORT_MOVEMENT}",
                    movement=movement.name,
                )

        return WorkflowResult(
            workflow=self.definition.name,
            status=state.status,
            reason=state.reason,
            abort_reason=state.abort_reason,
            iterations=state.iteration,
            history=list(state.history),
            worktree=self.worktree,
            sessions=sessions.snapshot(),
        )

    async def _execute(self, movement: Movement, state: RunState, ctx: RunContext) -> MovementResult:
        state.iteration += 1
        state.movement_iterations[movement.name] = state.movement_iteration(movement.name) + 1
        if state.consecutive_movement == movement.name:
            state.consecutive_count += 1
        else:
            state.consecutive_movement = movement.name
            state.consecutive_count = 1

        logger.info(
            "MOVEMENT START — %s (iteration %d/%d, movement iteration %d)",
            movement.name,
            state.iteration,
            self.definition.max_iterations,
            state.movement_iteration(movement.name),
        )
        await self._emit(
            WorkflowEventType.MOVEMENT_START,
            movement=movement.name,
            iteration=state.iteration,
            metadata={
                "agent": movement.display_name,
                "movement_iteration": state.movement_iteration(movement.name),
            },
        )

        try:
            result = await self._executor.execute(movement, state, ctx)
        except ConfigurationError as exc:
            reason = (
                AbortReason.UNKNOWN_MOVEMENT
                if isinstance(exc, UnknownMovementError)
                else AbortReason.NO_MATCHING_RULE
            )
            await self._abort(state, reason, str(exc), movement=movement.name)
            raise
        except Exception as exc:
            message = ERROR_MESSAGES["MOVEMENT_EXECUTION_FAILED"].format(message=exc)
            await self._abort(state, AbortReason.EXECUTION_FAILED, message, movement=movement.name)
            raise MovementExecutionError(movement.name, exc) from exc

        response = result.response
        state.history.append(
            HistoryEntry(
                movement=movement.name,
                iteration=state.iteration,
                response=response,
                next_movement=result.next_movement,
            )
        )
        state.last_response = response.content

        logger.info(
            "MOVEMENT COMPLETE — %s → %s (status=%s)",
            movement.name,
            result.next_movement,
            response.status.value,
        )
        await self._emit(
            WorkflowEventType.MOVEMENT_COMPLETE,
            movement=movement.name,
            iteration=state.iteration,
            status=response.status.value,
            content=response.content,
            metadata={
                "next": result.next_movement,
                "rule_index": result.matched.index,
                "match_method": result.matched.method.value,
            },
        )
        return result

    async def _configure_worktree(
        self, movement: Movement, result: MovementResult, state: RunState
    ) -> None:
        """Act on the first worktree block a leaf movement emits during the run.

        Fan-out content is the combined text of every branch and is ignored.
        """
        if self._worktree_configured or movement.is_fan_out:
            return
        config = parse_worktree_config(result.response.content)
        if config is None:
            return
        self._worktree_configured = True

        logger.info(
            "WORKTREE CONFIGURED — %s (base=%s, branch=%s)",
            movement.name,
            config.base_branch,
            config.branch_name,
        )
        metadata = {"base_branch": config.base_branch, "branch_name": config.branch_name}
        if self._provisioner is not None:
            base_dir = os.path.join(self.project_cwd, self.config.worktree_dir)
            try:
                info = await self._provisioner.create(
                    base_dir, config.branch_name, config.base_branch
                )
            except Exception:
                logger.exception(
                    "Worktree provisioning failed for branch '%s'; continuing in %s",
                    config.branch_name,
                    self.cwd,
                )
            else:
                self.worktree = info
                self.update_cwd(info.path)
                metadata.update(path=info.path, branch=info.branch)

        await self._emit(
            WorkflowEventType.WORKTREE_CONFIGURED,
            movement=movement.name,
            iteration=state.iteration,
            metadata=metadata,
        )

    # ── Terminal transitions ────────────────────────────────────────────────

    async def _complete(self, state: RunState) -> None:
        state.status = RunStatus.COMPLETED
        state.reason = "Workflow completed"
        logger.info(
            "WORKFLOW COMPLETED — %s after %d iteration(s)",
            self.definition.name,
            state.iteration,
        )
        await self._emit(
            WorkflowEventType.WORKFLOW_COMPLETED,
            iteration=state.iteration,
            status=state.status.value,
        )

    async def _abort(
        self,
        state: RunState,
        reason: AbortReason,
        message: str,
        *,
        movement: str | None = None,
    ) -> None:
        state.status = RunStatus.ABORTED
        state.abort_reason = reason
        state.reason = message
        logger.warning("WORKFLOW ABORTED — %s: %s", self.definition.name, message)
        await self._emit(
            WorkflowEventType.WORKFLOW_ABORTED,
            movement=movement or state.current_movement,
            iteration=state.iteration,
            status=state.status.value,
            content=message,
            metadata={"abort_reason": reason.value},
        )

    async def _emit(self, event_type: WorkflowEventType, **kwargs) -> None:
        await self.events.emit(
            WorkflowEvent(event_type=event_type, workflow=self.definition.name, **kwargs)
        )
