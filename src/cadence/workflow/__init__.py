"""Workflow engine — movements, rules, phases and the run loop.

Key exports:
    WorkflowEngine — Drives a workflow definition to completion
    MovementExecutor — Executes one movement and resolves its transition
    ParallelRunner — Concurrent fan-out with a full join
    EventStream — Ordered lifecycle event stream
    WorkflowDefinition, Movement — Definition models
    RunState, WorkflowResult — Runtime state models
    load_workflow, load_workflows — YAML loading
"""

from cadence.workflow.context import RunContext, SessionMap
from cadence.workflow.engine import WorkflowEngine
from cadence.workflow.errors import (
    AgentInvocationError,
    CadenceError,
    ConfigurationError,
    MovementExecutionError,
    NoMatchingRuleError,
    ParallelBranchError,
    UnknownMovementError,
    WorkflowError,
)
from cadence.workflow.events import EventStream, WorkflowEvent, WorkflowEventType
from cadence.workflow.executor import BranchResult, MovementExecutor, MovementResult
from cadence.workflow.interfaces import (
    AgentInvoker,
    ConditionJudge,
    SessionStore,
    WorktreeProvisioner,
)
from cadence.workflow.loader import load_workflow, load_workflows, parse_workflow
from cadence.workflow.models import (
    ABORT_MOVEMENT,
    COMPLETE_MOVEMENT,
    AbortReason,
    AgentResponse,
    AggregateRule,
    AggregateType,
    AiRule,
    HistoryEntry,
    MatchMethod,
    Movement,
    ReportSpec,
    ResponseStatus,
    RunState,
    RunStatus,
    TagRule,
    WorkflowDefinition,
    WorkflowResult,
    WorktreeConfig,
    WorktreeInfo,
)
from cadence.workflow.parallel import BranchOutcome, ParallelRunner
from cadence.workflow.phases import PhaseResult, PhaseRunner
from cadence.workflow.rules import (
    AggregateSignal,
    MatchedRule,
    NoMatch,
    TagSignal,
    parse_worktree_config,
    resolve,
)

__all__ = [
    # Engine
    "WorkflowEngine",
    "MovementExecutor",
    "MovementResult",
    "BranchResult",
    "ParallelRunner",
    "BranchOutcome",
    "PhaseRunner",
    "PhaseResult",
    "RunContext",
    "SessionMap",
    # Events
    "EventStream",
    "WorkflowEvent",
    "WorkflowEventType",
    # Collaborator protocols
    "AgentInvoker",
    "ConditionJudge",
    "SessionStore",
    "WorktreeProvisioner",
    # Rule matching
    "resolve",
    "TagSignal",
    "AggregateSignal",
    "MatchedRule",
    "NoMatch",
    "parse_worktree_config",
    # Loading
    "load_workflow",
    "load_workflows",
    "parse_workflow",
    # Definition models
    "WorkflowDefinition",
    "Movement",
    "ReportSpec",
    "TagRule",
    "AiRule",
    "AggregateRule",
    # Runtime state models
    "RunState",
    "AgentResponse",
    "HistoryEntry",
    "WorkflowResult",
    "WorktreeConfig",
    "WorktreeInfo",
    # Enums & sentinels
    "RunStatus",
    "AggregateType",
    "AbortReason",
    "MatchMethod",
    "ResponseStatus",
    "COMPLETE_MOVEMENT",
    "ABORT_MOVEMENT",
    # Errors
    "CadenceError",
    "WorkflowError",
    "ConfigurationError",
    "UnknownMovementError",
    "NoMatchingRuleError",
    "MovementExecutionError",
    "AgentInvocationError",
    "ParallelBranchError",
]
