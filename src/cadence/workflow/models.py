"""Workflow Pydantic models — definitions and runtime state.

Key exports:
    Definition models: WorkflowDefinition, Movement, ReportSpec,
        TagRule, AiRule, AggregateRule (the ``Rule`` union)
    Runtime state models: RunState, AgentResponse, HistoryEntry,
        WorkflowResult, WorktreeConfig, WorktreeInfo
    Enums: RunStatus, AggregateType, AbortReason, MatchMethod, ResponseStatus
    Sentinels: COMPLETE_MOVEMENT, ABORT_MOVEMENT
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

# ── Sentinels & limits ───────────────────────────────────────────────────────

COMPLETE_MOVEMENT = "COMPLETE"
ABORT_MOVEMENT = "ABORT"
TERMINAL_MOVEMENTS = frozenset({COMPLETE_MOVEMENT, ABORT_MOVEMENT})

MAX_USER_INPUTS = 100
MAX_INPUT_LENGTH = 10000

MOVEMENT_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

# ai("...") / all("...") / any("...") shorthand used in workflow YAML
_AI_CONDITION_RE = re.compile(r"""^ai\(\s*["'](.+)["']\s*\)$""", re.DOTALL)
_AGGREGATE_CONDITION_RE = re.compile(r"""^(all|any)\(\s*["'](.+)["']\s*\)$""")


# ── Enums ────────────────────────────────────────────────────────────────────


class RunStatus(str, Enum):
    """Workflow run lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AggregateType(str, Enum):
    """How an aggregate rule combines branch outcomes."""

    ALL = "all"
    ANY = "any"


class AbortReason(str, Enum):
    """Structured reason attached to an aborted run."""

    LOOP_DETECTED = "loop_detected"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ABORT_MOVEMENT = "abort_movement"
    UNKNOWN_MOVEMENT = "unknown_movement"
    NO_MATCHING_RULE = "no_matching_rule"
    EXECUTION_FAILED = "execution_failed"


class MatchMethod(str, Enum):
    """Which signal selected the rule."""

    PHASE1_TAG = "phase1_tag"
    PHASE3_TAG = "phase3_tag"
    AI_JUDGE = "ai_judge"
    AGGREGATE = "aggregate"


class ResponseStatus(str, Enum):
    DONE = "done"
    BLOCKED = "blocked"
    ERROR = "error"


# ── Rules ────────────────────────────────────────────────────────────────────


class TagRule(BaseModel):
    """Matched when the agent emits ``[MOVEMENT:condition]``."""

    kind: Literal["tag"] = "tag"
    condition: str
    next: str | None = None

    @field_validator("condition")
    @classmethod
    def _validate_condition(cls, v: str) -> str:
        if not v.strip() or any(ch in v for ch in "[]\n"):
            raise ValueError(f"Tag condition must be a single-line identifier, got {v!r}")
        return v


class AiRule(BaseModel):
    """Matched when a judgment call says the response satisfies ``condition``."""

    kind: Literal["ai"] = "ai"
    condition: str
    next: str | None = None


class AggregateRule(BaseModel):
    """Evaluated over the outcomes of a fan-out movement's branches."""

    kind: Literal["aggregate"] = "aggregate"
    aggregate_type: AggregateType
    aggregate_condition: str
    next: str

    @property
    def condition(self) -> str:
        return f'{self.aggregate_type.value}("{self.aggregate_condition}")'


Rule = Annotated[Union[TagRule, AiRule, AggregateRule], Field(discriminator="kind")]


def coerce_rule(raw: Any) -> Any:
    """Expand the YAML rule shorthand into an explicit ``kind``.

    ``condition: ai("...")`` becomes an AiRule, ``all("x")`` / ``any("x")``
    an AggregateRule, and any other condition a TagRule. Dicts that already
    carry ``kind`` and model instances pass through untouched.
    """
    if not isinstance(raw, dict) or "kind" in raw:
        return raw
    condition = str(raw.get("condition", "")).strip()
    target = raw.get("next")

    ai_match = _AI_CONDITION_RE.match(condition)
    if ai_match:
        return {"kind": "ai", "condition": ai_match.group(1), "next": target}

    agg_match = _AGGREGATE_CONDITION_RE.match(condition)
    if agg_match:
        return {
            "kind": "aggregate",
            "aggregate_type": agg_match.group(1),
            "aggregate_condition": agg_match.group(2),
            "next": target,
        }

    return {"kind": "tag", "condition": condition, "next": target}


# ── Definition models ────────────────────────────────────────────────────────


class ReportSpec(BaseModel):
    """A report file the agent is asked to write in phase 2."""

    name: str
    format: str = ""

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in ("", ".", ".."):
            raise ValueError(f"Report name must be a plain file name, got {v!r}")
        return v


class Movement(BaseModel):
    """A named node in the workflow graph.

    A movement with a non-empty ``parallel`` list is a fan-out movement whose
    own rules are aggregate rules; every other movement is a leaf executed by
    a single agent.
    """

    name: str
    agent: str | None = None
    agent_name: str = ""
    description: str = ""
    instruction_template: str = Field("", alias="instruction")
    rules: list[Rule] = []
    parallel: list[Movement] = []
    report: list[ReportSpec] = []
    edit: bool = False
    pass_previous_response: bool = True
    provider: str | None = None
    model: str | None = None

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("rules", mode="before")
    @classmethod
    def _expand_rules(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [coerce_rule(item) for item in v]
        return v

    @field_validator("report", mode="before")
    @classmethod
    def _expand_report(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, (str, dict)):
            v = [v]
        return [{"name": item} if isinstance(item, str) else item for item in v]

    @model_validator(mode="after")
    def validate_movement(self) -> Movement:
        if not MOVEMENT_NAME_PATTERN.match(self.name):
            msg = f"Movement name '{self.name}' must match pattern {MOVEMENT_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        if self.name in TERMINAL_MOVEMENTS:
            raise ValueError(f"Movement name '{self.name}' is reserved")

        if self.parallel:
            for rule in self.rules:
                if not isinstance(rule, AggregateRule):
                    msg = (
                        f"Movement '{self.name}': fan-out movements only accept "
                        f"all()/any() rules, got '{rule.condition}'"
                    )
                    raise ValueError(msg)
            names = [sub.name for sub in self.parallel]
            dupes = sorted({n for n in names if names.count(n) > 1})
            if dupes:
                raise ValueError(f"Movement '{self.name}': duplicate sub-movement names {dupes}")
            agents = [sub.agent for sub in self.parallel]
            shared = sorted({a for a in agents if a and agents.count(a) > 1})
            if shared:
                msg = (
                    f"Movement '{self.name}': sub-movements share agents {shared}; "
                    "each branch needs its own agent session"
                )
                raise ValueError(msg)
            for sub in self.parallel:
                if sub.parallel:
                    msg = f"Movement '{self.name}': sub-movement '{sub.name}' cannot fan out"
                    raise ValueError(msg)
        else:
            if not self.agent:
                raise ValueError(f"Movement '{self.name}': leaf movements require 'agent'")
            for rule in self.rules:
                if isinstance(rule, AggregateRule):
                    msg = (
                        f"Movement '{self.name}': aggregate rule '{rule.condition}' "
                        "is only valid on a movement with 'parallel'"
                    )
                    raise ValueError(msg)
        return self

    @property
    def is_fan_out(self) -> bool:
        return bool(self.parallel)

    @property
    def display_name(self) -> str:
        return self.agent_name or self.agent or self.name

    def tag_rules(self) -> list[TagRule]:
        return [r for r in self.rules if isinstance(r, TagRule)]


Movement.model_rebuild()


class WorkflowDefinition(BaseModel):
    """Complete workflow definition, immutable once loaded."""

    name: str
    description: str = ""
    movements: list[Movement] = Field(min_length=1)
    initial_movement: str = ""
    max_iterations: int = Field(10, ge=1)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _default_initial_movement(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("initial_movement"):
            movements = data.get("movements") or []
            if movements:
                first = movements[0]
                name = first.get("name") if isinstance(first, dict) else getattr(first, "name", "")
                data = {**data, "initial_movement": name}
        return data

    @model_validator(mode="after")
    def validate_definition(self) -> WorkflowDefinition:
        names = [m.name for m in self.movements]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate movement names: {dupes}")
        if self.initial_movement not in names:
            raise ValueError(f"Initial movement '{self.initial_movement}' is not defined")
        errors = self.validate_references()
        if errors:
            raise ValueError("; ".join(errors))
        return self

    def validate_references(self) -> list[str]:
        """Return a message for every movement or rule that cannot be followed."""
        valid = {m.name for m in self.movements} | TERMINAL_MOVEMENTS
        errors: list[str] = []
        for movement in self.movements:
            if not movement.rules:
                errors.append(f"Movement '{movement.name}' has no rules")
            for rule in movement.rules:
                if rule.next is None:
                    errors.append(
                        f"Movement '{movement.name}' rule '{rule.condition}' has no 'next'"
                    )
                elif rule.next not in valid:
                    errors.append(
                        f"Movement '{movement.name}' rule '{rule.condition}' "
                        f"references unknown movement '{rule.next}'"
                    )
            # Sub-movement rules classify the branch; their next is informational.
            for sub in movement.parallel:
                for rule in sub.rules:
                    if rule.next is not None and rule.next not in valid:
                        errors.append(
                            f"Sub-movement '{movement.name}/{sub.name}' rule "
                            f"'{rule.condition}' references unknown movement '{rule.next}'"
                        )
        return errors

    def get_movement(self, name: str) -> Movement | None:
        for movement in self.movements:
            if movement.name == name:
                return movement
        return None

    def get_movement_index(self, name: str) -> int | None:
        for i, movement in enumerate(self.movements):
            if movement.name == name:
                return i
        return None


# ── Runtime models ───────────────────────────────────────────────────────────


class AgentResponse(BaseModel):
    """What an agent invocation returned, plus how the engine classified it."""

    agent: str
    content: str = ""
    session_id: str | None = None
    status: ResponseStatus = ResponseStatus.DONE
    tag: str | None = None
    matched_rule_index: int | None = None
    match_method: MatchMethod | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HistoryEntry(BaseModel):
    movement: str
    iteration: int
    response: AgentResponse
    next_movement: str


class WorktreeConfig(BaseModel):
    """Worktree request emitted by a planning movement."""

    base_branch: str
    branch_name: str


class WorktreeInfo(BaseModel):
    path: str
    branch: str
    base_branch: str


class RunState(BaseModel):
    """Mutable state of one ``run()`` call, owned by the engine."""

    current_movement: str
    iteration: int = 0
    movement_iterations: dict[str, int] = {}
    history: list[HistoryEntry] = []
    status: RunStatus = RunStatus.RUNNING
    abort_reason: AbortReason | None = None
    reason: str | None = None
    last_response: str | None = None
    consecutive_movement: str | None = None
    consecutive_count: int = 0

    def movement_iteration(self, name: str) -> int:
        return self.movement_iterations.get(name, 0)


class WorkflowResult(BaseModel):
    """Final summary returned by ``WorkflowEngine.run()``."""

    workflow: str
    status: RunStatus
    reason: str | None = None
    abort_reason: AbortReason | None = None
    iterations: int = 0
    history: list[HistoryEntry] = []
    worktree: WorktreeInfo | None = None
    sessions: dict[str, str] = {}

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED
