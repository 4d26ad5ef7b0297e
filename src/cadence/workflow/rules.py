"""Rule matching — picks the transition a movement takes.

Rules are an ordered priority list: the first rule that matches wins, even
when later rules would match as well. Two kinds of signal exist:

    TagSignal        a ``[MOVEMENT:identifier]`` tag (plus the response text
                     for ``ai()`` rules) from a leaf or branch invocation
    AggregateSignal  branch name → resolved condition, for fan-out movements

A signal that no rule accepts yields ``NoMatch``; callers treat that as a
configuration defect rather than guessing a direction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

from cadence.workflow.errors import ConfigurationError
from cadence.workflow.interfaces import ConditionJudge
from cadence.workflow.models import (
    AggregateRule,
    AggregateType,
    AiRule,
    MatchMethod,
    Movement,
    Rule,
    TagRule,
    WorktreeConfig,
)

logger = logging.getLogger(__name__)


# ── Signals & results ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TagSignal:
    tag: str | None
    content: str = ""
    method: MatchMethod = MatchMethod.PHASE1_TAG

    def __str__(self) -> str:
        return f"tag={self.tag!r}"


@dataclass(frozen=True)
class AggregateSignal:
    outcomes: dict[str, str | None] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"outcomes={self.outcomes!r}"


MatchSignal = TagSignal | AggregateSignal


@dataclass(frozen=True)
class MatchedRule:
    index: int
    rule: Rule
    method: MatchMethod

    @property
    def next(self) -> str | None:
        return self.rule.next

    @property
    def condition(self) -> str:
        return self.rule.condition


@dataclass(frozen=True)
class NoMatch:
    signal: MatchSignal


# ── Tag parsing ──────────────────────────────────────────────────────────────


def _tag_pattern(movement_name: str) -> re.Pattern[str]:
    # Movement prefix is case-insensitive, the identifier is not.
    return re.compile(r"\[(?i:" + re.escape(movement_name) + r"):\s*([^\[\]\n]+?)\s*\]")


def extract_tags(content: str, movement_name: str) -> list[str]:
    """Return every identifier tagged for ``movement_name``, in order of appearance."""
    return _tag_pattern(movement_name).findall(content or "")


def single_tag(content: str, movement_name: str) -> str | None:
    """The tag identifier if exactly one distinct identifier was emitted."""
    distinct = set(extract_tags(content, movement_name))
    if len(distinct) == 1:
        return distinct.pop()
    return None


def find_unambiguous_tag(content: str, movement: Movement) -> str | None:
    """A phase-1 tag that names one of the movement's tag rules, else None."""
    tag = single_tag(content, movement.name)
    if tag is None:
        return None
    if any(rule.condition == tag for rule in movement.tag_rules()):
        return tag
    return None


def format_tag(movement_name: str, identifier: str) -> str:
    return f"[{movement_name.upper()}:{identifier}]"


_WORKTREE_BLOCK_RE = re.compile(
    r"worktree:\s*\n\s*baseBranch:\s*(\S+)\s*\n\s*branchName:\s*(\S+)"
)


def parse_worktree_config(content: str) -> WorktreeConfig | None:
    """Parse the reserved worktree block a planning movement may emit::

        worktree:
          baseBranch: main
          branchName: feat/login
    """
    match = _WORKTREE_BLOCK_RE.search(content or "")
    if not match:
        return None
    return WorktreeConfig(base_branch=match.group(1), branch_name=match.group(2))


def has_tag_based_rules(movement: Movement) -> bool:
    """True unless every rule is an ``ai()`` or aggregate condition."""
    if not movement.rules:
        return False
    return not all(isinstance(r, (AiRule, AggregateRule)) for r in movement.rules)


def needs_status_judgment(movement: Movement) -> bool:
    """Whether phase 3 may be needed for this movement at all."""
    return not movement.is_fan_out and has_tag_based_rules(movement)


# ── Resolution ───────────────────────────────────────────────────────────────


def aggregate_matches(rule: AggregateRule, outcomes: dict[str, str | None]) -> bool:
    if not outcomes:
        return False
    hits = [value == rule.aggregate_condition for value in outcomes.values()]
    match rule.aggregate_type:
        case AggregateType.ALL:
            return all(hits)
        case AggregateType.ANY:
            return any(hits)
    return False


async def resolve(
    rules: Sequence[Rule],
    signal: MatchSignal,
    judge: ConditionJudge | None = None,
) -> MatchedRule | NoMatch:
    """Return the first rule (in declared order) that accepts ``signal``.

    The judge is only consulted for ``ai()`` rules that are actually reached,
    so a tag match ahead of an ``ai()`` rule never costs a judgment call.
    """
    for index, rule in enumerate(rules):
        match rule:
            case TagRule():
                if isinstance(signal, TagSignal) and signal.tag == rule.condition:
                    return MatchedRule(index, rule, signal.method)
            case AiRule():
                if not isinstance(signal, TagSignal):
                    continue
                if judge is None:
                    msg = f"Rule ai(\"{rule.condition}\") needs a condition judge, none configured"
                    raise ConfigurationError(msg)
                if await judge(signal.content, rule.condition):
                    logger.debug("ai() condition matched: %s", rule.condition)
                    return MatchedRule(index, rule, MatchMethod.AI_JUDGE)
            case AggregateRule():
                if isinstance(signal, AggregateSignal) and aggregate_matches(
                    rule, signal.outcomes
                ):
                    return MatchedRule(index, rule, MatchMethod.AGGREGATE)
    logger.debug("No rule matched %s", signal)
    return NoMatch(signal)
