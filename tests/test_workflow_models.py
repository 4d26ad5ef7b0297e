"""Tests for workflow definition models and validation."""

import pytest
from pydantic import ValidationError

from cadence.workflow.models import (
    AggregateRule,
    AggregateType,
    AiRule,
    Movement,
    ReportSpec,
    RunState,
    RunStatus,
    TagRule,
    WorkflowDefinition,
    WorkflowResult,
    coerce_rule,
)


def _definition(**overrides) -> WorkflowDefinition:
    data = {
        "name": "test",
        "movements": [
            {
                "name": "plan",
                "agent": "planner",
                "rules": [{"condition": "ready", "next": "implement"}],
            },
            {
                "name": "implement",
                "agent": "coder",
                "rules": [{"condition": "done", "next": "COMPLETE"}],
            },
        ],
    }
    data.update(overrides)
    return WorkflowDefinition(**data)


class TestRuleShorthand:
    def test_plain_condition_is_tag_rule(self):
        assert coerce_rule({"condition": "done", "next": "COMPLETE"}) == {
            "kind": "tag",
            "condition": "done",
            "next": "COMPLETE",
        }

    def test_ai_condition(self):
        raw = coerce_rule({"condition": 'ai("the tests pass")', "next": "COMPLETE"})
        assert raw["kind"] == "ai"
        assert raw["condition"] == "the tests pass"

    def test_ai_condition_single_quotes(self):
        raw = coerce_rule({"condition": "ai('looks fine')", "next": "COMPLETE"})
        assert raw["condition"] == "looks fine"

    def test_aggregate_conditions(self):
        all_rule = coerce_rule({"condition": 'all("approved")', "next": "COMPLETE"})
        any_rule = coerce_rule({"condition": 'any("needs_fix")', "next": "fix"})
        assert all_rule["kind"] == "aggregate"
        assert all_rule["aggregate_type"] == "all"
        assert all_rule["aggregate_condition"] == "approved"
        assert any_rule["aggregate_type"] == "any"

    def test_explicit_kind_passes_through(self):
        raw = {"kind": "tag", "condition": "x", "next": "COMPLETE"}
        assert coerce_rule(raw) is raw

    def test_movement_expands_rules(self):
        movement = Movement(
            name="plan",
            agent="planner",
            rules=[
                {"condition": "ready", "next": "COMPLETE"},
                {"condition": 'ai("impossible")', "next": "ABORT"},
            ],
        )
        assert isinstance(movement.rules[0], TagRule)
        assert isinstance(movement.rules[1], AiRule)
        assert movement.tag_rules() == [movement.rules[0]]


class TestMovementValidation:
    def test_instruction_alias(self):
        movement = Movement(name="plan", agent="planner", instruction="Do {task}")
        assert movement.instruction_template == "Do {task}"

    def test_leaf_requires_agent(self):
        with pytest.raises(ValidationError, match="require 'agent'"):
            Movement(name="plan")

    def test_invalid_name(self):
        with pytest.raises(ValidationError, match="must match pattern"):
            Movement(name="1plan", agent="planner")

    @pytest.mark.parametrize("name", ["COMPLETE", "ABORT"])
    def test_reserved_names(self, name):
        with pytest.raises(ValidationError, match="reserved"):
            Movement(name=name, agent="x")

    def test_tag_condition_cannot_contain_brackets(self):
        with pytest.raises(ValidationError):
            TagRule(condition="[bad]", next="COMPLETE")

    def test_leaf_rejects_aggregate_rules(self):
        with pytest.raises(ValidationError, match="only valid on a movement with 'parallel'"):
            Movement(
                name="review",
                agent="reviewer",
                rules=[{"condition": 'all("ok")', "next": "COMPLETE"}],
            )

    def test_fan_out_accepts_only_aggregate_rules(self):
        with pytest.raises(ValidationError, match="only accept all\\(\\)/any\\(\\) rules"):
            Movement(
                name="review",
                parallel=[{"name": "a", "agent": "x"}],
                rules=[{"condition": "ok", "next": "COMPLETE"}],
            )

    def test_fan_out_duplicate_sub_names(self):
        with pytest.raises(ValidationError, match="duplicate sub-movement names"):
            Movement(
                name="review",
                parallel=[{"name": "a", "agent": "x"}, {"name": "a", "agent": "y"}],
                rules=[{"condition": 'all("ok")', "next": "COMPLETE"}],
            )

    def test_fan_out_branches_need_distinct_agents(self):
        with pytest.raises(ValidationError, match=r"share agents \['x'\]"):
            Movement(
                name="review",
                parallel=[{"name": "a", "agent": "x"}, {"name": "b", "agent": "x"}],
                rules=[{"condition": 'all("ok")', "next": "COMPLETE"}],
            )

    def test_fan_out_cannot_nest(self):
        inner = {
            "name": "inner",
            "parallel": [{"name": "leaf", "agent": "x"}],
            "rules": [{"condition": 'all("ok")', "next": "COMPLETE"}],
        }
        with pytest.raises(ValidationError, match="cannot fan out"):
            Movement(
                name="review",
                parallel=[inner],
                rules=[{"condition": 'all("ok")', "next": "COMPLETE"}],
            )

    def test_fan_out_properties(self):
        movement = Movement(
            name="review",
            parallel=[{"name": "a", "agent": "x"}, {"name": "b", "agent": "y"}],
            rules=[{"condition": 'all("ok")', "next": "COMPLETE"}],
        )
        assert movement.is_fan_out
        assert [s.name for s in movement.parallel] == ["a", "b"]
        assert isinstance(movement.rules[0], AggregateRule)
        assert movement.rules[0].aggregate_type == AggregateType.ALL

    def test_report_shorthands(self):
        single = Movement(name="plan", agent="p", report="plan.md")
        many = Movement(name="plan", agent="p", report=["a.md", {"name": "b.md", "format": "# B"}])
        assert single.report == [ReportSpec(name="plan.md")]
        assert [r.name for r in many.report] == ["a.md", "b.md"]
        assert many.report[1].format == "# B"

    def test_report_name_must_be_plain(self):
        with pytest.raises(ValidationError, match="plain file name"):
            Movement(name="plan", agent="p", report="../escape.md")

    def test_display_name(self):
        assert Movement(name="plan", agent="planner").display_name == "planner"
        assert Movement(name="plan", agent="planner", agent_name="Planner").display_name == "Planner"

    def test_movement_is_frozen(self):
        movement = Movement(name="plan", agent="planner")
        with pytest.raises(ValidationError):
            movement.agent = "other"


class TestDefinitionValidation:
    def test_initial_movement_defaults_to_first(self):
        assert _definition().initial_movement == "plan"

    def test_explicit_initial_movement(self):
        assert _definition(initial_movement="implement").initial_movement == "implement"

    def test_unknown_initial_movement(self):
        with pytest.raises(ValidationError, match="Initial movement 'nope'"):
            _definition(initial_movement="nope")

    def test_duplicate_movement_names(self):
        movements = [
            {"name": "plan", "agent": "a", "rules": [{"condition": "x", "next": "COMPLETE"}]},
            {"name": "plan", "agent": "b", "rules": [{"condition": "x", "next": "COMPLETE"}]},
        ]
        with pytest.raises(ValidationError, match="Duplicate movement names"):
            _definition(movements=movements)

    def test_unknown_next_reported(self):
        movements = [
            {"name": "plan", "agent": "a", "rules": [{"condition": "x", "next": "nowhere"}]},
        ]
        with pytest.raises(ValidationError, match="unknown movement 'nowhere'"):
            _definition(movements=movements)

    def test_top_level_rule_needs_next(self):
        movements = [{"name": "plan", "agent": "a", "rules": [{"condition": "x"}]}]
        with pytest.raises(ValidationError, match="has no 'next'"):
            _definition(movements=movements)

    def test_movement_without_rules(self):
        movements = [{"name": "plan", "agent": "a"}]
        with pytest.raises(ValidationError, match="has no rules"):
            _definition(movements=movements)

    def test_sub_movement_rules_may_omit_next(self):
        movements = [
            {
                "name": "review",
                "parallel": [
                    {"name": "a", "agent": "x", "rules": [{"condition": "approved"}]},
                    {"name": "b", "agent": "y"},
                ],
                "rules": [{"condition": 'all("approved")', "next": "COMPLETE"}],
            }
        ]
        definition = _definition(movements=movements)
        assert definition.get_movement("review").is_fan_out

    def test_max_iterations_must_be_positive(self):
        with pytest.raises(ValidationError):
            _definition(max_iterations=0)

    def test_requires_movements(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition(name="empty", movements=[])

    def test_lookups(self):
        definition = _definition()
        assert definition.get_movement("implement").agent == "coder"
        assert definition.get_movement("missing") is None
        assert definition.get_movement_index("implement") == 1
        assert definition.get_movement_index("missing") is None


class TestRuntimeModels:
    def test_run_state_defaults(self):
        state = RunState(current_movement="plan")
        assert state.status == RunStatus.RUNNING
        assert state.iteration == 0
        assert state.movement_iteration("plan") == 0

    def test_run_states_do_not_share_containers(self):
        a = RunState(current_movement="plan")
        b = RunState(current_movement="plan")
        a.movement_iterations["plan"] = 3
        assert b.movement_iterations == {}

    def test_result_success(self):
        assert WorkflowResult(workflow="w", status=RunStatus.COMPLETED).success
        assert not WorkflowResult(workflow="w", status=RunStatus.ABORTED).success
