"""Tests for the phase protocol — execute, report and status judgment."""

from cadence.workflow.context import RunContext, SessionMap
from cadence.workflow.events import EventStream
from cadence.workflow.instructions import InstructionContext
from cadence.workflow.models import AgentResponse, MatchMethod, Movement
from cadence.workflow.phases import PhaseRunner


class ScriptedInvoker:
    """Replies with queued contents per agent; records every call."""

    def __init__(self, replies: dict[str, list]):
        self.replies = {agent: list(items) for agent, items in replies.items()}
        self.calls: list[dict] = []

    async def __call__(self, agent, instruction, *, session_id=None, cwd, provider=None, model=None):
        self.calls.append(
            {
                "agent": agent,
                "instruction": instruction,
                "session_id": session_id,
                "cwd": cwd,
                "provider": provider,
                "model": model,
            }
        )
        reply = self.replies[agent].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return AgentResponse(agent=agent, content=reply, session_id=session_id or f"{agent}-s1")


def _ctx(**overrides) -> RunContext:
    data = {
        "task": "task",
        "cwd": "/repo",
        "project_cwd": "/repo",
        "sessions": SessionMap(),
        "events": EventStream(),
    }
    data.update(overrides)
    return RunContext(**data)


def _instruction_context() -> InstructionContext:
    return InstructionContext(task="task", iteration=1, max_iterations=5, movement_iteration=1, cwd="/repo")


def _review(**overrides) -> Movement:
    data = {
        "name": "review",
        "agent": "reviewer",
        "instruction": "Review it.",
        "rules": [
            {"condition": "approved", "next": "COMPLETE"},
            {"condition": "needs_fix", "next": "review"},
        ],
    }
    data.update(overrides)
    return Movement(**data)


class TestStatusJudgment:
    async def test_phase3_skipped_when_phase1_tag_is_unambiguous(self):
        invoker = ScriptedInvoker({"reviewer": ["Looks good. [REVIEW:approved]"]})
        result = await PhaseRunner(invoker).run(_review(), _instruction_context(), _ctx())

        assert len(invoker.calls) == 1
        assert result.tag == "approved"
        assert result.method == MatchMethod.PHASE1_TAG
        assert result.response.tag == "approved"

    async def test_phase3_runs_without_tag(self):
        invoker = ScriptedInvoker({"reviewer": ["I reviewed it.", "[REVIEW:needs_fix]"]})
        result = await PhaseRunner(invoker).run(_review(), _instruction_context(), _ctx())

        assert len(invoker.calls) == 2
        assert "## Status Judgment" in invoker.calls[1]["instruction"]
        assert result.tag == "needs_fix"
        assert result.method == MatchMethod.PHASE3_TAG
        assert result.response.content == "I reviewed it."
        assert len(result.responses) == 2

    async def test_phase3_runs_when_phase1_is_ambiguous(self):
        invoker = ScriptedInvoker(
            {"reviewer": ["[REVIEW:approved] or [REVIEW:needs_fix]", "[REVIEW:approved]"]}
        )
        result = await PhaseRunner(invoker).run(_review(), _instruction_context(), _ctx())
        assert len(invoker.calls) == 2
        assert result.tag == "approved"

    async def test_phase3_runs_when_phase1_tag_names_no_rule(self):
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:maybe]", "[REVIEW:approved]"]})
        result = await PhaseRunner(invoker).run(_review(), _instruction_context(), _ctx())
        assert len(invoker.calls) == 2
        assert result.tag == "approved"

    async def test_ai_only_rules_never_run_phase3(self):
        movement = _review(rules=[{"condition": 'ai("it is fine")', "next": "COMPLETE"}])
        invoker = ScriptedInvoker({"reviewer": ["fine"]})
        result = await PhaseRunner(invoker).run(movement, _instruction_context(), _ctx())
        assert len(invoker.calls) == 1
        assert result.tag is None
        assert result.method is None

    async def test_rule_less_branch_uses_emitted_tag(self):
        movement = Movement(name="security", agent="auditor")
        invoker = ScriptedInvoker({"auditor": ["[SECURITY:approved]"]})
        result = await PhaseRunner(invoker).run(movement, _instruction_context(), _ctx())
        assert len(invoker.calls) == 1
        assert result.tag == "approved"


class TestReportPhase:
    async def test_report_phase_runs_with_report_dir(self):
        movement = _review(report="review.md")
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]", "report written"]})
        result = await PhaseRunner(invoker).run(
            movement, _instruction_context(), _ctx(report_dir="/reports")
        )
        assert len(invoker.calls) == 2
        assert "/reports/review.md" in invoker.calls[1]["instruction"]
        assert result.tag == "approved"
        assert result.report_error is None

    async def test_report_phase_skipped_without_report_dir(self):
        movement = _review(report="review.md")
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]"]})
        await PhaseRunner(invoker).run(movement, _instruction_context(), _ctx())
        assert len(invoker.calls) == 1

    async def test_report_failure_is_recovered(self):
        movement = _review(report="review.md")
        invoker = ScriptedInvoker(
            {"reviewer": ["[REVIEW:approved]", RuntimeError("disk full")]}
        )
        result = await PhaseRunner(invoker).run(
            movement, _instruction_context(), _ctx(report_dir="/reports")
        )
        assert result.tag == "approved"
        assert result.report_error == "disk full"

    async def test_report_runs_before_status_judgment(self):
        movement = _review(report="review.md")
        invoker = ScriptedInvoker({"reviewer": ["done reviewing", "report", "[REVIEW:approved]"]})
        await PhaseRunner(invoker).run(movement, _instruction_context(), _ctx(report_dir="/reports"))
        assert "## Report Output" in invoker.calls[1]["instruction"]
        assert "## Status Judgment" in invoker.calls[2]["instruction"]


class TestSessionsAndOverrides:
    async def test_all_phases_share_the_agent_session(self):
        invoker = ScriptedInvoker({"reviewer": ["no tag", "[REVIEW:approved]"]})
        ctx = _ctx()
        await PhaseRunner(invoker).run(_review(), _instruction_context(), ctx)

        assert invoker.calls[0]["session_id"] is None
        assert invoker.calls[1]["session_id"] == "reviewer-s1"
        assert ctx.sessions.get("reviewer") == "reviewer-s1"

    async def test_existing_session_is_passed(self):
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]"]})
        ctx = _ctx(sessions=SessionMap({"reviewer": "tok-1"}))
        await PhaseRunner(invoker).run(_review(), _instruction_context(), ctx)
        assert invoker.calls[0]["session_id"] == "tok-1"

    async def test_movement_provider_and_model_win(self):
        movement = _review(provider="anthropic", model="opus")
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]"]})
        await PhaseRunner(invoker).run(
            movement, _instruction_context(), _ctx(provider="copilot", model="gpt")
        )
        assert invoker.calls[0]["provider"] == "anthropic"
        assert invoker.calls[0]["model"] == "opus"

    async def test_engine_level_fallback(self):
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]"]})
        await PhaseRunner(invoker).run(
            _review(), _instruction_context(), _ctx(provider="copilot", model="gpt")
        )
        assert invoker.calls[0]["provider"] == "copilot"
        assert invoker.calls[0]["model"] == "gpt"

    async def test_cwd_comes_from_context(self):
        invoker = ScriptedInvoker({"reviewer": ["[REVIEW:approved]"]})
        await PhaseRunner(invoker).run(_review(), _instruction_context(), _ctx(cwd="/worktree"))
        assert invoker.calls[0]["cwd"] == "/worktree"
