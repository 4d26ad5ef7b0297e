"""Tests for the parallel runner — join semantics, ordering, failure reporting."""

import asyncio

import pytest

from cadence.workflow.errors import ConfigurationError, ParallelBranchError
from cadence.workflow.events import EventStream, WorkflowEventType, drain
from cadence.workflow.models import Movement
from cadence.workflow.parallel import ParallelRunner


def _subs(*names: str) -> list[Movement]:
    return [Movement(name=name, agent=f"{name}-agent") for name in names]


class TestJoin:
    async def test_outcomes_in_declaration_order(self):
        delays = {"a": 0.03, "b": 0.0, "c": 0.01}

        async def run_branch(sub):
            await asyncio.sleep(delays[sub.name])
            return sub.name.upper()

        outcomes = await ParallelRunner().run_all("review", _subs("a", "b", "c"), run_branch)
        assert [o.name for o in outcomes] == ["a", "b", "c"]
        assert [o.value for o in outcomes] == ["A", "B", "C"]
        assert all(o.ok for o in outcomes)

    async def test_branches_run_concurrently(self):
        started: list[str] = []
        release = asyncio.Event()

        async def run_branch(sub):
            started.append(sub.name)
            if len(started) == 3:
                release.set()
            await asyncio.wait_for(release.wait(), timeout=1)
            return sub.name

        outcomes = await ParallelRunner().run_all("review", _subs("a", "b", "c"), run_branch)
        assert sorted(started) == ["a", "b", "c"]
        assert len(outcomes) == 3


class TestFailure:
    async def test_fast_failure_waits_for_slow_successes(self):
        finished: list[str] = []

        async def run_branch(sub):
            if sub.name == "b":
                raise RuntimeError("boom")
            await asyncio.sleep(0.02)
            finished.append(sub.name)
            return sub.name

        with pytest.raises(ParallelBranchError) as exc_info:
            await ParallelRunner().run_all("review", _subs("a", "b", "c", "d"), run_branch)

        err = exc_info.value
        assert sorted(finished) == ["a", "c", "d"]
        assert err.movement == "review"
        assert err.branch == "b"
        assert isinstance(err.__cause__, RuntimeError)
        assert [o.name for o in err.outcomes] == ["a", "b", "c", "d"]
        assert [o.ok for o in err.outcomes] == [True, False, True, True]

    async def test_first_failure_in_declaration_order_reported(self):
        async def run_branch(sub):
            if sub.name == "a":
                await asyncio.sleep(0.02)
                raise ValueError("late")
            if sub.name == "c":
                raise ValueError("early")
            return sub.name

        with pytest.raises(ParallelBranchError) as exc_info:
            await ParallelRunner().run_all("review", _subs("a", "b", "c"), run_branch)
        assert exc_info.value.branch == "a"
        assert "late" in str(exc_info.value)

    async def test_configuration_error_raised_unwrapped(self):
        finished: list[str] = []

        async def run_branch(sub):
            if sub.name == "a":
                raise RuntimeError("agent down")
            if sub.name == "b":
                raise ConfigurationError("bad rule")
            await asyncio.sleep(0.01)
            finished.append(sub.name)
            return sub.name

        with pytest.raises(ConfigurationError, match="bad rule"):
            await ParallelRunner().run_all("review", _subs("a", "b", "c"), run_branch)
        assert finished == ["c"]


class TestBranchEvents:
    async def test_start_and_complete_per_branch(self):
        events = EventStream()
        queue = await events.subscribe()

        async def run_branch(sub):
            if sub.name == "b":
                raise RuntimeError("nope")
            return sub.name

        runner = ParallelRunner(events, workflow="wf")
        with pytest.raises(ParallelBranchError):
            await runner.run_all("review", _subs("a", "b"), run_branch, iteration=4)

        emitted = await drain(queue)
        assert len(emitted) == 4
        for branch in ("a", "b"):
            mine = [e for e in emitted if e.branch == branch]
            assert [e.event_type for e in mine] == [
                WorkflowEventType.BRANCH_START,
                WorkflowEventType.BRANCH_COMPLETE,
            ]
            assert all(e.movement == "review" and e.iteration == 4 for e in mine)
        failed = next(
            e for e in emitted if e.branch == "b" and e.event_type == WorkflowEventType.BRANCH_COMPLETE
        )
        assert failed.status == "error"
        assert failed.content == "nope"

    async def test_no_event_stream_is_fine(self):
        async def run_branch(sub):
            return 1

        outcomes = await ParallelRunner().run_all("review", _subs("a"), run_branch)
        assert outcomes[0].value == 1
