"""Tests for the cadence CLI commands that need no agent backend."""

from pathlib import Path

import pytest

from cadence.__main__ import _init_project, _preview, _validate, format_event
from cadence.workflow.events import WorkflowEvent, WorkflowEventType
from cadence.workflow.loader import load_workflow

WORKFLOW = """\
name: tiny
movements:
  - name: plan
    agent: planner
    report: plan.md
    rules:
      - condition: ready
        next: COMPLETE
"""


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    path = tmp_path / "tiny.yaml"
    path.write_text(WORKFLOW)
    return path


class TestInit:
    def test_scaffolds_project(self, tmp_path: Path, capsys):
        _init_project(tmp_path)
        cadence_dir = tmp_path / ".cadence"
        assert (cadence_dir / "config.yaml").exists()
        assert (cadence_dir / "agents" / "planner.md").exists()
        definition = load_workflow(cadence_dir / "workflows" / "default.yaml")
        assert definition.name == "default"
        assert definition.get_movement("review").is_fan_out
        assert "Initialized Cadence project" in capsys.readouterr().out

    def test_refuses_existing_directory(self, tmp_path: Path):
        (tmp_path / ".cadence").mkdir()
        with pytest.raises(SystemExit) as exc_info:
            _init_project(tmp_path)
        assert exc_info.value.code == 1


class TestValidateAndPreview:
    def test_validate_ok(self, workflow_file: Path, capsys):
        assert _validate(workflow_file) == 0
        out = capsys.readouterr().out
        assert "Workflow 'tiny' is valid" in out
        assert "- plan (planner) → COMPLETE" in out

    def test_validate_invalid(self, tmp_path: Path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text("name: bad\nmovements: []\n")
        assert _validate(path) == 1
        assert "Invalid workflow" in capsys.readouterr().err

    def test_validate_missing(self, tmp_path: Path):
        assert _validate(tmp_path / "missing.yaml") == 1

    def test_preview(self, workflow_file: Path, capsys):
        assert _preview(workflow_file, "Write docs") == 0
        out = capsys.readouterr().out
        assert "plan [execute]" in out
        assert "plan [report]" in out
        assert "plan [status]" in out
        assert "Write docs" in out


class TestFormatEvent:
    def _event(self, event_type, **kwargs):
        return WorkflowEvent(event_type=event_type, workflow="wf", iteration=2, **kwargs)

    def test_movement_complete_includes_content(self):
        event = self._event(
            WorkflowEventType.MOVEMENT_COMPLETE,
            movement="plan",
            status="done",
            content="the plan\n",
            metadata={"next": "implement"},
        )
        assert format_event(event) == "[  2] ✔ plan [done] → implement\nthe plan"
        assert format_event(event, quiet=True) == "[  2] ✔ plan [done] → implement"

    def test_branch_events(self):
        event = self._event(
            WorkflowEventType.BRANCH_COMPLETE, movement="review", branch="arch", status="done"
        )
        assert "review/arch [done]" in format_event(event)

    def test_abort(self):
        event = self._event(WorkflowEventType.WORKFLOW_ABORTED, content="Max iterations reached")
        assert format_event(event) == "[  2] ✖ workflow 'wf' aborted: Max iterations reached"

    def test_worktree_not_provisioned(self):
        event = self._event(
            WorkflowEventType.WORKTREE_CONFIGURED, metadata={"branch_name": "feat/x"}
        )
        assert "(not provisioned)" in format_event(event)
