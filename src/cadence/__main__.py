"""Cadence CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from pathlib import Path

CADENCE_DIRNAME = ".cadence"

# ── Default templates for `cadence init` ─────────────────────────────────────

_DEFAULT_CONFIG = """\
# .cadence/config.yaml — Cadence project configuration

engine:
  loop_threshold: 3
  worktree_dir: .cadence/worktrees
  reports_dir: .cadence/reports
  sessions_db: .cadence/sessions.db

runtime:
  default_model: claude-sonnet-4.6
  provider:
    type: copilot
"""

_DEFAULT_WORKFLOW = """\
# .cadence/workflows/default.yaml
name: default
description: Plan, implement, then review in parallel
max_iterations: 15

movements:
  - name: plan
    agent: planner
    instruction: |
      Analyze the request and write an implementation plan.
      If the work needs its own branch, finish with:
        worktree:
          baseBranch: main
          branchName: cadence/<short-name>
    rules:
      - condition: ready
        next: implement
      - condition: ai("the request cannot be implemented")
        next: ABORT

  - name: implement
    agent: coder
    edit: true
    instruction: Implement the plan.
    rules:
      - condition: done
        next: review
      - condition: blocked
        next: ABORT

  - name: review
    parallel:
      - name: correctness
        agent: reviewer
        instruction: Review the change for correctness.
        rules:
          - condition: approved
          - condition: needs_fix
      - name: tests
        agent: test-reviewer
        instruction: Review the change for test coverage.
        rules:
          - condition: approved
          - condition: needs_fix
    rules:
      - condition: all("approved")
        next: COMPLETE
      - condition: any("needs_fix")
        next: implement
"""

_DEFAULT_AGENTS = {
    "planner.md": "# Planner\n\nYou turn a user request into a concrete, ordered plan.\n",
    "coder.md": "# Coder\n\nYou implement plans with small, tested changes.\n",
    "reviewer.md": "# Reviewer\n\nYou review changes and never edit files yourself.\n",
    "test-reviewer.md": "# Test Reviewer\n\nYou check that changes are covered by tests.\n",
}


def _init_project(repo_root: Path) -> None:
    """Scaffold a .cadence/ directory with a default config and workflow."""
    cadence_dir = repo_root / CADENCE_DIRNAME

    if cadence_dir.exists():
        print(f"Error: {cadence_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    (cadence_dir / "agents").mkdir(parents=True)
    (cadence_dir / "workflows").mkdir()
    (cadence_dir / "config.yaml").write_text(_DEFAULT_CONFIG)
    (cadence_dir / "workflows" / "default.yaml").write_text(_DEFAULT_WORKFLOW)
    for filename, content in _DEFAULT_AGENTS.items():
        (cadence_dir / "agents" / filename).write_text(content)

    print(f"Initialized Cadence project at {cadence_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {cadence_dir / 'workflows' / 'default.yaml'}")
    print("  2. Set COPILOT_GITHUB_TOKEN")
    print(f'  3. Run: cadence run {cadence_dir / "workflows" / "default.yaml"} "<task>"')


# ── validate / preview ───────────────────────────────────────────────────────


def _validate(workflow_path: Path) -> int:
    from cadence.workflow.loader import load_workflow

    try:
        definition = load_workflow(workflow_path)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid workflow {workflow_path}:\n{exc}", file=sys.stderr)
        return 1

    print(f"Workflow '{definition.name}' is valid")
    print(f"  Initial movement: {definition.initial_movement}")
    print(f"  Max iterations:   {definition.max_iterations}")
    for movement in definition.movements:
        targets = ", ".join(sorted({r.next for r in movement.rules if r.next}))
        kind = f"fan-out x{len(movement.parallel)}" if movement.is_fan_out else movement.agent
        print(f"  - {movement.name} ({kind}) → {targets}")
    return 0


def _preview(workflow_path: Path, task: str) -> int:
    from cadence.workflow.instructions import preview_prompts
    from cadence.workflow.loader import load_workflow

    try:
        definition = load_workflow(workflow_path)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid workflow {workflow_path}:\n{exc}", file=sys.stderr)
        return 1

    for movement, phase, text in preview_prompts(definition, task):
        print(f"{'=' * 20} {movement} [{phase}] {'=' * 20}")
        print(text)
        print()
    return 0


# ── run ──────────────────────────────────────────────────────────────────────


def format_event(event, *, quiet: bool = False) -> str:
    """One console line (plus optional content) for a lifecycle event."""
    from cadence.workflow.events import WorkflowEventType

    prefix = f"[{event.iteration:>3}]"
    match event.event_type:
        case WorkflowEventType.MOVEMENT_START:
            line = f"{prefix} ▶ {event.movement} ({event.metadata.get('agent', '')})"
        case WorkflowEventType.MOVEMENT_COMPLETE:
            line = (
                f"{prefix} ✔ {event.movement} [{event.status}] → {event.metadata.get('next')}"
            )
            if event.content and not quiet:
                line += "\n" + event.content.rstrip()
        case WorkflowEventType.BRANCH_START:
            line = f"{prefix}   ▷ {event.movement}/{event.branch}"
        case WorkflowEventType.BRANCH_COMPLETE:
            line = f"{prefix}   ✓ {event.movement}/{event.branch} [{event.status}]"
        case WorkflowEventType.WORKTREE_CONFIGURED:
            path = event.metadata.get("path", "(not provisioned)")
            line = f"{prefix} ⎇ worktree {event.metadata.get('branch_name')} at {path}"
        case WorkflowEventType.WORKFLOW_COMPLETED:
            line = f"{prefix} ■ workflow '{event.workflow}' completed"
        case WorkflowEventType.WORKFLOW_ABORTED:
            line = f"{prefix} ✖ workflow '{event.workflow}' aborted: {event.content}"
        case _:
            line = f"{prefix} {event.event_type.value}"
    return line


async def _print_events(queue, *, quiet: bool) -> None:
    from cadence.workflow.events import TERMINAL_EVENTS

    while True:
        event = await queue.get()
        print(format_event(event, quiet=quiet), flush=True)
        if event.event_type in TERMINAL_EVENTS:
            return


async def _run_workflow(args) -> int:
    from cadence.config import load_config
    from cadence.copilot import CopilotInvoker, CopilotJudge
    from cadence.sessions import SessionRegistry
    from cadence.workflow.engine import WorkflowEngine
    from cadence.workflow.errors import WorkflowError
    from cadence.workflow.events import EventStream, drain
    from cadence.workflow.loader import load_workflow
    from cadence.worktree import GitWorktreeProvisioner

    repo_root = args.repo_root.resolve()
    cadence_dir = repo_root / CADENCE_DIRNAME
    config = load_config(cadence_dir)
    if args.quiet:
        config.engine.quiet = True

    try:
        definition = load_workflow(args.workflow)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Invalid workflow {args.workflow}:\n{exc}", file=sys.stderr)
        return 2

    db_path = repo_root / config.engine.sessions_db
    db_path.parent.mkdir(parents=True, exist_ok=True)
    sessions = SessionRegistry(str(db_path), project=f"{repo_root}:{definition.name}")
    await sessions.initialize()

    invoker = CopilotInvoker(config.runtime, agents_dir=cadence_dir / "agents")
    judge = CopilotJudge(config.runtime, str(repo_root))
    events = EventStream()
    engine = WorkflowEngine(
        definition,
        invoker,
        task=args.task,
        cwd=str(repo_root),
        judge=judge,
        session_store=sessions,
        worktree_provisioner=GitWorktreeProvisioner(repo_root),
        events=events,
        config=config.engine,
    )

    queue = await events.subscribe()
    printer = asyncio.create_task(_print_events(queue, quiet=config.engine.quiet))
    try:
        result = await engine.run(resume=args.resume)
    except WorkflowError as exc:
        logging.getLogger("cadence").error("Workflow '%s' failed: %s", definition.name, exc)
        return 2
    finally:
        printer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await printer
        for event in await drain(queue):
            print(format_event(event, quiet=config.engine.quiet))
        await events.unsubscribe(queue)
        await invoker.close()
        await judge.close()
        await sessions.close()

    print()
    print(f"Workflow '{result.workflow}': {result.status.value} after {result.iterations} iteration(s)")
    if result.reason:
        print(f"  Reason: {result.reason}")
    if result.worktree:
        print(f"  Worktree: {result.worktree.path} ({result.worktree.branch})")
    return 0 if result.success else 1


def main():
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="Cadence — multi-agent workflow engine",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # cadence init
    init_parser = subparsers.add_parser("init", help="Initialize a .cadence/ directory")
    init_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # cadence validate
    validate_parser = subparsers.add_parser("validate", help="Validate a workflow file")
    validate_parser.add_argument("workflow", type=Path, help="Path to the workflow YAML")

    # cadence preview
    preview_parser = subparsers.add_parser(
        "preview", help="Print every prompt a workflow would send"
    )
    preview_parser.add_argument("workflow", type=Path, help="Path to the workflow YAML")
    preview_parser.add_argument("--task", default="<task>", help="Sample task text")

    # cadence run
    run_parser = subparsers.add_parser("run", help="Run a workflow on a task")
    run_parser.add_argument("workflow", type=Path, help="Path to the workflow YAML")
    run_parser.add_argument("task", help="What the agents should do")
    run_parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the agent sessions persisted by the previous run",
    )
    run_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    run_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not print agent output, only lifecycle events",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _init_project(args.repo_root)
        return

    if args.command == "validate":
        sys.exit(_validate(args.workflow))

    if args.command == "preview":
        sys.exit(_preview(args.workflow, args.task))

    if args.command == "run":
        sys.exit(asyncio.run(_run_workflow(args)))

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
