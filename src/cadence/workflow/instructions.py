"""Instruction assembly for the three phases of a movement invocation.

Phase 1 renders the movement's template and appends whatever execution
context the template did not ask for explicitly. Phases 2 and 3 are fixed
follow-up prompts sent on the same agent session.

Template placeholders (unknown ``{names}`` are left untouched):

    {task} {iteration} {max_iterations} {movement_iteration}
    {previous_response} {user_inputs} {report_dir} {cwd}
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any

from cadence.workflow.models import Movement, WorkflowDefinition
from cadence.workflow.rules import format_tag

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


@dataclass
class InstructionContext:
    task: str
    iteration: int
    max_iterations: int
    movement_iteration: int
    cwd: str
    project_cwd: str | None = None
    user_inputs: list[str] = field(default_factory=list)
    previous_response: str | None = None
    report_dir: str | None = None
    workflow_movements: list[Movement] = field(default_factory=list)
    current_movement_index: int | None = None


def render_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders that appear in ``values``."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


def _uses(template: str, name: str) -> bool:
    return "{" + name + "}" in template


def _workflow_structure(context: InstructionContext) -> list[str]:
    lines: list[str] = []
    for i, movement in enumerate(context.workflow_movements):
        marker = " ← current" if i == context.current_movement_index else ""
        desc = f": {movement.description}" if movement.description else ""
        lines.append(f"{i + 1}. {movement.name}{desc}{marker}")
    return lines


class InstructionBuilder:
    """Builds the phase-1 (execute) instruction for one movement."""

    def __init__(self, movement: Movement, context: InstructionContext):
        self.movement = movement
        self.context = context

    def _values(self) -> dict[str, Any]:
        ctx = self.context
        return {
            "task": ctx.task,
            "iteration": ctx.iteration,
            "max_iterations": ctx.max_iterations,
            "movement_iteration": ctx.movement_iteration,
            "previous_response": ctx.previous_response or "",
            "user_inputs": "\n".join(ctx.user_inputs),
            "report_dir": ctx.report_dir,
            "cwd": ctx.cwd,
        }

    def build(self) -> str:
        template = self.movement.instruction_template
        ctx = self.context
        sections: list[str] = []

        execution = [
            "## Execution Context",
            f"- Working Directory: {ctx.cwd}",
        ]
        if ctx.project_cwd and ctx.project_cwd != ctx.cwd:
            execution.append(f"- Project Directory: {ctx.project_cwd}")
        if self.movement.edit:
            execution.append("- Editing: you may modify files in the working directory.")
        else:
            execution.append("- Editing: do NOT modify project files in this movement.")
        if ctx.report_dir and not _uses(template, "report_dir"):
            execution.append(f"- Report Directory: {ctx.report_dir}")
        sections.append("\n".join(execution))

        workflow = [
            "## Workflow Context",
            f"- Iteration: {ctx.iteration}/{ctx.max_iterations} (workflow-wide)",
            f"- Movement Iteration: {ctx.movement_iteration} (times this movement has run)",
            f"- Movement: {self.movement.name}",
        ]
        structure = _workflow_structure(ctx)
        if structure:
            workflow.append("")
            workflow.append("Workflow structure:")
            workflow.extend(structure)
        sections.append("\n".join(workflow))

        if not _uses(template, "task"):
            sections.append(f"## User Request\n{ctx.task}")

        if (
            self.movement.pass_previous_response
            and ctx.previous_response
            and not _uses(template, "previous_response")
        ):
            sections.append(f"## Previous Response\n{ctx.previous_response}")

        if ctx.user_inputs and not _uses(template, "user_inputs"):
            inputs = "\n".join(f"- {text}" for text in ctx.user_inputs)
            sections.append(f"## Additional User Inputs\n{inputs}")

        instructions = render_template(template, self._values()).strip()
        if instructions:
            sections.append(f"## Instructions\n{instructions}")

        return "\n\n".join(sections)


def build_report_instruction(
    movement: Movement,
    *,
    report_dir: str,
    movement_iteration: int,
) -> str:
    """Phase 2: ask the agent to write the movement's report files."""
    lines = [
        "## Report Output",
        "Write the report file(s) below summarizing the work you just did.",
        "Do not modify any other files and do not continue the task itself.",
        f"- Movement Iteration: {movement_iteration}",
        "",
    ]
    for spec in movement.report:
        path = os.path.join(report_dir, spec.name)
        lines.append(f"- {path}")
        if spec.format:
            lines.append(f"  Format:\n{_indent(spec.format.strip(), 4)}")
    return "\n".join(lines)


def build_status_judgment_instruction(movement: Movement) -> str:
    """Phase 3: ask for exactly one status tag out of the movement's tag rules."""
    lines = [
        "## Status Judgment",
        "Based on the work above, decide which status applies.",
        "Output exactly ONE of the following tags and nothing else:",
        "",
    ]
    seen: set[str] = set()
    for rule in movement.tag_rules():
        if rule.condition in seen:
            continue
        seen.add(rule.condition)
        lines.append(f"- {format_tag(movement.name, rule.condition)}")
    return "\n".join(lines)


def preview_prompts(
    definition: WorkflowDefinition,
    task: str = "<task>",
    *,
    cwd: str = "<cwd>",
    report_dir: str = "<report_dir>",
) -> list[tuple[str, str, str]]:
    """Render every prompt a workflow can send, with sample values.

    Returns (movement, phase, text) triples in workflow order; sub-movements
    of a fan-out appear as ``parent/sub``.
    """
    prompts: list[tuple[str, str, str]] = []
    for index, movement in enumerate(definition.movements):
        targets = [(f"{movement.name}/{sub.name}", sub) for sub in movement.parallel]
        if not movement.is_fan_out:
            targets = [(movement.name, movement)]
        for label, target in targets:
            context = InstructionContext(
                task=task,
                iteration=1,
                max_iterations=definition.max_iterations,
                movement_iteration=1,
                cwd=cwd,
                previous_response="<previous response>" if index else None,
                report_dir=report_dir if target.report else None,
                workflow_movements=list(definition.movements),
                current_movement_index=index,
            )
            prompts.append((label, "execute", InstructionBuilder(target, context).build()))
            if target.report:
                prompts.append(
                    (
                        label,
                        "report",
                        build_report_instruction(
                            target, report_dir=report_dir, movement_iteration=1
                        ),
                    )
                )
            if target.tag_rules():
                prompts.append((label, "status", build_status_judgment_instruction(target)))
    return prompts


def _indent(text: str, width: int) -> str:
    pad = " " * width
    return "\n".join(pad + line for line in text.splitlines())
