"""Workflow YAML loading.

A workflow file looks like::

    name: review-fix
    max_iterations: 10
    initial_movement: plan        # optional, defaults to the first movement
    movements:
      - name: plan
        agent: ./agents/planner.md
        instruction: "Plan the change for: {task}"
        rules:
          - condition: ready
            next: implement
          - condition: ai("the task is impossible")
            next: ABORT

Agent references starting with ``./`` or ``../`` are resolved against the
directory holding the YAML file; any other value is passed to the agent
invoker untouched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from cadence.workflow.models import WorkflowDefinition

logger = logging.getLogger(__name__)

WORKFLOWS_DIRNAME = "workflows"


def _resolve_agent(agent: Any, base_dir: Path) -> Any:
    if isinstance(agent, str) and agent.startswith(("./", "../")):
        return str((base_dir / agent).resolve())
    return agent


def _resolve_movement(raw: Any, base_dir: Path) -> Any:
    if not isinstance(raw, dict):
        return raw
    movement = dict(raw)
    if "agent" in movement:
        movement["agent"] = _resolve_agent(movement["agent"], base_dir)
    if isinstance(movement.get("parallel"), list):
        movement["parallel"] = [_resolve_movement(sub, base_dir) for sub in movement["parallel"]]
    return movement


def parse_workflow(raw: dict, *, default_name: str = "", base_dir: Path | None = None) -> WorkflowDefinition:
    """Build a WorkflowDefinition from already-parsed YAML data.

    Raises:
        ValueError: If the document is not a mapping or fails validation.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Workflow must be a mapping, got {type(raw).__name__}")
    data = dict(raw)
    data.setdefault("name", default_name)
    if base_dir is not None and isinstance(data.get("movements"), list):
        data["movements"] = [_resolve_movement(m, base_dir) for m in data["movements"]]
    return WorkflowDefinition(**data)


def load_workflow(path: Path) -> WorkflowDefinition:
    """Load a single workflow YAML file.

    Args:
        path: Path to the ``.yaml`` file. The file stem is the default name.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the workflow fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    definition = parse_workflow(raw, default_name=path.stem, base_dir=path.parent)
    logger.info(
        "Loaded workflow '%s' from %s (%d movements)",
        definition.name,
        path,
        len(definition.movements),
    )
    return definition


def load_workflows(cadence_dir: Path) -> dict[str, WorkflowDefinition]:
    """Load every ``workflows/*.yaml`` file under a ``.cadence/`` directory.

    Invalid files are logged and skipped so one broken workflow does not
    hide the others.

    Returns:
        Dict mapping workflow name → WorkflowDefinition.
    """
    workflows_dir = Path(cadence_dir) / WORKFLOWS_DIRNAME
    definitions: dict[str, WorkflowDefinition] = {}

    if not workflows_dir.exists():
        logger.warning("No workflows directory found at %s", workflows_dir)
        return definitions

    files = sorted([*workflows_dir.glob("*.yaml"), *workflows_dir.glob("*.yml")])
    for yaml_file in files:
        try:
            definition = load_workflow(yaml_file)
        except (ValueError, yaml.YAMLError):
            logger.exception("Skipping invalid workflow file %s", yaml_file)
            continue
        if definition.name in definitions:
            logger.warning("Duplicate workflow name '%s' in %s, keeping the first", definition.name, yaml_file)
            continue
        definitions[definition.name] = definition

    logger.info("Loaded %d workflow(s) from %s", len(definitions), workflows_dir)
    return definitions
