"""Configuration loading for Cadence.

Reads ``.cadence/config.yaml``. Every section is optional; a missing file
yields the defaults. Environment variables override selected values for
CI and container deployments.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


class EngineConfig(BaseModel):
    """Knobs of the workflow engine itself."""

    loop_threshold: int = Field(3, ge=1)  # consecutive self-transitions before LOOP_DETECTED
    max_user_inputs: int = Field(100, ge=1)
    max_input_length: int = Field(10000, ge=1)
    provider: str | None = None  # fallback when a movement sets none
    model: str | None = None
    worktree_dir: str = ".cadence/worktrees"
    reports_dir: str = ".cadence/reports"
    sessions_db: str = ".cadence/sessions.db"
    quiet: bool = False

    @field_validator("worktree_dir", "reports_dir", "sessions_db")
    @classmethod
    def _validate_relative(cls, v: str) -> str:
        """Relative paths are resolved against the project directory."""
        if ".." in Path(v).parts:
            raise ValueError(f"Path must not contain directory traversal components (..): {v!r}")
        return v


class ProviderConfig(BaseModel):
    type: str = "copilot"
    base_url: str = ""
    api_key_env: str = ""

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) if self.api_key_env else None


class ModelOverride(BaseModel):
    model: str
    reasoning_effort: str | None = None


class RuntimeConfig(BaseModel):
    """Settings for the bundled Copilot agent backend."""

    default_model: str = "claude-sonnet-4.6"
    default_reasoning_effort: str | None = None
    models: dict[str, ModelOverride] = Field(default_factory=dict)  # per agent
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    judge_model: str | None = None  # model for ai() conditions (default_model if unset)
    send_timeout: float = 1800.0  # seconds per send_and_wait


class CadenceConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


def load_config(cadence_dir: Path) -> CadenceConfig:
    """Load Cadence configuration from a ``.cadence/`` directory.

    Args:
        cadence_dir: Path to the ``.cadence/`` directory.

    Returns:
        Validated CadenceConfig (defaults when ``config.yaml`` is absent).

    Raises:
        ValueError: If config validation fails.
    """
    config_path = cadence_dir / CONFIG_FILENAME
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.info("No %s found at %s — using defaults", CONFIG_FILENAME, cadence_dir)

    config = CadenceConfig(**raw)

    # Environment variable overrides for deployment
    worktree_dir = os.environ.get("CADENCE_WORKTREE_DIR")
    if worktree_dir:
        config.engine.worktree_dir = worktree_dir

    loop_threshold = os.environ.get("CADENCE_LOOP_THRESHOLD")
    if loop_threshold:
        try:
            config.engine.loop_threshold = max(1, int(loop_threshold))
        except ValueError:
            logger.warning("Ignoring invalid CADENCE_LOOP_THRESHOLD=%r", loop_threshold)

    provider = os.environ.get("CADENCE_PROVIDER")
    if provider:
        config.engine.provider = provider

    model = os.environ.get("CADENCE_MODEL")
    if model:
        config.engine.model = model

    logger.info(
        "Loaded Cadence config (loop_threshold=%d, provider=%s, model=%s)",
        config.engine.loop_threshold,
        config.engine.provider,
        config.engine.model,
    )
    return config


# ── Agent definitions ────────────────────────────────────────────────────────


class AgentDefinition(BaseModel):
    """An agent prompt file: optional YAML frontmatter plus a markdown body.

    The body becomes the agent's system message. Frontmatter may set
    ``name``, ``description``, ``model`` and ``reasoning_effort``.
    """

    role: str
    prompt: str = ""
    name: str = ""
    description: str = ""
    model: str | None = None
    reasoning_effort: str | None = None


def _split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from markdown body.

    Returns (frontmatter_dict, body_markdown).
    If no frontmatter found, returns ({}, full_content).
    """
    stripped = content.lstrip()
    if not stripped.startswith("---"):
        return {}, content

    lines = content.split("\n")
    start_idx = None
    end_idx = None
    for i, line in enumerate(lines):
        if line.strip() == "---":
            if start_idx is None:
                start_idx = i
            else:
                end_idx = i
                break

    if start_idx is None or end_idx is None:
        return {}, content

    frontmatter_text = "\n".join(lines[start_idx + 1 : end_idx])
    body = "\n".join(lines[end_idx + 1 :]).strip()

    try:
        fm = yaml.safe_load(frontmatter_text) or {}
    except yaml.YAMLError:
        logger.warning("Failed to parse YAML frontmatter — treating as plain markdown")
        return {}, content
    if not isinstance(fm, dict):
        return {}, content
    return fm, body


def parse_agent_definition(role: str, content: str) -> AgentDefinition:
    fm, body = _split_frontmatter(content)
    return AgentDefinition(
        role=role,
        prompt=body,
        name=fm.get("name", role),
        description=fm.get("description", ""),
        model=fm.get("model"),
        reasoning_effort=fm.get("reasoning_effort"),
    )


def load_agent_definition(agent: str, agents_dir: Path | None = None) -> AgentDefinition:
    """Resolve an agent reference to its definition.

    ``agent`` is either a path to a markdown file or a bare role name looked
    up as ``<agents_dir>/<role>.md``. A role with no file gets an empty
    prompt so the backend falls back to its default system message.
    """
    path = Path(agent)
    if path.suffix != ".md" and agents_dir is not None:
        path = agents_dir / f"{agent}.md"
    if path.is_file():
        return parse_agent_definition(path.stem, path.read_text())
    logger.debug("No agent definition file for %s", agent)
    return AgentDefinition(role=path.stem if path.suffix == ".md" else agent, name=agent)
