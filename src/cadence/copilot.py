"""Copilot SDK integration — the bundled agent backend.

Wraps the github-copilot-sdk package. One CopilotClient (one CLI
subprocess) is started per working directory, so a run that moves into a
git worktree gets a fresh client rooted there. Agent conversations are SDK
sessions: a new movement agent gets ``create_session()``, later phases and
resumed runs continue it with ``resume_session()``.

SDK types used:
  - SessionConfig (TypedDict) for create_session()
  - ResumeSessionConfig (TypedDict) for resume_session()
  - CopilotSession with send_and_wait(), destroy()
  - ProviderConfig (TypedDict) for BYOK — {type, base_url, api_key}
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any

from copilot import CopilotClient
from copilot import CopilotSession as SDKSession
from copilot.types import (
    ProviderConfig as SDKProviderConfig,
    ResumeSessionConfig as SDKResumeConfig,
    SessionConfig as SDKSessionConfig,
)

from cadence.config import AgentDefinition, RuntimeConfig, load_agent_definition
from cadence.workflow.errors import AgentInvocationError
from cadence.workflow.models import AgentResponse, ResponseStatus

logger = logging.getLogger(__name__)

# Token the Copilot CLI uses for the model API. Passed to CopilotClient as
# ``github_token`` and stripped from the subprocess environment.
COPILOT_GITHUB_TOKEN_ENV = "COPILOT_GITHUB_TOKEN"

# Never inherited by agent CLI subprocesses: the agent's bash tool can read
# anything in its environment.
_SECRET_ENV_VARS: frozenset[str] = frozenset(
    {
        "COPILOT_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
    }
)

DEFAULT_SYSTEM_MESSAGE = (
    "You are the '{agent}' agent in a multi-step workflow. Follow the "
    "instructions of each message exactly and report your status using the "
    "tags you are asked for."
)

JUDGE_SYSTEM_MESSAGE = (
    "You are a strict classifier. You read an agent's output and decide "
    "whether a condition holds. Answer with a single word: YES or NO."
)


def build_agent_env(extra_blocked: set[str] | None = None) -> dict[str, str]:
    """Build a sanitized copy of os.environ for agent CLI subprocesses.

    Strips all known secret env vars (and optionally additional ones, e.g.
    BYOK ``api_key_env`` names) so the agent's built-in bash tool cannot
    read them. PATH, HOME, locale settings and the rest are kept.

    Args:
        extra_blocked: Additional env var names to strip.

    Returns:
        A dict suitable for passing as ``CopilotClient({"env": ...})``.
    """
    blocked = _SECRET_ENV_VARS | (extra_blocked or set())
    return {k: v for k, v in os.environ.items() if k not in blocked}


def _slug(agent: str) -> str:
    return re.sub(r"[^a-z0-9-]+", "-", agent.lower()).strip("-") or "agent"


class CopilotAgent:
    """Manages a CopilotClient instance rooted at one working directory.

    One CopilotAgent = one CLI subprocess. Callers pass a sanitized ``env``
    (see :func:`build_agent_env`).
    """

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        working_directory: str,
        env: dict[str, str] | None = None,
    ):
        self.runtime_config = runtime_config
        self.working_directory = working_directory
        self._env = env
        self._client: CopilotClient | None = None
        self._github_token: str | None = os.environ.get(COPILOT_GITHUB_TOKEN_ENV)

    async def start(self) -> None:
        """Start the underlying CopilotClient (spawns CLI subprocess).

        Retries transient startup timeouts with exponential backoff.
        """
        max_retries = 3
        retry_delay = 2.0  # seconds

        client_opts: dict[str, Any] = {"cwd": self.working_directory}
        if self._env is not None:
            client_opts["env"] = self._env
        if self._github_token:
            client_opts["github_token"] = self._github_token
        else:
            logger.warning(
                "No %s found in environment — CLI may fail to authenticate with the model API",
                COPILOT_GITHUB_TOKEN_ENV,
            )

        for attempt in range(max_retries + 1):
            try:
                self._client = CopilotClient(client_opts)
                await self._client.start()
                logger.info("CopilotClient started (cwd=%s)", self.working_directory)
                return
            except asyncio.TimeoutError:
                if attempt >= max_retries:
                    logger.error(
                        "CopilotClient startup failed after %d attempts", max_retries + 1
                    )
                    raise
                wait_time = retry_delay * (2**attempt)
                logger.warning(
                    "CopilotClient startup attempt %d timed out, retrying in %.1fs",
                    attempt + 1,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                await self._discard_client()

    async def _discard_client(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.stop()
        except Exception:
            logger.exception("Error stopping failed CopilotClient")
        self._client = None

    async def stop(self) -> None:
        """Stop the client and clean up resources."""
        if self._client:
            try:
                await self._client.stop()
            except Exception:
                logger.exception("Error stopping CopilotClient")
            self._client = None

    @property
    def client(self) -> CopilotClient:
        if self._client is None:
            raise RuntimeError("CopilotAgent not started — call start() first")
        return self._client

    async def create_session(self, config: SDKSessionConfig) -> SDKSession:
        session = await self.client.create_session(config)
        logger.info(
            "Created session: %s (model=%s)",
            config.get("session_id", "unnamed"),
            config.get("model", "default"),
        )
        return session

    async def resume_session(
        self, session_id: str, config: SDKResumeConfig | None = None
    ) -> SDKSession:
        """Resume a previously persisted session. BYOK credentials are re-sent."""
        session = await self.client.resume_session(session_id, config)
        logger.info("Resumed session: %s", session_id)
        return session


def _build_provider_dict(
    runtime_config: RuntimeConfig, provider_type: str | None = None
) -> SDKProviderConfig | None:
    """Build a BYOK ProviderConfig dict from RuntimeConfig.

    ``provider_type`` (a movement or engine override) replaces the configured
    type. Returns None when the SDK should use Copilot's built-in auth.
    """
    provider = runtime_config.provider
    kind = provider_type or provider.type
    api_key = provider.api_key
    if kind == "copilot" or not api_key:
        return None
    return {"type": kind, "base_url": provider.base_url, "api_key": api_key}


def _resolve_model(
    runtime_config: RuntimeConfig,
    role: str,
    model: str | None,
    definition: AgentDefinition | None,
) -> tuple[str, str | None]:
    """Model precedence: explicit override, agent frontmatter, per-role config, default."""
    override = runtime_config.models.get(role)
    resolved = (
        model
        or (definition.model if definition else None)
        or (override.model if override else None)
        or runtime_config.default_model
    )
    reasoning = (
        (definition.reasoning_effort if definition else None)
        or (override.reasoning_effort if override else None)
        or runtime_config.default_reasoning_effort
    )
    return resolved, reasoning


def build_session_config(
    *,
    role: str,
    system_message: str,
    working_directory: str,
    runtime_config: RuntimeConfig,
    model: str | None = None,
    provider: str | None = None,
    definition: AgentDefinition | None = None,
    session_id_override: str | None = None,
) -> SDKSessionConfig:
    """Build an SDK SessionConfig dict for a fresh agent conversation.

    Convention: session_id = "cadence-{role}-{random}", unique per run.
    """
    session_id = session_id_override or f"cadence-{_slug(role)}-{uuid.uuid4().hex[:12]}"
    resolved_model, reasoning = _resolve_model(runtime_config, role, model, definition)

    config: SDKSessionConfig = {
        "session_id": session_id,
        "model": resolved_model,
        "system_message": {"mode": "replace", "content": system_message},
        "working_directory": working_directory,
        "infinite_sessions": {
            "enabled": True,
            "background_compaction_threshold": 0.80,
            "buffer_exhaustion_threshold": 0.95,
        },
    }
    provider_dict = _build_provider_dict(runtime_config, provider)
    if provider_dict:
        config["provider"] = provider_dict
    # Not every model accepts reasoning_effort
    if reasoning:
        config["reasoning_effort"] = reasoning
    return config


def build_resume_config(
    *,
    role: str,
    system_message: str,
    working_directory: str,
    runtime_config: RuntimeConfig,
    model: str | None = None,
    provider: str | None = None,
    definition: AgentDefinition | None = None,
) -> SDKResumeConfig:
    """Like build_session_config but without session_id (passed separately)."""
    resolved_model, reasoning = _resolve_model(runtime_config, role, model, definition)

    config: SDKResumeConfig = {
        "model": resolved_model,
        "system_message": {"mode": "replace", "content": system_message},
        "working_directory": working_directory,
        "infinite_sessions": {
            "enabled": True,
            "background_compaction_threshold": 0.80,
            "buffer_exhaustion_threshold": 0.95,
        },
    }
    if reasoning:
        config["reasoning_effort"] = reasoning
    provider_dict = _build_provider_dict(runtime_config, provider)
    if provider_dict:
        config["provider"] = provider_dict
    return config


def _result_content(result: Any) -> str:
    """Assistant text of a send_and_wait() result (None when no message)."""
    if result is None:
        return ""
    data = getattr(result, "data", None)
    return getattr(data, "content", None) or ""


class _ClientPool:
    """Started CopilotAgents keyed by working directory."""

    def __init__(self, runtime_config: RuntimeConfig, env: dict[str, str] | None):
        self.runtime_config = runtime_config
        self._env = env
        self._agents: dict[str, CopilotAgent] = {}
        self._lock = asyncio.Lock()

    async def get(self, cwd: str) -> CopilotAgent:
        async with self._lock:
            agent = self._agents.get(cwd)
            if agent is None:
                agent = CopilotAgent(self.runtime_config, cwd, env=self._env)
                await agent.start()
                self._agents[cwd] = agent
            return agent

    async def close(self) -> None:
        async with self._lock:
            for agent in self._agents.values():
                await agent.stop()
            self._agents.clear()


class CopilotInvoker:
    """``AgentInvoker`` backed by Copilot sessions.

    Live sessions are kept per session id for the lifetime of the invoker so
    the phases of one movement run on the same conversation without a
    resume round-trip. Call :meth:`close` when the run is over.
    """

    def __init__(
        self,
        runtime_config: RuntimeConfig,
        *,
        agents_dir: Path | None = None,
        env: dict[str, str] | None = None,
    ):
        self.runtime_config = runtime_config
        self.agents_dir = agents_dir
        self._pool = _ClientPool(
            runtime_config,
            env if env is not None else build_agent_env(self._extra_blocked(runtime_config)),
        )
        self._sessions: dict[tuple[str, str], SDKSession] = {}
        self._definitions: dict[str, AgentDefinition] = {}

    @staticmethod
    def _extra_blocked(runtime_config: RuntimeConfig) -> set[str]:
        key_env = runtime_config.provider.api_key_env
        return {key_env} if key_env else set()

    def _definition(self, agent: str) -> AgentDefinition:
        definition = self._definitions.get(agent)
        if definition is None:
            definition = load_agent_definition(agent, self.agents_dir)
            self._definitions[agent] = definition
        return definition

    async def _session_for(
        self,
        agent: str,
        session_id: str | None,
        cwd: str,
        provider: str | None,
        model: str | None,
    ) -> tuple[str, SDKSession]:
        definition = self._definition(agent)
        system_message = definition.prompt or DEFAULT_SYSTEM_MESSAGE.format(agent=agent)
        copilot = await self._pool.get(cwd)

        if session_id:
            live = self._sessions.get((cwd, session_id))
            if live is not None:
                return session_id, live
            config = build_resume_config(
                role=definition.role,
                system_message=system_message,
                working_directory=cwd,
                runtime_config=self.runtime_config,
                model=model,
                provider=provider,
                definition=definition,
            )
            try:
                session = await copilot.resume_session(session_id, config)
            except Exception:
                logger.warning(
                    "Could not resume session %s for agent %s, starting a new one",
                    session_id,
                    agent,
                    exc_info=True,
                )
            else:
                self._sessions[(cwd, session_id)] = session
                return session_id, session

        config = build_session_config(
            role=definition.role,
            system_message=system_message,
            working_directory=cwd,
            runtime_config=self.runtime_config,
            model=model,
            provider=provider,
            definition=definition,
        )
        session = await copilot.create_session(config)
        new_id = config["session_id"]
        self._sessions[(cwd, new_id)] = session
        return new_id, session

    async def __call__(
        self,
        agent: str,
        instruction: str,
        *,
        session_id: str | None = None,
        cwd: str,
        provider: str | None = None,
        model: str | None = None,
    ) -> AgentResponse:
        try:
            sid, session = await self._session_for(agent, session_id, cwd, provider, model)
            result = await session.send_and_wait(
                {"prompt": instruction}, timeout=self.runtime_config.send_timeout
            )
        except asyncio.TimeoutError as exc:
            raise AgentInvocationError(
                agent, f"no reply within {self.runtime_config.send_timeout:.0f}s"
            ) from exc
        except Exception as exc:
            raise AgentInvocationError(agent, str(exc)) from exc

        content = _result_content(result)
        logger.debug("AGENT [%s] replied (%d chars, session=%s)", agent, len(content), sid)
        return AgentResponse(
            agent=agent,
            content=content,
            session_id=sid,
            status=ResponseStatus.DONE if content else ResponseStatus.BLOCKED,
        )

    async def close(self) -> None:
        for (_, sid), session in list(self._sessions.items()):
            try:
                await session.destroy()
            except Exception:
                logger.exception("Error destroying session %s", sid)
        self._sessions.clear()
        await self._pool.close()


def build_judge_prompt(content: str, condition: str) -> str:
    return (
        "## Condition\n"
        f"{condition}\n\n"
        "## Agent Output\n"
        f"{content}\n\n"
        "Does the agent output satisfy the condition? Answer YES or NO."
    )


def parse_judgment(reply: str) -> bool:
    """True only for an affirmative first word."""
    words = re.findall(r"[a-z]+", reply.lower())
    return bool(words) and words[0] in ("yes", "true")


class CopilotJudge:
    """``ConditionJudge`` asking a short-lived Copilot session for YES/NO."""

    def __init__(self, runtime_config: RuntimeConfig, cwd: str, *, env: dict[str, str] | None = None):
        self.runtime_config = runtime_config
        self.cwd = cwd
        self._pool = _ClientPool(runtime_config, env if env is not None else build_agent_env())

    async def __call__(self, content: str, condition: str) -> bool:
        copilot = await self._pool.get(self.cwd)
        config = build_session_config(
            role="judge",
            system_message=JUDGE_SYSTEM_MESSAGE,
            working_directory=self.cwd,
            runtime_config=self.runtime_config,
            model=self.runtime_config.judge_model,
        )
        session = await copilot.create_session(config)
        try:
            result = await session.send_and_wait(
                {"prompt": build_judge_prompt(content, condition)},
                timeout=self.runtime_config.send_timeout,
            )
        except Exception as exc:
            raise AgentInvocationError("judge", str(exc)) from exc
        finally:
            try:
                await session.destroy()
            except Exception:
                logger.exception("Error destroying judge session")

        verdict = parse_judgment(_result_content(result))
        logger.info("AI CONDITION — %r → %s", condition, "yes" if verdict else "no")
        return verdict

    async def close(self) -> None:
        await self._pool.close()
