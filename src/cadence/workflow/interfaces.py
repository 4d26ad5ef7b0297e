"""Boundary protocols between the engine and its collaborators.

The engine only ever talks to agents, judges, session storage and worktree
provisioning through these protocols. ``cadence.copilot``,
``cadence.sessions`` and ``cadence.worktree`` provide the bundled
implementations.
"""

from __future__ import annotations

from typing import Protocol

from cadence.workflow.models import AgentResponse, WorktreeInfo


class AgentInvoker(Protocol):
    """Runs one instruction against an agent and returns its reply."""

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
        """Invoke ``agent``. Passing ``session_id`` continues that conversation.

        Implementations raise on failure; the engine never retries.
        """
        ...


class ConditionJudge(Protocol):
    """Decides whether a response satisfies a free-text ``ai()`` condition."""

    async def __call__(self, content: str, condition: str) -> bool: ...


class SessionStore(Protocol):
    """Persists agent session tokens between runs."""

    async def load(self) -> dict[str, str]: ...

    async def save(self, agent: str, session_id: str) -> None: ...

    async def clear(self) -> None: ...


class WorktreeProvisioner(Protocol):
    """Creates an isolated git worktree for the rest of a run."""

    async def create(self, base_dir: str, branch_name: str, base_branch: str) -> WorktreeInfo: ...
