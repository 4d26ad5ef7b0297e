"""Per-run context passed explicitly to every engine component.

Nothing here is module-global, so several engines can run side by side in
one process (tests do exactly that).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from cadence.workflow.events import EventStream
from cadence.workflow.interfaces import SessionStore
from cadence.workflow.models import MAX_INPUT_LENGTH, MAX_USER_INPUTS

logger = logging.getLogger(__name__)


class SessionMap:
    """Agent identity → session token, with per-agent write serialization.

    Writes for different agents proceed independently. Two writes for the
    same agent are serialized by that agent's lock so the persisted token is
    always the last one set.
    """

    def __init__(self, initial: dict[str, str] | None = None, store: SessionStore | None = None):
        self._sessions: dict[str, str] = dict(initial or {})
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, agent: str) -> str | None:
        return self._sessions.get(agent)

    def snapshot(self) -> dict[str, str]:
        return dict(self._sessions)

    def __contains__(self, agent: str) -> bool:
        return agent in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _lock_for(self, agent: str) -> asyncio.Lock:
        lock = self._locks.get(agent)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent] = lock
        return lock

    async def update(self, agent: str, session_id: str | None) -> None:
        """Record ``session_id`` for ``agent`` and persist it if it changed."""
        if not session_id:
            return
        async with self._lock_for(agent):
            if self._sessions.get(agent) == session_id:
                return
            self._sessions[agent] = session_id
            if self._store is not None:
                await self._store.save(agent, session_id)
        logger.debug("Session updated: %s -> %s", agent, session_id)


@dataclass
class RunContext:
    """Everything a movement execution needs besides the definition."""

    task: str
    cwd: str
    project_cwd: str
    sessions: SessionMap
    events: EventStream
    report_dir: str | None = None
    user_inputs: list[str] = field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    quiet: bool = False
    max_user_inputs: int = MAX_USER_INPUTS
    max_input_length: int = MAX_INPUT_LENGTH

    def add_user_input(self, text: str) -> None:
        """Append user input, truncating it and keeping only the newest entries."""
        if len(text) > self.max_input_length:
            text = text[: self.max_input_length]
        self.user_inputs.append(text)
        overflow = len(self.user_inputs) - self.max_user_inputs
        if overflow > 0:
            del self.user_inputs[:overflow]
