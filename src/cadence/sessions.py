"""Session registry — SQLite-backed persistence of agent session tokens.

Implements the engine's ``SessionStore`` protocol. Tokens are scoped by a
project key (normally the absolute project directory) so several projects
can share one database file.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agent_sessions (
    project TEXT NOT NULL,
    agent TEXT NOT NULL,
    session_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (project, agent)
);

CREATE INDEX IF NOT EXISTS idx_agent_sessions_project ON agent_sessions(project);
"""


class SessionRegistry:
    """SQLite-backed agent session store with async access."""

    def __init__(self, db_path: str, project: str = "default"):
        self.db_path = db_path
        self.project = project
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Session registry initialized: %s (project=%s)", self.db_path, self.project)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized — call initialize() first")
        return self._db

    # ── SessionStore ─────────────────────────────────────────────────────

    async def load(self) -> dict[str, str]:
        """Return agent → session token for this project."""
        cursor = await self.db.execute(
            "SELECT agent, session_id FROM agent_sessions WHERE project = ? ORDER BY agent",
            (self.project,),
        )
        rows = await cursor.fetchall()
        return {row["agent"]: row["session_id"] for row in rows}

    async def save(self, agent: str, session_id: str) -> None:
        """Insert or replace the token for ``agent``."""
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO agent_sessions (project, agent, session_id, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(project, agent) DO UPDATE SET
                   session_id = excluded.session_id,
                   updated_at = excluded.updated_at""",
            (self.project, agent, session_id, now),
        )
        await self.db.commit()
        logger.debug("Saved session for agent %s: %s", agent, session_id)

    async def clear(self) -> None:
        """Forget every token for this project."""
        cursor = await self.db.execute(
            "DELETE FROM agent_sessions WHERE project = ?", (self.project,)
        )
        await self.db.commit()
        if cursor.rowcount:
            logger.info("Cleared %d agent session(s) for project %s", cursor.rowcount, self.project)

    async def get(self, agent: str) -> str | None:
        cursor = await self.db.execute(
            "SELECT session_id FROM agent_sessions WHERE project = ? AND agent = ?",
            (self.project, agent),
        )
        row = await cursor.fetchone()
        return row["session_id"] if row else None
