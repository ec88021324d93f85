"""Session and message storage with SQLite."""

from pathlib import Path
from typing import Any

import aiosqlite

from pocketcoder.config import get_config
from pocketcoder.exceptions import PersistenceError, SessionNotFoundError
from pocketcoder.logging import get_logger
from pocketcoder.models import (
    SESSION_MODES,
    Message,
    Session,
    decode_tool_calls,
    encode_tool_calls,
    utcnow_iso,
)

log = get_logger(__name__)

_SESSION_COLUMNS = (
    "id, project_id, title, provider_id, model_id, mode, "
    "total_input_tokens, total_output_tokens, created_at, updated_at"
)
_MESSAGE_COLUMNS = (
    "id, session_id, role, content, tool_calls, tool_call_id, "
    "input_tokens, output_tokens, timestamp"
)


def _row_to_session(row: Any) -> Session:
    return Session(
        id=row[0],
        project_id=row[1],
        title=row[2],
        provider_id=row[3],
        model_id=row[4],
        mode=row[5],
        total_input_tokens=int(row[6] or 0),
        total_output_tokens=int(row[7] or 0),
        created_at=row[8],
        updated_at=row[9],
    )


def _row_to_message(row: Any) -> Message:
    return Message(
        id=row[0],
        session_id=row[1],
        role=row[2],
        content=row[3] or "",
        tool_calls=decode_tool_calls(row[4]),
        tool_call_id=row[5],
        input_tokens=row[6],
        output_tokens=row[7],
        timestamp=row[8],
    )


class SessionStore:
    """Append-only message log plus session metadata.

    Every read and write raises :class:`PersistenceError` on a storage
    failure so the orchestrator can end the turn.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    title TEXT NOT NULL,
                    provider_id TEXT,
                    model_id TEXT,
                    mode TEXT NOT NULL DEFAULT 'build',
                    total_input_tokens INTEGER NOT NULL DEFAULT 0,
                    total_output_tokens INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    tool_calls TEXT,
                    tool_call_id TEXT,
                    input_tokens INTEGER,
                    output_tokens INTEGER,
                    timestamp TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq)"
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            log.error("Session store unavailable", path=str(self.db_path), error=str(e))
            if self._db is not None:
                await self._db.close()
                self._db = None
            raise PersistenceError(str(e)) from e

    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Execute a write and commit, folding storage errors into PersistenceError."""
        await self._ensure_db()
        try:
            cursor = await self._db.execute(sql, params)
            await self._db.commit()
        except aiosqlite.Error as e:
            log.error("Session store write failed", error=str(e))
            raise PersistenceError(str(e)) from e
        return cursor.rowcount

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        """Run a query, folding storage errors into PersistenceError."""
        await self._ensure_db()
        try:
            async with self._db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            log.error("Session store read failed", error=str(e))
            raise PersistenceError(str(e)) from e

    async def create_session(
        self,
        project_id: str | None = None,
        title: str = "New chat",
        provider_id: str | None = None,
        model_id: str | None = None,
        mode: str = "build",
    ) -> Session:
        """Create and persist a new session."""
        if mode not in SESSION_MODES:
            raise ValueError(f"Unknown session mode: {mode}")
        session = Session(
            project_id=project_id,
            title=title,
            provider_id=provider_id,
            model_id=model_id,
            mode=mode,
        )
        await self._write(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.project_id,
                session.title,
                session.provider_id,
                session.model_id,
                session.mode,
                session.total_input_tokens,
                session.total_output_tokens,
                session.created_at,
                session.updated_at,
            ),
        )
        log.info("Created new session", session_id=session.id, project_id=project_id)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID.

        Args:
            session_id: Session ID

        Returns:
            Session or None if not found
        """
        rows = await self._fetch_all(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        )
        return _row_to_session(rows[0]) if rows else None

    async def list_sessions(self, project_id: str | None = None, limit: int = 50) -> list[Session]:
        """List recent sessions, optionally for one project."""
        if project_id is None:
            query = f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC LIMIT ?"
            params: tuple[Any, ...] = (limit,)
        else:
            query = (
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE project_id = ? "
                "ORDER BY updated_at DESC LIMIT ?"
            )
            params = (project_id, limit)

        rows = await self._fetch_all(query, params)
        return [_row_to_session(row) for row in rows]

    async def append(self, message: Message) -> Message:
        """Append a message to its session's log."""
        await self._write(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.session_id,
                message.role,
                message.content,
                encode_tool_calls(message.tool_calls),
                message.tool_call_id,
                message.input_tokens,
                message.output_tokens,
                message.timestamp,
            ),
        )
        await self._touch(message.session_id)
        return message

    async def read_all(self, session_id: str) -> list[Message]:
        """Return every message of a session in append order."""
        rows = await self._fetch_all(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        return [_row_to_message(row) for row in rows]

    async def update_token_totals(self, session_id: str, input_delta: int, output_delta: int) -> None:
        """Add token deltas to the session totals."""
        updated = await self._write(
            """
            UPDATE sessions
            SET total_input_tokens = total_input_tokens + ?,
                total_output_tokens = total_output_tokens + ?,
                updated_at = ?
            WHERE id = ?
            """,
            (int(input_delta), int(output_delta), utcnow_iso(), session_id),
        )
        if updated == 0:
            raise SessionNotFoundError(session_id)

    async def update_provider_selection(
        self, session_id: str, provider_config_id: str, model_id: str
    ) -> None:
        """Record which provider configuration and model the session uses."""
        updated = await self._write(
            "UPDATE sessions SET provider_id = ?, model_id = ?, updated_at = ? WHERE id = ?",
            (provider_config_id, model_id, utcnow_iso(), session_id),
        )
        if updated == 0:
            raise SessionNotFoundError(session_id)
        log.info(
            "Updated session provider",
            session_id=session_id,
            provider_id=provider_config_id,
            model_id=model_id,
        )

    async def update_mode(self, session_id: str, mode: str) -> None:
        if mode not in SESSION_MODES:
            raise ValueError(f"Unknown session mode: {mode}")
        updated = await self._write(
            "UPDATE sessions SET mode = ?, updated_at = ? WHERE id = ?",
            (mode, utcnow_iso(), session_id),
        )
        if updated == 0:
            raise SessionNotFoundError(session_id)

    async def update_title(self, session_id: str, title: str) -> None:
        updated = await self._write(
            "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
            (title, utcnow_iso(), session_id),
        )
        if updated == 0:
            raise SessionNotFoundError(session_id)

    async def _touch(self, session_id: str) -> None:
        await self._write(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (utcnow_iso(), session_id),
        )

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.

        Returns:
            True if deleted, False if not found
        """
        await self._write("DELETE FROM messages WHERE session_id = ?", (session_id,))
        deleted = await self._write("DELETE FROM sessions WHERE id = ?", (session_id,))
        return deleted > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
