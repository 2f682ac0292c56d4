"""Session persistence with SQLite storage."""

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import aiosqlite

from hobbes.config import get_config
from hobbes.exceptions import SessionNotFoundError
from hobbes.logging import get_logger
from hobbes.models import ActiveContext, Session

log = get_logger(__name__)

_COLUMNS = "id, name, messages, active_context, tool_call_history, created_at, updated_at"


def _row_to_session(row: Any) -> Session:
    return Session.from_dict({
        "id": row[0],
        "name": row[1],
        "messages": json.loads(row[2]),
        "active_context": json.loads(row[3]),
        "tool_call_history": json.loads(row[4]),
        "created_at": row[5],
        "updated_at": row[6],
    })


class SessionManager:
    """Stores conversation sessions in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is not None:
            return
        async with self._init_lock:
            if self._db is not None:
                return
            db = await aiosqlite.connect(str(self.db_path))
            await db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    active_context TEXT NOT NULL DEFAULT '{}',
                    tool_call_history TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_name_updated_at ON sessions(name, updated_at DESC)"
            )
            await db.commit()
            self._db = db

    async def get_or_create_session(self, name: str = "default") -> Session:
        """Load the latest session called ``name``, creating it if missing."""
        await self._ensure_db()

        session = await self.load_session_by_name(name)
        if session:
            return session
        return await self.create_session(name=name)

    async def create_session(
        self,
        name: str = "default",
        active_context: ActiveContext | None = None,
    ) -> Session:
        """Create and persist a new session."""
        await self._ensure_db()

        session = Session(
            id=str(uuid.uuid4()),
            name=name,
            active_context=active_context or ActiveContext(),
        )
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID.

        Args:
            session_id: Session ID

        Returns:
            Session or None if not found
        """
        await self._ensure_db()

        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_session(row)

    async def load_session_by_name(self, name: str) -> Session | None:
        """Load the most recently updated session by name."""
        await self._ensure_db()

        async with self._db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM sessions
            WHERE name = ?
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (name,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_session(row)

    async def select_session(self, selector: str) -> Session | None:
        """Select a session by ID, name, or recent-list index.

        Resolution order:
        1. Exact ID
        2. Latest session with matching name
        3. Numeric index from recent session list (`#<n>` or `<n>`, 1-based)
        """
        key = selector.strip()
        if not key:
            return None

        by_id = await self.load_session(key)
        if by_id:
            return by_id

        by_name = await self.load_session_by_name(key)
        if by_name:
            return by_name

        index_text = key[1:] if key.startswith("#") else key
        if not index_text.isdigit():
            return None

        index = int(index_text)
        if index <= 0:
            return None

        sessions = await self.list_sessions(limit=max(20, index))
        if index > len(sessions):
            return None
        return sessions[index - 1]

    async def save_session(self, session: Session) -> None:
        """Persist a session, replacing any stored version."""
        await self._ensure_db()

        await self._db.execute(
            f"""
            INSERT OR REPLACE INTO sessions ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.name,
                json.dumps([message.to_dict() for message in session.messages]),
                json.dumps(session.active_context.to_dict()),
                json.dumps([record.to_dict() for record in session.tool_call_history]),
                session.created_at,
                session.updated_at,
            ),
        )
        await self._db.commit()

    async def save(self, session: Session) -> None:
        """Conversation store entry point used by the turn engine."""
        await self.save_session(session)

    async def rename_session(self, session_id: str, name: str) -> Session:
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.name = name
        session.touch()
        await self.save_session(session)
        return session

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions, most recently updated first."""
        await self._ensure_db()

        async with self._db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM sessions
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [_row_to_session(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session.

        Args:
            session_id: Session ID

        Returns:
            True if deleted, False if not found
        """
        await self._ensure_db()

        cursor = await self._db.execute(
            "DELETE FROM sessions WHERE id = ?",
            (session_id,),
        )
        await self._db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
