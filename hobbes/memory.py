"""Long-term searchable store of tool results."""

import asyncio
import json
import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from hobbes.config import get_config
from hobbes.logging import get_logger
from hobbes.models import ToolCallRecord

log = get_logger(__name__)

_STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
    "it", "of", "on", "or", "that", "the", "this", "to", "was", "were", "with",
}


def _tokenize_fts(text: str) -> list[str]:
    return [token.strip() for token in re.findall(r"[\w]+", text.lower()) if token.strip()]


def _build_fts_query(query: str) -> str | None:
    raw_tokens = _tokenize_fts(query)
    tokens = [token for token in raw_tokens if len(token) >= 3 and token not in _STOPWORDS]
    if not tokens:
        tokens = [token for token in raw_tokens if len(token) >= 2]
    if not tokens:
        return None
    quoted = [f'"{token.replace(chr(34), "")}"' for token in tokens]
    return " OR ".join(quoted)


@dataclass
class ToolResultHit:
    execution_id: str
    server_name: str
    tool_name: str
    status: str
    snippet: str
    created_at: str
    score: float


class ToolResultStore:
    """Keeps every tool result so it can be found again by keyword."""

    def __init__(self, db_path: Path | str | None = None, snippet_chars: int = 400):
        if db_path is None:
            self.db_path = Path(get_config().memory.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.snippet_chars = snippet_chars
        self._db: aiosqlite.Connection | None = None
        self._fts_enabled = True
        self._init_lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        async with self._init_lock:
            if self._db is not None:
                return self._db
            db = await aiosqlite.connect(str(self.db_path))
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tool_results (
                    execution_id TEXT PRIMARY KEY,
                    server_name TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    arguments TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL,
                    response TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            try:
                await db.execute("""
                    CREATE VIRTUAL TABLE IF NOT EXISTS tool_results_fts
                    USING fts5(execution_id, tool_name, response)
                """)
            except aiosqlite.OperationalError as exc:
                log.debug("FTS5 unavailable; keyword search uses LIKE", error=str(exc))
                self._fts_enabled = False
            await db.commit()
            self._db = db
        return self._db

    async def upsert_tool_result(self, record: ToolCallRecord) -> None:
        """Insert or replace the stored result for a tool call."""
        db = await self._ensure_db()
        call = record.call
        await db.execute(
            """
            INSERT OR REPLACE INTO tool_results
                (execution_id, server_name, tool_name, arguments, status, response, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                call.execution_id,
                call.server_name,
                call.tool_name,
                json.dumps(call.arguments),
                record.result.status.value,
                record.result.response,
                datetime.now(UTC).isoformat(),
            ),
        )
        if self._fts_enabled:
            await db.execute("DELETE FROM tool_results_fts WHERE execution_id = ?", (call.execution_id,))
            await db.execute(
                "INSERT INTO tool_results_fts (execution_id, tool_name, response) VALUES (?, ?, ?)",
                (call.execution_id, call.tool_name, record.result.response),
            )
        await db.commit()
        log.debug("Stored tool result", execution_id=call.execution_id, tool=call.tool_name)

    async def search(self, query: str, limit: int = 5) -> list[ToolResultHit]:
        """Keyword search over stored results, best match first."""
        db = await self._ensure_db()
        fts_query = _build_fts_query(query)
        if not fts_query:
            return []

        rows: list[Any] = []
        if self._fts_enabled:
            try:
                async with db.execute(
                    """
                    SELECT
                        r.execution_id, r.server_name, r.tool_name, r.status,
                        r.response, r.created_at, bm25(tool_results_fts) AS rank
                    FROM tool_results_fts
                    JOIN tool_results r ON r.execution_id = tool_results_fts.execution_id
                    WHERE tool_results_fts MATCH ?
                    ORDER BY rank ASC
                    LIMIT ?
                    """,
                    (fts_query, limit),
                ) as cursor:
                    rows = list(await cursor.fetchall())
            except aiosqlite.OperationalError as exc:
                log.debug("FTS search failed; falling back to LIKE search", error=str(exc))
                rows = await self._like_search(db, query, limit)
        else:
            rows = await self._like_search(db, query, limit)

        hits: list[ToolResultHit] = []
        for row in rows:
            rank = float(row[6]) if isinstance(row[6], (int, float)) and math.isfinite(float(row[6])) else 999.0
            hits.append(
                ToolResultHit(
                    execution_id=str(row[0]),
                    server_name=str(row[1]),
                    tool_name=str(row[2]),
                    status=str(row[3]),
                    snippet=str(row[4])[: self.snippet_chars],
                    created_at=str(row[5]),
                    # bm25 is negative, lower is better
                    score=max(0.0, -rank),
                )
            )
        return hits

    async def _like_search(self, db: aiosqlite.Connection, query: str, limit: int) -> list[Any]:
        like = f"%{query.strip()}%"
        async with db.execute(
            """
            SELECT
                execution_id, server_name, tool_name, status, response, created_at,
                999.0 AS rank
            FROM tool_results
            WHERE response LIKE ? OR tool_name LIKE ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (like, like, limit),
        ) as cursor:
            return list(await cursor.fetchall())

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
