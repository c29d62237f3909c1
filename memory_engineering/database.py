"""
Database Manager - async SQLite engine, sessions and the lexical (FTS5) index.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import event, text
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import re

from .models import Base

logger = logging.getLogger(__name__)

# External-content FTS5 tables, kept in sync with their source tables by triggers
FTS_STATEMENTS: List[str] = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS memory_documents_fts USING fts5(
        content,
        memory_name,
        content='memory_documents',
        content_rowid='id'
    );
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memory_documents_ai AFTER INSERT ON memory_documents BEGIN
        INSERT INTO memory_documents_fts(rowid, content, memory_name)
        VALUES (new.id, new.content, new.memory_name);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memory_documents_ad AFTER DELETE ON memory_documents BEGIN
        INSERT INTO memory_documents_fts(memory_documents_fts, rowid, content, memory_name)
        VALUES ('delete', old.id, old.content, old.memory_name);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memory_documents_au AFTER UPDATE OF content, memory_name ON memory_documents BEGIN
        INSERT INTO memory_documents_fts(memory_documents_fts, rowid, content, memory_name)
        VALUES ('delete', old.id, old.content, old.memory_name);
        INSERT INTO memory_documents_fts(rowid, content, memory_name)
        VALUES (new.id, new.content, new.memory_name);
    END;
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS code_chunks_fts USING fts5(
        searchable_text,
        content,
        content='code_chunks',
        content_rowid='id'
    );
    """,
    """
    CREATE TRIGGER IF NOT EXISTS code_chunks_ai AFTER INSERT ON code_chunks BEGIN
        INSERT INTO code_chunks_fts(rowid, searchable_text, content)
        VALUES (new.id, new.searchable_text, new.content);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS code_chunks_ad AFTER DELETE ON code_chunks BEGIN
        INSERT INTO code_chunks_fts(code_chunks_fts, rowid, searchable_text, content)
        VALUES ('delete', old.id, old.searchable_text, old.content);
    END;
    """,
]

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def build_fts_query(query: str) -> Optional[str]:
    """
    Turn free text into a safe FTS5 MATCH expression.

    Each token is quoted and OR-ed so punctuation in the query can never
    trip the FTS5 syntax parser. Returns None when nothing is searchable.
    """
    tokens = _TOKEN_RE.findall(query or "")
    if not tokens:
        return None
    seen = []
    for token in tokens:
        lowered = token.lower()
        if lowered not in seen:
            seen.append(lowered)
    return " OR ".join(f'"{token}"' for token in seen)


# Applied to every new connection. NullPool means every session gets one.
SQLITE_PRAGMAS = (
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
    ("busy_timeout", "30000"),
    ("temp_store", "MEMORY"),
)


class DatabaseManager:
    """
    Owns one project's SQLite file: the ORM tables, their FTS5 shadows,
    and the session scope every store writes through.
    """

    def __init__(self, storage_path: str = "./storage", db_name: str = "memory_engineering.db"):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_path / db_name
        self.db_url = f"sqlite+aiosqlite:///{self.db_path}"
        self._ready = False
        self._engine = None
        self._sessions = None

    @staticmethod
    def _apply_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        for name, value in SQLITE_PRAGMAS:
            cursor.execute(f"PRAGMA {name}={value}")
        cursor.close()

    @property
    def engine(self):
        # Built lazily so it binds to the running event loop
        if self._engine is None:
            self._engine = create_async_engine(
                self.db_url,
                connect_args={"check_same_thread": False},
                poolclass=NullPool,
            )
            event.listen(self._engine.sync_engine, "connect", self._apply_pragmas)
        return self._engine

    def _session_maker(self) -> async_sessionmaker:
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        return self._sessions

    async def init_db(self):
        """Create tables and the FTS5 index. Safe to call repeatedly."""
        if self._ready:
            return

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            for statement in FTS_STATEMENTS:
                await conn.execute(text(statement))

        self._ready = True
        logger.info(f"Memory database ready at {self.db_path}")

    @asynccontextmanager
    async def get_session(self):
        """Session that commits on success and rolls back on any error."""
        factory = self._session_maker()
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def fts_search(
        self,
        table: str,
        query: str,
        project_id: str,
        limit: int = 20,
        extra_where: str = "",
        params: Optional[Dict[str, Any]] = None
    ) -> List[Any]:
        """
        Rank rows of `table` against `query` with bm25.

        Returns (id, relevance) rows, best first. bm25 is negative-is-better,
        so relevance is its absolute value. Ties keep rowid order.
        """
        match = build_fts_query(query)
        if match is None:
            return []

        fts_table = f"{table}_fts"
        sql = f"""
            SELECT t.id AS id, bm25({fts_table}) AS rank
            FROM {table} t
            JOIN {fts_table} ON t.id = {fts_table}.rowid
            WHERE {fts_table} MATCH :query
            AND t.project_id = :project_id
            {extra_where}
            ORDER BY rank, t.id
            LIMIT :limit
        """
        bound: Dict[str, Any] = {"query": match, "project_id": project_id, "limit": limit}
        if params:
            bound.update(params)

        async with self.get_session() as session:
            result = await session.execute(text(sql), bound)
            return [(row.id, abs(row.rank)) for row in result.fetchall()]

    async def close(self):
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            self._ready = False
