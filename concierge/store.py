"""
Data Store — the durable layer under the engine.

Tasks, instructions, conversation turns, content chunks and linked capability
credentials all live in one SQLite database. This module owns the connection
and the schema; the domain stores (``TaskStore``, ``InstructionStore``,
``ConversationLog``, ``RetrievalIndex``, ``CredentialStore``) borrow it.

The store uses synchronous SQLite. Writes are short and serialized behind a
lock, so tool handlers running on worker threads and coroutines on the event
loop can share one connection.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

TASK_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress',
    context TEXT NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON tasks(owner, status);
"""

INSTRUCTION_SCHEMA = """
CREATE TABLE IF NOT EXISTS instructions (
    instruction_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    description TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_instructions_owner ON instructions(owner, active);
"""

CONVERSATION_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversation_turns (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    turn_id TEXT NOT NULL UNIQUE,
    owner TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_owner ON conversation_turns(owner, seq);
"""

CONTENT_SCHEMA = """
CREATE TABLE IF NOT EXISTS content_chunks (
    chunk_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    content TEXT NOT NULL,
    source TEXT NOT NULL,
    embedding TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_owner_source ON content_chunks(owner, source);
"""

CREDENTIAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS owner_credentials (
    owner TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    linked_at REAL NOT NULL,
    PRIMARY KEY (owner, provider)
);
"""


class DataStore:
    """
    Owns the SQLite connection and schema shared by every domain store.

    Call ``initialize()`` once before use and ``close()`` on shutdown. An
    in-memory database (``Path(":memory:")``) is supported for tests.
    """

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._in_memory = str(db_path) == ":memory:"
        if not self._in_memory:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        logger.info("data_store.initializing", path=str(db_path))

    def initialize(self) -> None:
        """Create the database connection and ensure the schema exists."""
        if self._conn is not None:
            logger.debug("data_store.already_initialized", path=str(self._db_path))
            return

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if not self._in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")

        for schema in (
            TASK_SCHEMA,
            INSTRUCTION_SCHEMA,
            CONVERSATION_SCHEMA,
            CONTENT_SCHEMA,
            CREDENTIAL_SCHEMA,
        ):
            self._conn.executescript(schema)
        self._conn.commit()

        logger.info("data_store.initialized", path=str(self._db_path))

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("DataStore is not initialized. Call initialize() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically under the write lock."""
        with self._lock:
            conn = self._require_connection()
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._require_connection().execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._require_connection().execute(sql, params).fetchone()

    @property
    def path(self) -> Path:
        return self._db_path
