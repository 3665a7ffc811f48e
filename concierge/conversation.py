"""
Conversation Log — the append-only record of chat turns.

Each row is one message (user, assistant or tool) for one owner. The log is
read back in bounded windows of the most recent turns, oldest first, which is
the shape the conversation loop needs for its history block.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from concierge.store import DataStore

logger = structlog.get_logger(__name__)

VALID_ROLES = frozenset({"user", "assistant", "tool"})


@dataclass
class ConversationTurn:
    owner: str
    role: str
    content: str
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, str]:
        """Render as a neutral chat message for the gateway."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_row(cls, row: Any) -> ConversationTurn:
        return cls(
            turn_id=row["turn_id"],
            owner=row["owner"],
            role=row["role"],
            content=row["content"],
            created_at=float(row["created_at"]),
        )


class ConversationLog:
    def __init__(self, store: DataStore):
        self._store = store

    def append(self, owner: str, role: str, content: str) -> ConversationTurn:
        if role not in VALID_ROLES:
            raise ValueError(f"Unknown conversation role: {role!r}")
        turn = ConversationTurn(owner=owner, role=role, content=content)
        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO conversation_turns (turn_id, owner, role, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (turn.turn_id, owner, role, content, turn.created_at),
            )
        logger.debug("conversation.appended", owner=owner, role=role, turn_id=turn.turn_id)
        return turn

    def recent(self, owner: str, limit: int = 10) -> list[ConversationTurn]:
        """The ``limit`` most recent turns, returned oldest first."""
        if limit <= 0:
            return []
        rows = self._store.fetchall(
            """SELECT * FROM conversation_turns WHERE owner = ?
               ORDER BY seq DESC LIMIT ?""",
            (owner, limit),
        )
        return [ConversationTurn.from_row(r) for r in reversed(rows)]

    def history(self, owner: str) -> list[ConversationTurn]:
        rows = self._store.fetchall(
            "SELECT * FROM conversation_turns WHERE owner = ? ORDER BY seq",
            (owner,),
        )
        return [ConversationTurn.from_row(r) for r in rows]

    def delete(self, owner: str, turn_id: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM conversation_turns WHERE owner = ? AND turn_id = ?",
                (owner, turn_id),
            )
        return cursor.rowcount > 0

    def clear(self, owner: str) -> int:
        """Delete an owner's whole history; returns the number of turns removed."""
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM conversation_turns WHERE owner = ?",
                (owner,),
            )
        logger.info("conversation.cleared", owner=owner, removed=cursor.rowcount)
        return cursor.rowcount
