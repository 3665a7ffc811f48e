"""
Instruction Store — standing behavioral rules.

An instruction is a free-text rule an owner leaves for the assistant: "when
someone new emails me, add them to the CRM". Owners create, edit and retire
instructions; the instruction evaluator only ever reads the active ones.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from concierge.store import DataStore

logger = structlog.get_logger(__name__)


class InstructionNotFoundError(Exception):
    """No instruction with this id exists for this owner."""


@dataclass
class Instruction:
    owner: str
    description: str
    instruction_id: str = field(default_factory=lambda: f"instr-{uuid.uuid4().hex[:12]}")
    active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instruction_id": self.instruction_id,
            "description": self.description,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> Instruction:
        return cls(
            instruction_id=row["instruction_id"],
            owner=row["owner"],
            description=row["description"],
            active=bool(row["active"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


class InstructionStore:
    """Owner-scoped CRUD over instructions."""

    def __init__(self, store: DataStore):
        self._store = store

    def create(self, owner: str, description: str, active: bool = True) -> Instruction:
        description = description.strip()
        if not description:
            raise ValueError("Instruction description must not be empty")
        instruction = Instruction(owner=owner, description=description, active=active)
        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO instructions
                   (instruction_id, owner, description, active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    instruction.instruction_id,
                    owner,
                    instruction.description,
                    int(instruction.active),
                    instruction.created_at,
                    instruction.updated_at,
                ),
            )
        logger.info("instructions.created", owner=owner, instruction_id=instruction.instruction_id)
        return instruction

    def get(self, owner: str, instruction_id: str) -> Optional[Instruction]:
        row = self._store.fetchone(
            "SELECT * FROM instructions WHERE owner = ? AND instruction_id = ?",
            (owner, instruction_id),
        )
        return Instruction.from_row(row) if row else None

    def list_instructions(self, owner: str, active_only: bool = False) -> list[Instruction]:
        sql = "SELECT * FROM instructions WHERE owner = ?"
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY created_at, instruction_id"
        return [Instruction.from_row(r) for r in self._store.fetchall(sql, (owner,))]

    def update(
        self,
        owner: str,
        instruction_id: str,
        description: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Instruction:
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM instructions WHERE owner = ? AND instruction_id = ?",
                (owner, instruction_id),
            ).fetchone()
            if row is None:
                raise InstructionNotFoundError(f"Instruction {instruction_id} not found")
            instruction = Instruction.from_row(row)
            if description is not None:
                if not description.strip():
                    raise ValueError("Instruction description must not be empty")
                instruction.description = description.strip()
            if active is not None:
                instruction.active = active
            instruction.updated_at = time.time()
            conn.execute(
                """UPDATE instructions SET description = ?, active = ?, updated_at = ?
                   WHERE owner = ? AND instruction_id = ?""",
                (
                    instruction.description,
                    int(instruction.active),
                    instruction.updated_at,
                    owner,
                    instruction_id,
                ),
            )
        logger.info(
            "instructions.updated",
            owner=owner,
            instruction_id=instruction_id,
            active=instruction.active,
        )
        return instruction

    def delete(self, owner: str, instruction_id: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM instructions WHERE owner = ? AND instruction_id = ?",
                (owner, instruction_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("instructions.deleted", owner=owner, instruction_id=instruction_id)
        return deleted
