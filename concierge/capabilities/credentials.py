"""
Linked capability credentials.

Token acquisition and refresh happen outside the engine. What the engine
needs is narrower: which owners have linked at least one external service
(those are the owners the orchestration driver visits) and the current
access token to present on each capability call.
"""

from __future__ import annotations

import time
from typing import Optional

import structlog

from concierge.store import DataStore

logger = structlog.get_logger(__name__)

PROVIDERS = ("google", "hubspot")


class CredentialStore:
    def __init__(self, store: DataStore):
        self._store = store

    def link(self, owner: str, provider: str, access_token: str) -> None:
        """Store (or replace) an owner's access token for a provider."""
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider {provider!r}; expected one of {PROVIDERS}")
        if not access_token:
            raise ValueError("access_token must not be empty")
        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO owner_credentials (owner, provider, access_token, linked_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(owner, provider)
                   DO UPDATE SET access_token = excluded.access_token,
                                 linked_at = excluded.linked_at""",
                (owner, provider, access_token, time.time()),
            )
        logger.info("credentials.linked", owner=owner, provider=provider)

    def unlink(self, owner: str, provider: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM owner_credentials WHERE owner = ? AND provider = ?",
                (owner, provider),
            )
        return cursor.rowcount > 0

    def get_token(self, owner: str, provider: str) -> Optional[str]:
        row = self._store.fetchone(
            "SELECT access_token FROM owner_credentials WHERE owner = ? AND provider = ?",
            (owner, provider),
        )
        return row["access_token"] if row else None

    def providers(self, owner: str) -> list[str]:
        rows = self._store.fetchall(
            "SELECT provider FROM owner_credentials WHERE owner = ? ORDER BY provider",
            (owner,),
        )
        return [r["provider"] for r in rows]

    def list_owners(self) -> list[str]:
        """Every owner with at least one linked provider, sorted."""
        rows = self._store.fetchall(
            "SELECT DISTINCT owner FROM owner_credentials ORDER BY owner"
        )
        return [r["owner"] for r in rows]
