"""
Content ingestion: pull an owner's mail, contacts and calendar through the
capability clients and index each item as one chunk tagged with its source.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from concierge.capabilities import CalendarClient, CrmClient, MailClient
from concierge.retrieval.index import RetrievalIndex

logger = structlog.get_logger(__name__)

SOURCE_MAIL = "mail"
SOURCE_CRM = "crm"
SOURCE_CALENDAR = "calendar"


def email_to_text(email: dict[str, Any]) -> str:
    lines = [
        f"From: {email.get('from') or ''}",
        f"To: {email.get('to') or ''}",
        f"Date: {email.get('date') or ''}",
        f"Subject: {email.get('subject') or ''}",
        "",
        (email.get("body") or email.get("snippet") or "").strip(),
    ]
    return "\n".join(lines).strip()


def contact_to_text(contact: dict[str, Any]) -> str:
    name = " ".join(p for p in (contact.get("first_name"), contact.get("last_name")) if p)
    parts = [f"Contact: {name or 'unnamed'}"]
    for label, key in (
        ("Email", "email"),
        ("Company", "company"),
        ("Job title", "job_title"),
        ("Phone", "phone"),
    ):
        if contact.get(key):
            parts.append(f"{label}: {contact[key]}")
    return "\n".join(parts)


def event_to_text(event: dict[str, Any]) -> str:
    parts = [f"Event: {event.get('title') or 'untitled'}"]
    if event.get("start_time"):
        parts.append(f"When: {event['start_time']} to {event.get('end_time') or '?'}")
    if event.get("location"):
        parts.append(f"Where: {event['location']}")
    attendees = [a.get("email") for a in event.get("attendees") or [] if a.get("email")]
    if attendees:
        parts.append(f"Attendees: {', '.join(attendees)}")
    if event.get("description"):
        parts.append(event["description"])
    return "\n".join(parts)


class ContentIngestor:
    def __init__(
        self,
        index: RetrievalIndex,
        mail: Optional[MailClient] = None,
        calendar: Optional[CalendarClient] = None,
        crm: Optional[CrmClient] = None,
    ):
        self._index = index
        self._mail = mail
        self._calendar = calendar
        self._crm = crm

    async def _index_all(self, owner: str, texts: list[str], source: str) -> int:
        indexed = 0
        for text in texts:
            if not text.strip():
                continue
            await asyncio.to_thread(self._index.index, owner, text, source)
            indexed += 1
        logger.info("ingest.indexed", owner=owner, source=source, count=indexed)
        return indexed

    async def ingest_emails(self, owner: str, query: str = "", limit: int = 100) -> int:
        if self._mail is None:
            return 0
        emails = await self._mail.search(owner, query=query, limit=limit)
        return await self._index_all(owner, [email_to_text(e) for e in emails], SOURCE_MAIL)

    async def ingest_contacts(self, owner: str, limit: int = 100) -> int:
        if self._crm is None:
            return 0
        contacts = await self._crm.list_contacts(owner, limit=limit)
        return await self._index_all(owner, [contact_to_text(c) for c in contacts], SOURCE_CRM)

    async def ingest_calendar(
        self, owner: str, time_min: Optional[str] = None, time_max: Optional[str] = None
    ) -> int:
        if self._calendar is None:
            return 0
        events = await self._calendar.search(owner, time_min=time_min, time_max=time_max)
        return await self._index_all(owner, [event_to_text(e) for e in events], SOURCE_CALENDAR)

    async def ingest_all(self, owner: str) -> dict[str, int]:
        return {
            SOURCE_MAIL: await self.ingest_emails(owner),
            SOURCE_CRM: await self.ingest_contacts(owner),
            SOURCE_CALENDAR: await self.ingest_calendar(owner),
        }
