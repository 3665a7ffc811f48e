"""
Calendar capability: a Google-Calendar-style REST client plus a free-slot
finder over working hours (09:00–17:00 UTC, 30-minute grid).
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

import structlog

from concierge.capabilities.base import HTTPCapabilityClient

logger = structlog.get_logger(__name__)

WORKDAY_START = time(9, 0)
WORKDAY_END = time(17, 0)
SLOT_STEP_MINUTES = 30


def parse_event_time(value: Optional[dict[str, Any]]) -> Optional[datetime]:
    """Parse an API ``start``/``end`` object; all-day dates become UTC midnight."""
    if not value:
        return None
    raw = value.get("dateTime")
    if raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raw_date = value.get("date")
    if raw_date:
        try:
            day = date.fromisoformat(raw_date)
        except ValueError:
            return None
        return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    return None


def parse_event(event: dict[str, Any]) -> dict[str, Any]:
    start = parse_event_time(event.get("start"))
    end = parse_event_time(event.get("end"))
    return {
        "id": event.get("id"),
        "title": event.get("summary"),
        "description": event.get("description"),
        "start_time": start.isoformat() if start else None,
        "end_time": end.isoformat() if end else None,
        "attendees": [
            {
                "email": a.get("email"),
                "name": a.get("displayName"),
                "response_status": a.get("responseStatus"),
            }
            for a in event.get("attendees") or []
        ],
        "location": event.get("location"),
        "html_link": event.get("htmlLink"),
    }


def free_slots(
    day: date,
    busy: list[tuple[datetime, datetime]],
    duration_minutes: int = 60,
) -> list[datetime]:
    """
    Start times on a 30-minute grid where a meeting of ``duration_minutes``
    fits inside working hours without overlapping any busy interval.
    """
    start = datetime.combine(day, WORKDAY_START, tzinfo=timezone.utc)
    end = datetime.combine(day, WORKDAY_END, tzinfo=timezone.utc)
    length = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=SLOT_STEP_MINUTES)

    slots: list[datetime] = []
    current = start
    while current + length <= end:
        slot_end = current + length
        if not any(current < b_end and slot_end > b_start for b_start, b_end in busy):
            slots.append(current)
        current += step
    return slots


class CalendarClient(HTTPCapabilityClient):
    provider = "google"

    async def search(
        self,
        owner: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        query: Optional[str] = None,
        calendar_id: str = "primary",
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "maxResults": limit,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if time_min:
            params["timeMin"] = time_min
        if time_max:
            params["timeMax"] = time_max
        listing = await self._request(
            owner, "GET", f"/calendars/{calendar_id}/events", params=params
        )
        events = [parse_event(e) for e in listing.get("items") or []]
        if query:
            needle = query.lower()
            events = [
                e
                for e in events
                if needle in (e["title"] or "").lower() or needle in (e["description"] or "").lower()
            ]
        return events

    async def create_event(
        self,
        owner: str,
        title: str,
        start_time: str,
        end_time: str,
        description: Optional[str] = None,
        attendees: Optional[list[str]] = None,
        location: Optional[str] = None,
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": title,
            "start": {"dateTime": start_time},
            "end": {"dateTime": end_time},
        }
        if description:
            body["description"] = description
        if location:
            body["location"] = location
        if attendees:
            body["attendees"] = [{"email": email} for email in attendees]
        created = await self._request(
            owner, "POST", f"/calendars/{calendar_id}/events", json_body=body
        )
        logger.info("calendar.event_created", owner=owner, event_id=created.get("id"))
        return parse_event(created)

    async def find_available_slots(
        self, owner: str, day: date, duration_minutes: int = 60
    ) -> list[str]:
        day_start = datetime.combine(day, WORKDAY_START, tzinfo=timezone.utc)
        day_end = datetime.combine(day, WORKDAY_END, tzinfo=timezone.utc)
        events = await self.search(
            owner, time_min=day_start.isoformat(), time_max=day_end.isoformat()
        )
        busy = []
        for event in events:
            if event["start_time"] and event["end_time"]:
                busy.append(
                    (
                        datetime.fromisoformat(event["start_time"]),
                        datetime.fromisoformat(event["end_time"]),
                    )
                )
        busy.sort()
        return [slot.isoformat() for slot in free_slots(day, busy, duration_minutes)]
