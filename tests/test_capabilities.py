"""
Tests for concierge.capabilities — mail, calendar and CRM clients against an
``httpx.MockTransport`` standing in for the provider APIs.
"""

from __future__ import annotations

import base64
import json
from datetime import date, datetime, timezone
from email import message_from_bytes
from email.policy import default

import httpx
import pytest

from concierge.capabilities import CalendarClient, CapabilityError, CrmClient, MailClient
from concierge.capabilities.calendar import free_slots, parse_event
from concierge.capabilities.crm import build_properties
from concierge.capabilities.mail import build_raw_message, parse_message

from helpers import OWNER


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail_message(message_id: str, sender: str, subject: str, body: str) -> dict:
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "snippet": body[:20],
        "payload": {
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": OWNER},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": "Mon, 19 Oct 2026 09:00:00 +0000"},
            ],
            "parts": [{"mimeType": "text/plain", "body": {"data": _b64(body)}}],
        },
    }


@pytest.fixture()
def linked(credentials):
    credentials.link(OWNER, "google", "google-token")
    credentials.link(OWNER, "hubspot", "hubspot-token")
    return credentials


class TestMailClient:
    def test_parse_message_decodes_body(self):
        parsed = parse_message(_gmail_message("m1", "sam@acme.com", "Tuesday", "Tuesday works for me"))
        assert parsed["from"] == "sam@acme.com"
        assert parsed["subject"] == "Tuesday"
        assert parsed["body"] == "Tuesday works for me"
        assert parsed["thread_id"] == "thread-m1"

    def test_raw_message_round_trips_headers(self):
        raw = build_raw_message("sam@acme.com", "Tuesday", "See you then")
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)).decode()
        assert decoded.startswith("To: sam@acme.com\r\nSubject: Tuesday\r\n")
        assert decoded.rstrip().endswith("See you then")

    def test_raw_message_rejects_header_injection(self):
        with pytest.raises(ValueError):
            build_raw_message("sam@acme.com", "Tuesday\r\nBcc: attacker@evil.com", "hi")
        with pytest.raises(ValueError):
            build_raw_message("sam@acme.com\nBcc: attacker@evil.com", "Tuesday", "hi")

    def test_raw_message_encodes_non_ascii_subject(self):
        raw = build_raw_message("sam@acme.com", "Réunion mardi", "À bientôt")
        data = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        header_block = data.split(b"\r\n\r\n", 1)[0].decode("ascii")
        assert "=?utf-8?" in header_block
        message = message_from_bytes(data, policy=default)
        assert message["Subject"] == "Réunion mardi"
        assert message.get_content().rstrip() == "À bientôt"

    @pytest.mark.asyncio
    async def test_search_fetches_each_message_with_bearer_token(self, linked):
        seen_auth = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers["Authorization"])
            if request.url.path == "/messages":
                assert request.url.params["q"] == "after:1700000000"
                return httpx.Response(200, json={"messages": [{"id": "m1"}, {"id": "m2"}]})
            if request.url.path == "/messages/m1":
                return httpx.Response(200, json=_gmail_message("m1", "sam@acme.com", "Hi", "Hello"))
            return httpx.Response(404, json={"error": "gone"})

        client = MailClient(linked, "https://mail.test", transport=httpx.MockTransport(handler))
        try:
            emails = await client.search(OWNER, query="after:1700000000", limit=10)
        finally:
            await client.close()

        assert [e["id"] for e in emails] == ["m1"]
        assert set(seen_auth) == {"Bearer google-token"}

    @pytest.mark.asyncio
    async def test_send_posts_raw_message(self, linked):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "sent-1"})

        client = MailClient(linked, "https://mail.test", transport=httpx.MockTransport(handler))
        try:
            result = await client.send(OWNER, "sam@acme.com", "Tuesday", "Works for me")
        finally:
            await client.close()

        assert result == {"id": "sent-1"}
        assert captured["path"] == "/messages/send"
        assert "raw" in captured["body"]

    @pytest.mark.asyncio
    async def test_send_with_injected_header_is_rejected_locally(self, linked):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "sent-1"})

        client = MailClient(linked, "https://mail.test", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(CapabilityError) as exc_info:
                await client.send(OWNER, "sam@acme.com", "Tuesday\r\nBcc: attacker@evil.com", "hi")
        finally:
            await client.close()

        assert exc_info.value.status == 400
        assert requests == []

    @pytest.mark.asyncio
    async def test_unlinked_owner_gets_401(self, credentials):
        client = MailClient(credentials, "https://mail.test", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        try:
            with pytest.raises(CapabilityError) as exc_info:
                await client.search(OWNER)
        finally:
            await client.close()
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_http_error_carries_status_and_payload(self, linked):
        transport = httpx.MockTransport(lambda r: httpx.Response(403, json={"error": "insufficient scope"}))
        client = MailClient(linked, "https://mail.test", transport=transport)
        try:
            with pytest.raises(CapabilityError) as exc_info:
                await client.get(OWNER, "m1")
        finally:
            await client.close()
        assert exc_info.value.status == 403
        assert exc_info.value.payload == {"error": "insufficient scope"}

    @pytest.mark.asyncio
    async def test_transport_failure_is_503(self, linked):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = MailClient(linked, "https://mail.test", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(CapabilityError) as exc_info:
                await client.get(OWNER, "m1")
        finally:
            await client.close()
        assert exc_info.value.status == 503


class TestCalendar:
    def test_parse_event_handles_all_day(self):
        event = parse_event(
            {
                "id": "e1",
                "summary": "Offsite",
                "start": {"date": "2026-10-20"},
                "end": {"date": "2026-10-21"},
                "attendees": [{"email": "sam@acme.com", "responseStatus": "accepted"}],
            }
        )
        assert event["title"] == "Offsite"
        assert event["start_time"] == "2026-10-20T00:00:00+00:00"
        assert event["attendees"][0]["email"] == "sam@acme.com"

    def test_free_slots_skip_busy_and_end_by_five(self):
        day = date(2026, 10, 20)
        busy = [
            (
                datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc),
                datetime(2026, 10, 20, 11, 0, tzinfo=timezone.utc),
            )
        ]
        slots = free_slots(day, busy, duration_minutes=60)
        hours = [s.strftime("%H:%M") for s in slots]
        assert hours[0] == "09:00"
        assert "09:30" not in hours
        assert "10:00" not in hours and "10:30" not in hours
        assert "11:00" in hours
        assert hours[-1] == "16:00"

    @pytest.mark.asyncio
    async def test_search_filters_by_text(self, linked):
        items = [
            {"id": "1", "summary": "Quarterly review", "start": {"dateTime": "2026-10-20T10:00:00Z"}, "end": {"dateTime": "2026-10-20T11:00:00Z"}},
            {"id": "2", "summary": "Lunch", "description": "with the review board", "start": {"dateTime": "2026-10-20T12:00:00Z"}, "end": {"dateTime": "2026-10-20T13:00:00Z"}},
            {"id": "3", "summary": "Gym", "start": {"dateTime": "2026-10-20T18:00:00Z"}, "end": {"dateTime": "2026-10-20T19:00:00Z"}},
        ]
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"items": items}))
        client = CalendarClient(linked, "https://cal.test", transport=transport)
        try:
            events = await client.search(OWNER, query="REVIEW")
        finally:
            await client.close()
        assert [e["id"] for e in events] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_find_available_slots_uses_existing_events(self, linked):
        items = [
            {"id": "1", "summary": "Busy", "start": {"dateTime": "2026-10-20T09:00:00Z"}, "end": {"dateTime": "2026-10-20T16:00:00Z"}},
        ]
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"items": items}))
        client = CalendarClient(linked, "https://cal.test", transport=transport)
        try:
            slots = await client.find_available_slots(OWNER, date(2026, 10, 20), 30)
        finally:
            await client.close()
        assert slots == ["2026-10-20T16:00:00+00:00", "2026-10-20T16:30:00+00:00"]


class TestCrm:
    def test_build_properties_drops_unset_and_unknown(self):
        assert build_properties({"first_name": "Sam", "last_name": None, "nickname": "S"}) == {
            "firstname": "Sam"
        }

    @pytest.mark.asyncio
    async def test_search_contacts(self, linked):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": "101", "properties": {"email": "sam@acme.com", "firstname": "Sam", "company": "Acme"}}
                    ]
                },
            )

        client = CrmClient(linked, "https://crm.test", transport=httpx.MockTransport(handler))
        try:
            contacts = await client.search_contacts(OWNER, "Sam", limit=5)
        finally:
            await client.close()

        assert captured["auth"] == "Bearer hubspot-token"
        assert captured["body"]["query"] == "Sam"
        assert contacts == [
            {
                "id": "101",
                "email": "sam@acme.com",
                "first_name": "Sam",
                "last_name": None,
                "company": "Acme",
                "phone": None,
                "job_title": None,
                "lifecycle_stage": None,
            }
        ]

    @pytest.mark.asyncio
    async def test_update_contact_patches_properties(self, linked):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "101", "properties": {"jobtitle": "CTO"}})

        client = CrmClient(linked, "https://crm.test", transport=httpx.MockTransport(handler))
        try:
            contact = await client.update_contact(OWNER, "101", job_title="CTO")
        finally:
            await client.close()

        assert captured["method"] == "PATCH"
        assert captured["path"] == "/crm/v3/objects/contacts/101"
        assert captured["body"] == {"properties": {"jobtitle": "CTO"}}
        assert contact["job_title"] == "CTO"
