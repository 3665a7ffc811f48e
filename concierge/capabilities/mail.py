"""
Mail capability: a Gmail-style REST client.

Search lists message ids matching a query, then fetches each message in
``full`` format and flattens it into a plain dict (subject, sender, body...).
A message that fails to load is skipped so one bad id does not sink a search.
"""

from __future__ import annotations

import base64
from email.message import EmailMessage
from email.policy import SMTP
from typing import Any, Optional

import structlog

from concierge.capabilities.base import CapabilityError, HTTPCapabilityClient

logger = structlog.get_logger(__name__)


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def _header(headers: list[dict[str, Any]], name: str) -> str:
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def _extract_body(payload: dict[str, Any]) -> str:
    body = payload.get("body") or {}
    if body.get("data"):
        return _decode_base64url(body["data"])
    for part in payload.get("parts") or []:
        if part.get("mimeType") in ("text/plain", "text/html"):
            data = (part.get("body") or {}).get("data")
            if data:
                return _decode_base64url(data)
    return ""


def parse_message(message: dict[str, Any]) -> dict[str, Any]:
    """Flatten a raw API message into the fields the engine uses."""
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    return {
        "id": message.get("id"),
        "thread_id": message.get("threadId"),
        "subject": _header(headers, "Subject"),
        "from": _header(headers, "From"),
        "to": _header(headers, "To"),
        "date": _header(headers, "Date"),
        "body": _extract_body(payload),
        "snippet": message.get("snippet", ""),
    }


def build_raw_message(to: str, subject: str, body: str) -> str:
    """
    RFC 5322 plain-text message, base64url-encoded without padding.

    Non-ASCII headers are RFC 2047 encoded. A header value containing CR or LF
    raises ``ValueError`` instead of being written.
    """
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    raw = message.as_bytes(policy=SMTP)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class MailClient(HTTPCapabilityClient):
    provider = "google"

    async def search(self, owner: str, query: str = "", limit: int = 100) -> list[dict[str, Any]]:
        listing = await self._request(
            owner, "GET", "/messages", params={"q": query, "maxResults": limit}
        )
        messages: list[dict[str, Any]] = []
        for ref in listing.get("messages") or []:
            try:
                messages.append(await self.get(owner, ref["id"]))
            except CapabilityError as exc:
                logger.warning("mail.message_fetch_failed", message_id=ref.get("id"), status=exc.status)
        return messages

    async def get(self, owner: str, message_id: str) -> dict[str, Any]:
        raw = await self._request(owner, "GET", f"/messages/{message_id}", params={"format": "full"})
        return parse_message(raw)

    async def send(
        self, owner: str, to: str, subject: str, body: str, thread_id: Optional[str] = None
    ) -> dict[str, Any]:
        try:
            raw = build_raw_message(to, subject, body)
        except ValueError as exc:
            raise CapabilityError(400, {"error": f"invalid message header: {exc}"}) from exc
        payload: dict[str, Any] = {"raw": raw}
        if thread_id:
            payload["threadId"] = thread_id
        result = await self._request(owner, "POST", "/messages/send", json_body=payload)
        logger.info("mail.sent", owner=owner, message_id=result.get("id"))
        return result
