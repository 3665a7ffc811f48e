"""
CRM capability: a HubSpot-style contacts client.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from concierge.capabilities.base import HTTPCapabilityClient

logger = structlog.get_logger(__name__)

CONTACT_PROPERTIES = [
    "email",
    "firstname",
    "lastname",
    "company",
    "phone",
    "jobtitle",
    "lifecyclestage",
]

# Tool-facing field name -> CRM property name.
_FIELD_TO_PROPERTY = {
    "email": "email",
    "first_name": "firstname",
    "last_name": "lastname",
    "company": "company",
    "phone": "phone",
    "job_title": "jobtitle",
}


def parse_contact(contact: dict[str, Any]) -> dict[str, Any]:
    props = contact.get("properties") or {}
    return {
        "id": contact.get("id"),
        "email": props.get("email"),
        "first_name": props.get("firstname"),
        "last_name": props.get("lastname"),
        "company": props.get("company"),
        "phone": props.get("phone"),
        "job_title": props.get("jobtitle"),
        "lifecycle_stage": props.get("lifecyclestage"),
    }


def build_properties(fields: dict[str, Optional[str]]) -> dict[str, str]:
    """Map tool-facing fields to CRM properties, dropping unset ones."""
    return {
        _FIELD_TO_PROPERTY[name]: value
        for name, value in fields.items()
        if name in _FIELD_TO_PROPERTY and value is not None
    }


class CrmClient(HTTPCapabilityClient):
    provider = "hubspot"

    async def search_contacts(self, owner: str, query: str, limit: int = 100) -> list[dict[str, Any]]:
        body = {
            "query": query,
            "limit": limit,
            "properties": CONTACT_PROPERTIES,
        }
        result = await self._request(owner, "POST", "/crm/v3/objects/contacts/search", json_body=body)
        return [parse_contact(c) for c in result.get("results") or []]

    async def list_contacts(self, owner: str, limit: int = 100) -> list[dict[str, Any]]:
        result = await self._request(
            owner,
            "GET",
            "/crm/v3/objects/contacts",
            params={"limit": limit, "properties": ",".join(CONTACT_PROPERTIES)},
        )
        return [parse_contact(c) for c in result.get("results") or []]

    async def get_contact(self, owner: str, contact_id: str) -> dict[str, Any]:
        result = await self._request(
            owner,
            "GET",
            f"/crm/v3/objects/contacts/{contact_id}",
            params={"properties": ",".join(CONTACT_PROPERTIES)},
        )
        return parse_contact(result)

    async def create_contact(self, owner: str, **fields: Optional[str]) -> dict[str, Any]:
        result = await self._request(
            owner,
            "POST",
            "/crm/v3/objects/contacts",
            json_body={"properties": build_properties(fields)},
        )
        logger.info("crm.contact_created", owner=owner, contact_id=result.get("id"))
        return parse_contact(result)

    async def update_contact(self, owner: str, contact_id: str, **fields: Optional[str]) -> dict[str, Any]:
        result = await self._request(
            owner,
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            json_body={"properties": build_properties(fields)},
        )
        logger.info("crm.contact_updated", owner=owner, contact_id=contact_id)
        return parse_contact(result)
