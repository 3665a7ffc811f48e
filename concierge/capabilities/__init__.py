"""
External capabilities: mail, calendar and CRM clients, and the per-owner
credential links they authenticate with.
"""

from concierge.capabilities.base import CapabilityError, HTTPCapabilityClient
from concierge.capabilities.calendar import CalendarClient
from concierge.capabilities.credentials import CredentialStore
from concierge.capabilities.crm import CrmClient
from concierge.capabilities.mail import MailClient

__all__ = [
    "CalendarClient",
    "CapabilityError",
    "CredentialStore",
    "CrmClient",
    "HTTPCapabilityClient",
    "MailClient",
]
