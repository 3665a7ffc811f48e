"""
Concierge — an agentic orchestration engine for a professional's mail,
calendar and contacts.

A user talks to the assistant in natural language. Each message is grounded in
the user's own indexed data, answered by a language model that can call tools
against external services, and anything that cannot finish right away becomes a
persistent task that a scheduled pass picks up later.

Architecture layers (bottom to top):
    1. Storage (SQLite: tasks, instructions, conversation, chunks, credentials)
    2. Retrieval index (embeddings + similarity search, owner-scoped)
    3. Language-model gateway (tool-calling completions)
    4. Capability clients (mail, calendar, CRM over HTTP)
    5. Tools (registry, validation, execution)
    6. Agentic loop (bounded tool-calling runs)
    7. Assistant (chat turns)
    8. Orchestration (task resumption + standing instructions)
"""

__version__ = "0.1.0"
