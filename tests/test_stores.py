"""
Tests for the smaller owner-scoped stores: conversation log, instructions and
capability credentials.
"""

from __future__ import annotations

import pytest

from concierge.instructions import InstructionNotFoundError

from helpers import OTHER_OWNER, OWNER


class TestConversationLog:
    def test_recent_returns_oldest_first(self, conversation):
        for i in range(5):
            conversation.append(OWNER, "user" if i % 2 == 0 else "assistant", f"message {i}")

        window = conversation.recent(OWNER, 3)
        assert [t.content for t in window] == ["message 2", "message 3", "message 4"]

    def test_recent_window_larger_than_history(self, conversation):
        conversation.append(OWNER, "user", "only one")
        assert [t.content for t in conversation.recent(OWNER, 10)] == ["only one"]

    def test_zero_window_is_empty(self, conversation):
        conversation.append(OWNER, "user", "hello")
        assert conversation.recent(OWNER, 0) == []

    def test_unknown_role_rejected(self, conversation):
        with pytest.raises(ValueError):
            conversation.append(OWNER, "system", "not stored")

    def test_to_message(self, conversation):
        turn = conversation.append(OWNER, "assistant", "Hi there")
        assert turn.to_message() == {"role": "assistant", "content": "Hi there"}

    def test_history_is_owner_scoped(self, conversation):
        conversation.append(OWNER, "user", "mine")
        conversation.append(OTHER_OWNER, "user", "theirs")
        assert [t.content for t in conversation.history(OWNER)] == ["mine"]

    def test_delete_and_clear(self, conversation):
        first = conversation.append(OWNER, "user", "one")
        conversation.append(OWNER, "assistant", "two")
        conversation.append(OWNER, "user", "three")

        assert conversation.delete(OWNER, first.turn_id) is True
        assert conversation.delete(OTHER_OWNER, first.turn_id) is False
        assert [t.content for t in conversation.history(OWNER)] == ["two", "three"]

        assert conversation.clear(OWNER) == 2
        assert conversation.history(OWNER) == []


class TestInstructionStore:
    def test_create_and_get(self, instruction_store):
        created = instruction_store.create(OWNER, "When a client emails, add them to the CRM")
        loaded = instruction_store.get(OWNER, created.instruction_id)
        assert loaded is not None
        assert loaded.active is True
        assert loaded.description.startswith("When a client emails")

    def test_active_only_filter(self, instruction_store):
        keep = instruction_store.create(OWNER, "Rule one")
        instruction_store.create(OWNER, "Rule two", active=False)

        active = instruction_store.list_instructions(OWNER, active_only=True)
        assert [i.instruction_id for i in active] == [keep.instruction_id]
        assert len(instruction_store.list_instructions(OWNER)) == 2

    def test_update_description_and_active(self, instruction_store):
        rule = instruction_store.create(OWNER, "Old wording")
        updated = instruction_store.update(
            OWNER, rule.instruction_id, description="New wording", active=False
        )
        assert updated.description == "New wording"
        assert updated.active is False

    def test_update_missing_raises(self, instruction_store):
        with pytest.raises(InstructionNotFoundError):
            instruction_store.update(OWNER, "instr-missing", active=False)

    def test_delete_is_owner_scoped(self, instruction_store):
        rule = instruction_store.create(OWNER, "Mine")
        assert instruction_store.delete(OTHER_OWNER, rule.instruction_id) is False
        assert instruction_store.delete(OWNER, rule.instruction_id) is True
        assert instruction_store.get(OWNER, rule.instruction_id) is None

    def test_empty_description_rejected(self, instruction_store):
        with pytest.raises(ValueError):
            instruction_store.create(OWNER, "  ")


class TestCredentialStore:
    def test_link_and_lookup(self, credentials):
        credentials.link(OWNER, "google", "tok-1")
        assert credentials.get_token(OWNER, "google") == "tok-1"
        assert credentials.get_token(OWNER, "hubspot") is None

    def test_relink_replaces_token(self, credentials):
        credentials.link(OWNER, "google", "tok-1")
        credentials.link(OWNER, "google", "tok-2")
        assert credentials.get_token(OWNER, "google") == "tok-2"
        assert credentials.providers(OWNER) == ["google"]

    def test_list_owners_distinct_and_sorted(self, credentials):
        credentials.link(OTHER_OWNER, "google", "b")
        credentials.link(OWNER, "google", "a")
        credentials.link(OWNER, "hubspot", "a2")
        assert credentials.list_owners() == [OWNER, OTHER_OWNER]

    def test_unlink(self, credentials):
        credentials.link(OWNER, "hubspot", "tok")
        assert credentials.unlink(OWNER, "hubspot") is True
        assert credentials.list_owners() == []

    def test_unknown_provider_rejected(self, credentials):
        with pytest.raises(ValueError):
            credentials.link(OWNER, "myspace", "tok")
