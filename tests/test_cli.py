"""Tests for concierge.main — Click commands over a real runtime in a temp data dir."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from concierge.capabilities.credentials import CredentialStore
from concierge.config import ConciergeConfig
from concierge.main import _redact_sensitive_fields, build_table, cli
from concierge.runtime import build_runtime
from concierge.store import DataStore

from helpers import HashEmbedder, ScriptedGateway, text_reply

OWNER = "alice@example.com"


@pytest.fixture()
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("CONCIERGE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("CONCIERGE_ANN_ENABLED", "false")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return tmp_path


def _invoke(*args, input=None):
    return CliRunner().invoke(cli, list(args), obj={}, input=input)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestRedaction:
    def test_long_content_truncated(self):
        event = _redact_sensitive_fields(None, "info", {"content": "x" * 200, "owner": OWNER})
        assert event["content"].endswith("... [truncated]")
        assert len(event["content"]) < 120
        assert event["owner"] == OWNER

    def test_bearer_tokens_masked_in_any_field(self):
        event = _redact_sensitive_fields(
            None, "warning", {"error": "401 for Authorization: Bearer ya29.secret-token"}
        )
        assert "ya29" not in event["error"]
        assert "Bearer [REDACTED]" in event["error"]

    def test_non_strings_untouched(self):
        event = _redact_sensitive_fields(None, "info", {"tool_calls": 3})
        assert event == {"tool_calls": 3}


class TestBuildTable:
    def test_rows_stringified(self):
        table = build_table("Tasks", ["ID", "Version"], [["task-1", 2]])
        assert table.row_count == 1
        assert [c.header for c in table.columns] == ["ID", "Version"]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    def test_version(self):
        result = _invoke("--version")
        assert result.exit_code == 0
        assert "concierge" in result.output

    def test_instructions_add_then_list_json(self, env):
        added = _invoke("instructions", "add", "--owner", OWNER, "Add new clients to the CRM")
        assert added.exit_code == 0, added.output

        listed = _invoke("--json", "instructions", "list", "--owner", OWNER)
        assert listed.exit_code == 0, listed.output
        payload = json.loads(listed.output)
        assert [i["description"] for i in payload] == ["Add new clients to the CRM"]

    def test_tasks_empty_json(self, env):
        result = _invoke("--json", "tasks", "--owner", OWNER, "--status", "waiting")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []

    def test_link_prompts_for_token(self, env):
        result = _invoke("link", "--owner", OWNER, "--provider", "google", input="tok-123\n")
        assert result.exit_code == 0, result.output

        store = DataStore(ConciergeConfig().storage.db_path)
        store.initialize()
        try:
            assert CredentialStore(store).get_token(OWNER, "google") == "tok-123"
        finally:
            store.close()

    def test_owner_is_required(self, env):
        result = _invoke("tasks")
        assert result.exit_code != 0
        assert "--owner" in result.output

    def test_chat_without_api_key_fails_cleanly(self, env):
        result = _invoke("chat", "--owner", OWNER, "hello")
        assert result.exit_code == 1
        assert "Model unavailable" in result.output

    def test_one_shot_chat_prints_answer(self, env):
        gateway = ScriptedGateway([text_reply("Jane's kid plays baseball.")])

        def open_runtime(require_model=False):
            return build_runtime(ConciergeConfig(), gateway=gateway, embedder=HashEmbedder())

        with patch("concierge.main._open_runtime", open_runtime):
            result = _invoke("chat", "--owner", OWNER, "What does Jane's kid play?")

        assert result.exit_code == 0, result.output
        assert "baseball" in result.output
        assert gateway.calls[0]["messages"][-1] == {
            "role": "user",
            "content": "What does Jane's kid play?",
        }
