"""
Tests for concierge.events — typed events on owner-scoped topics.
"""

from __future__ import annotations

import asyncio

import pytest

from concierge.events import (
    EventBus,
    OrchestrationPassCompletedEvent,
    TaskUpdatedEvent,
    ToolExecutingEvent,
    TurnCompletedEvent,
    TurnFailedEvent,
    create_event_bus,
)

from helpers import OTHER_OWNER, OWNER


class TestEventTypes:
    def test_event_type_derived_from_class_name(self):
        assert TurnCompletedEvent(turn_id="t", content="hi", iterations=0, tool_calls=0).event_type == "turn.completed"
        assert TurnFailedEvent(turn_id="t", error="x", error_kind="k").event_type == "turn.failed"
        assert ToolExecutingEvent(tool_name="n", tool_use_id="i", iteration=1).event_type == "tool.executing"
        assert (
            OrchestrationPassCompletedEvent(
                succeeded=True, active_tasks=0, waiting_tasks=0, new_events=0
            ).event_type
            == "orchestration.pass.completed"
        )

    def test_topic_is_owner_scoped(self):
        event = TaskUpdatedEvent(
            owner=OWNER, task_id="task-1", status="completed", version=2, changed_keys=["status"]
        )
        assert event.topic == f"{OWNER}.task.updated"

    def test_topic_without_owner_is_bare_type(self):
        event = ToolExecutingEvent(tool_name="n", tool_use_id="i", iteration=1)
        assert event.topic == "tool.executing"


class TestEventBus:
    @pytest.mark.asyncio
    async def test_subscriber_only_sees_its_owner(self):
        bus = create_event_bus()
        received = []
        bus.subscribe(f"{OWNER}.turn.*", received.append)
        await bus.start()
        try:
            await bus.emit_async(
                TurnCompletedEvent(owner=OWNER, turn_id="1", content="a", iterations=0, tool_calls=0)
            )
            await bus.emit_async(
                TurnCompletedEvent(owner=OTHER_OWNER, turn_id="2", content="b", iterations=0, tool_calls=0)
            )
            await bus.emit_async(
                TurnFailedEvent(owner=OWNER, turn_id="3", error="boom", error_kind="provider_timeout")
            )
        finally:
            await bus.stop()

        assert [e.turn_id for e in received] == ["1", "3"]

    @pytest.mark.asyncio
    async def test_async_handlers_awaited_and_failures_isolated(self):
        bus = EventBus()
        seen = []

        async def good(event):
            seen.append(event.tool_name)

        def bad(event):
            raise RuntimeError("handler bug")

        bus.subscribe("*.tool.executing", bad)
        bus.subscribe("*.tool.executing", good)
        await bus.start()
        try:
            await bus.emit_async(
                ToolExecutingEvent(owner=OWNER, tool_name="send_email", tool_use_id="c1", iteration=1)
            )
        finally:
            await bus.stop()

        assert seen == ["send_email"]

    @pytest.mark.asyncio
    async def test_events_emitted_before_start_are_delivered(self):
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)
        bus.publish(ToolExecutingEvent(owner=OWNER, tool_name="a", tool_use_id="1", iteration=1))
        await bus.start()
        await bus.stop()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_emit_from_worker_thread_is_delivered(self):
        asyncio.get_running_loop().set_debug(True)
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)
        await bus.start()
        try:
            for i in range(3):
                await asyncio.to_thread(
                    bus.emit,
                    ToolExecutingEvent(owner=OWNER, tool_name="t", tool_use_id=str(i), iteration=1),
                )
        finally:
            await bus.stop()
        assert [e.tool_use_id for e in received] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_emit_async_on_stopped_bus_raises(self):
        bus = EventBus()
        with pytest.raises(RuntimeError):
            await bus.emit_async(
                ToolExecutingEvent(owner=OWNER, tool_name="a", tool_use_id="1", iteration=1)
            )

    def test_unsubscribe(self):
        bus = EventBus()
        sub_id = bus.subscribe("*", lambda e: None)
        assert bus.subscription_count == 1
        bus.unsubscribe(sub_id)
        assert bus.subscription_count == 0
