"""Tests for SSE framing and the EventStream iterator."""

from __future__ import annotations

import asyncio
import json

from codexbridge.session.channel import ChannelMessage, EventChannel
from codexbridge.session.models import ExitInfo
from codexbridge.stream import HEARTBEAT_FRAME, EventStream, format_sse, message_payload


class TestFraming:
    def test_format_sse(self) -> None:
        frame = format_sse({"type": "connected", "sessionId": "s1"})
        assert frame.startswith(b"data: ")
        assert frame.endswith(b"\n\n")
        assert json.loads(frame[6:]) == {"type": "connected", "sessionId": "s1"}

    def test_heartbeat_is_a_comment(self) -> None:
        assert format_sse(None) == HEARTBEAT_FRAME
        assert HEARTBEAT_FRAME.startswith(b":")

    def test_message_payloads(self) -> None:
        event = {"type": "turn/started", "turn": {"id": "u1"}}
        assert message_payload(ChannelMessage("event", event)) is event
        assert message_payload(ChannelMessage("error", "boom")) == {
            "type": "error",
            "error": "boom",
        }
        assert message_payload(ChannelMessage("exit", ExitInfo(signal="SIGTERM"))) == {
            "type": "exit",
            "code": None,
            "signal": "SIGTERM",
        }


class TestEventStream:
    async def test_connected_comes_first(self) -> None:
        channel = EventChannel("test")
        stream = EventStream(channel.subscribe(), "s1", heartbeat_interval=5)
        channel.publish_event({"type": "early"})
        assert await anext(stream) == {"type": "connected", "sessionId": "s1"}
        assert await anext(stream) == {"type": "early"}
        stream.close()

    async def test_idle_stream_yields_heartbeat(self) -> None:
        channel = EventChannel("test")
        stream = EventStream(channel.subscribe(), "s1", heartbeat_interval=0.01)
        await anext(stream)
        assert await anext(stream) is None
        channel.publish_event({"type": "x"})
        assert await anext(stream) == {"type": "x"}
        stream.close()

    async def test_heartbeat_is_due_while_events_flow(self) -> None:
        channel = EventChannel("test")
        stream = EventStream(channel.subscribe(), "s1", heartbeat_interval=0.05)
        await anext(stream)
        channel.publish_event({"type": "busy"})
        assert await anext(stream) == {"type": "busy"}
        channel.publish_event({"type": "still-busy"})
        await asyncio.sleep(0.06)
        assert await anext(stream) is None
        assert await anext(stream) == {"type": "still-busy"}
        stream.close()

    async def test_exit_is_terminal(self) -> None:
        channel = EventChannel("test")
        stream = EventStream(channel.subscribe(), "s1", heartbeat_interval=5)
        channel.publish_error("stderr noise")
        channel.publish_exit(ExitInfo(code=1))
        channel.publish_event({"type": "after-exit"})
        payloads = [payload async for payload in stream]
        assert payloads == [
            {"type": "connected", "sessionId": "s1"},
            {"type": "error", "error": "stderr noise"},
            {"type": "exit", "code": 1, "signal": None},
        ]
        assert stream.closed
        assert channel.subscriber_count == 0

    async def test_channel_close_ends_stream(self) -> None:
        channel = EventChannel("test")
        stream = EventStream(channel.subscribe(), "s1", heartbeat_interval=5)
        await anext(stream)
        channel.close()
        assert [payload async for payload in stream] == []
        assert stream.closed

    async def test_context_manager_detaches(self) -> None:
        channel = EventChannel("test")
        async with EventStream(channel.subscribe(), "s1") as stream:
            assert channel.subscriber_count == 1
            await anext(stream)
        assert channel.subscriber_count == 0
        assert stream.closed
