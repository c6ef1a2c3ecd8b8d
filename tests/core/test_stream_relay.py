import asyncio
import json

from core import metrics
from core.config.schemas.upstream import UpstreamConfig
from core.events import subscribe
from core.relay.publisher import SERIALIZATION_ERROR_FRAME
from core.relay import (
    ChatMessage,
    ChatRequest,
    SessionRegistry,
    StreamRelay,
    TransportError,
    UNAVAILABLE_PREFIX,
)


class _ScriptedTransport:
    """Yields canned chunks; optionally fails or hangs afterwards."""

    def __init__(self, chunks, error=None, hang=False, on_chunk=None):
        self.chunks = list(chunks)
        self.error = error
        self.hang = hang
        self.on_chunk = on_chunk
        self.calls = []
        self.closed = False

    async def open_stream(self, url, headers, body):
        self.calls.append((url, dict(headers), body))
        try:
            for i, chunk in enumerate(self.chunks):
                if self.on_chunk is not None:
                    self.on_chunk(i)
                yield chunk
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


def _cfg(**kw):
    kw.setdefault("url", "http://upstream.test/generation")
    kw.setdefault("api_key", "sk-test")
    return UpstreamConfig(**kw)


def _collect(relay, request, on_event=None):
    async def _run():
        out = []
        async for ev in relay.relay(request):
            out.append(ev)
            if on_event is not None:
                on_event(ev)
        return out

    return asyncio.run(_run())


def _assert_single_terminal(events):
    assert events, "relay produced no events"
    assert [e.finished for e in events].count(True) == 1
    assert events[-1].finished is True


HEL = '{"output":{"text":"Hel"}}'
LO_STOP = '{"output":{"text":"lo","finish_reason":"stop"}}'


def test_two_chunks_complete_and_registry_cleared():
    registry = SessionRegistry()
    relay = StreamRelay(
        _cfg(), registry, _ScriptedTransport([HEL, LO_STOP])
    )
    seen_active = []
    events = _collect(
        relay,
        ChatRequest(message="hi", session_id="s1"),
        on_event=lambda ev: seen_active.append(relay.is_active("s1")),
    )
    assert [(e.content, e.finished) for e in events] == [
        ("Hel", False),
        ("lo", True),
    ]
    assert seen_active[0] is True
    assert relay.is_active("s1") is False
    assert registry.active_count() == 0
    assert metrics.counter_value(
        "relay_terminal_total", {"status": "completed"}
    ) == 1


def test_nothing_after_finished_chunk():
    transport = _ScriptedTransport([LO_STOP, HEL, "[DONE]"])
    events = _collect(
        StreamRelay(_cfg(), transport=transport),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert [e.content for e in events] == ["lo"]
    assert transport.closed is True


def test_done_sentinel_terminates():
    events = _collect(
        StreamRelay(_cfg(), transport=_ScriptedTransport([HEL, "[DONE]"])),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert [(e.content, e.finished) for e in events] == [
        ("Hel", False),
        ("", True),
    ]


def test_keepalive_and_malformed_chunks_dropped():
    chunks = ["", "   ", "garbage", '{"foo":1}', HEL, "[DONE]"]
    events = _collect(
        StreamRelay(_cfg(), transport=_ScriptedTransport(chunks)),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert [e.content for e in events] == ["Hel", ""]
    _assert_single_terminal(events)


def test_upstream_eof_without_stop_yields_terminal():
    registry = SessionRegistry()
    events = _collect(
        StreamRelay(_cfg(), registry, _ScriptedTransport([HEL])),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert [(e.content, e.finished) for e in events] == [
        ("Hel", False),
        ("", True),
    ]
    assert registry.active_count() == 0


def test_cancel_mid_stream_stops_content_and_terminates():
    registry = SessionRegistry()
    chunks = [HEL] + ['{"output":{"text":"more"}}'] * 5 + [LO_STOP]
    transport = _ScriptedTransport(chunks)
    relay = StreamRelay(_cfg(), registry, transport)

    def _stop_after_first(ev):
        if ev.content == "Hel":
            assert relay.cancel("s1") is True

    events = _collect(
        relay, ChatRequest(message="hi", session_id="s1"), _stop_after_first
    )
    assert [(e.content, e.finished, e.error) for e in events] == [
        ("Hel", False, None),
        ("", True, None),
    ]
    assert registry.active_count() == 0
    assert transport.closed is True
    assert metrics.counter_value(
        "relay_terminal_total", {"status": "cancelled"}
    ) == 1


def test_cancel_unknown_or_finished_session_is_noop():
    relay = StreamRelay(_cfg(), transport=_ScriptedTransport([LO_STOP]))
    assert relay.cancel("nope") is False
    _collect(relay, ChatRequest(message="hi", session_id="s1"))
    assert relay.cancel("s1") is False
    assert metrics.counter_value(
        "relay_cancel_requests_total", {"known": "false"}
    ) == 2


def test_timeout_yields_single_error_terminal():
    registry = SessionRegistry()
    relay = StreamRelay(
        _cfg(timeout_s=0.05), registry, _ScriptedTransport([], hang=True)
    )
    events = _collect(relay, ChatRequest(message="hi", session_id="s1"))
    assert len(events) == 1
    ev = events[0]
    assert ev.finished is True
    assert ev.error and ev.error.startswith(UNAVAILABLE_PREFIX)
    assert registry.active_count() == 0
    assert metrics.counter_value(
        "relay_failures_total", {"error_type": "timeout"}
    ) == 1


def test_timeout_bounds_whole_call_after_partial_output():
    relay = StreamRelay(
        _cfg(timeout_s=0.05), transport=_ScriptedTransport([HEL], hang=True)
    )
    events = _collect(relay, ChatRequest(message="hi", session_id="s1"))
    assert events[0].content == "Hel"
    _assert_single_terminal(events)
    assert events[-1].error.startswith(UNAVAILABLE_PREFIX)


def test_transport_error_becomes_terminal_event():
    registry = SessionRegistry()
    transport = _ScriptedTransport(
        [HEL], error=TransportError("connection refused")
    )
    events = _collect(
        StreamRelay(_cfg(), registry, transport),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert events[0].content == "Hel"
    _assert_single_terminal(events)
    last = events[-1]
    assert last.error == UNAVAILABLE_PREFIX + "connection refused"
    assert last.content == last.error
    assert registry.active_count() == 0


def test_unexpected_error_does_not_escape():
    class _Broken:
        def open_stream(self, url, headers, body):
            raise RuntimeError("socket exploded")

    events = _collect(
        StreamRelay(_cfg(), transport=_Broken()),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert len(events) == 1
    assert events[0].finished is True
    assert "socket exploded" in events[0].error


def test_request_sent_to_upstream():
    transport = _ScriptedTransport([LO_STOP])
    _collect(
        StreamRelay(_cfg(model="qwen-turbo"), transport=transport),
        ChatRequest(
            message="how are you",
            history=[ChatMessage("user", "hi")],
            session_id="s1",
        ),
    )
    url, headers, body = transport.calls[0]
    assert url == "http://upstream.test/generation"
    assert headers["Authorization"] == "Bearer sk-test"
    assert headers["Accept"] == "text/event-stream"
    assert body["model"] == "qwen-turbo"
    assert body["input"]["prompt"] == "用户: hi\n用户: how are you\n助手: "
    assert body["parameters"]["incremental_output"] is True


def test_missing_session_id_is_generated():
    started = []
    subscribe(
        lambda name, p: started.append(p["session_id"])
        if name == "RelayStarted" else None
    )
    relay = StreamRelay(_cfg(), transport=_ScriptedTransport([LO_STOP]))
    _collect(relay, ChatRequest(message="a"))
    _collect(relay, ChatRequest(message="b"))
    assert len(started) == 2
    assert started[0] != started[1]
    assert all(len(sid) == 36 for sid in started)


def test_consumer_detach_still_cleans_up():
    registry = SessionRegistry()
    transport = _ScriptedTransport([HEL, HEL, HEL, LO_STOP])
    relay = StreamRelay(_cfg(), registry, transport)

    async def _run():
        gen = relay.relay(ChatRequest(message="hi", session_id="s1"))
        first = await gen.__anext__()
        assert registry.is_active("s1") is True
        await gen.aclose()
        return first

    first = asyncio.run(_run())
    assert first.content == "Hel"
    assert registry.active_count() == 0
    assert transport.closed is True


def test_start_relay_yields_json_frames():
    relay = StreamRelay(
        _cfg(), transport=_ScriptedTransport([HEL, LO_STOP])
    )

    async def _run():
        return [
            f async for f in relay.start_relay(
                ChatRequest(message="hi", session_id="s1")
            )
        ]

    frames = [json.loads(f) for f in asyncio.run(_run())]
    assert [f["content"] for f in frames] == ["Hel", "lo"]
    assert [f["finished"] for f in frames] == [False, True]
    assert all("error" not in f for f in frames)


def test_deeply_nested_chunk_skipped_and_stream_continues():
    nested = "[" * 200000
    events = _collect(
        StreamRelay(_cfg(), transport=_ScriptedTransport([HEL, nested, LO_STOP])),
        ChatRequest(message="hi", session_id="s1"),
    )
    assert [(e.content, e.finished, e.error) for e in events] == [
        ("Hel", False, None),
        ("lo", True, None),
    ]


def test_unencodable_chunk_ends_stream_as_failed():
    registry = SessionRegistry()
    relay = StreamRelay(
        _cfg(),
        registry,
        _ScriptedTransport([HEL, '{"output":{"text":"\\ud800"}}', LO_STOP]),
    )

    async def _run():
        return [
            f async for f in relay.start_relay(
                ChatRequest(message="hi", session_id="s1")
            )
        ]

    frames = asyncio.run(_run())
    assert json.loads(frames[0])["content"] == "Hel"
    assert frames[1:] == [SERIALIZATION_ERROR_FRAME]
    assert registry.active_count() == 0
    assert metrics.counter_value(
        "relay_terminal_total", {"status": "failed"}
    ) == 1
    assert metrics.counter_value(
        "relay_terminal_total", {"status": "cancelled"}
    ) == 0
    assert metrics.counter_value(
        "relay_failures_total", {"error_type": "serialization-error"}
    ) == 1
    assert metrics.counter_value("relay_serialization_errors_total") == 1
