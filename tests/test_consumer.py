"""Tests for the client side: stream consumer, watchdog, fallback and session."""

import asyncio
import json

import httpx
import pytest

from superkagi.consumer import (
    ChatSession,
    ClientSettings,
    FallbackExecutor,
    NoticeBoard,
    StallWatchdog,
    StreamConsumer,
    ThreadMessage,
    ThreadStore,
)
from superkagi.consumer.session import (
    DEEP_SEARCH_PROMPT,
    Attachment,
    apply_search_prefix,
    build_user_content,
)
from superkagi.consumer.stream_consumer import INTERRUPTED_NOTE, SSEDecoder
from superkagi.errors import ThreadStateError

STARTED = b'data: {"meta": {"status": "started"}}\n\n'
DONE = b"data: [DONE]\n\n"


def frame(event) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode()


def body(*chunks: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"".join(chunks))


def dropping(*chunks: bytes) -> httpx.Response:
    """A stream that sends ``chunks`` and then loses the connection."""

    async def gen():
        for chunk in chunks:
            yield chunk
        raise httpx.ReadError("connection dropped")

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=gen())


def hanging(*chunks: bytes) -> httpx.Response:
    """A stream that sends ``chunks`` and then goes silent."""

    async def gen():
        for chunk in chunks:
            yield chunk
        await asyncio.sleep(30)
        yield DONE

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=gen())


class FakeChatServer:
    """Routes the two chat endpoints to scripted responses and records bodies."""

    def __init__(self, stream=None, fallback=None):
        self.stream = stream if stream is not None else body(STARTED, DONE)
        self.fallback = fallback if fallback is not None else httpx.Response(200, json={"content": "Hi there"})
        self.stream_bodies: list[dict] = []
        self.fallback_bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if request.url.path == "/api/chat/stream":
            self.stream_bodies.append(payload)
            if isinstance(self.stream, Exception):
                raise self.stream
            return self.stream
        self.fallback_bodies.append(payload)
        if isinstance(self.fallback, Exception):
            raise self.fallback
        return self.fallback


PAYLOAD = {"messages": [{"role": "user", "content": "hi"}], "provider": "local"}


class Harness:
    def __init__(self, server: FakeChatServer):
        self.server = server
        self.store = ThreadStore()
        self.notices = NoticeBoard()
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://chat.test")
        self.fallback = FallbackExecutor(self.store, self.notices, self.http)
        self.consumer = StreamConsumer(self.store, self.notices, self.http, self.fallback)
        self.store.append("t", ThreadMessage(role="user", content="hi"))
        self.pending = self.store.append("t", ThreadMessage(role="assistant", pending=True))

    async def consume(self, watchdog=None, cancel=None):
        watchdog = watchdog or StallWatchdog(30)
        try:
            return await self.consumer.consume("t", self.pending.id, PAYLOAD, watchdog, cancel)
        finally:
            await self.http.aclose()


def quick_watchdog():
    return StallWatchdog(0.05, min_period=0.01)


class TestStreamConsumer:
    async def test_scenario_hello(self):
        h = Harness(
            FakeChatServer(
                stream=body(
                    STARTED,
                    frame({"content": "He"}),
                    frame({"content": "llo"}),
                    frame({"meta": {"cost": 0.001}}),
                    DONE,
                )
            )
        )
        message = await h.consume()

        assert message.content == "Hello"
        assert message.pending is False
        assert message.error is None
        assert message.cost == 0.001
        assert h.server.fallback_bodies == []

    async def test_scenario_drop_without_content_falls_back(self):
        h = Harness(FakeChatServer(stream=dropping(STARTED)))
        message = await h.consume()

        assert message.content == "Hi there"
        assert message.pending is False
        assert h.server.fallback_bodies == [PAYLOAD]
        assert h.server.stream_bodies == [PAYLOAD]
        assert len(h.notices.active()) == 1

    async def test_drop_after_content_is_interrupted(self):
        h = Harness(FakeChatServer(stream=dropping(STARTED, frame({"content": "partial answ"}))))
        message = await h.consume()

        assert message.content == "partial answ"
        assert message.interrupted is True
        assert message.error == INTERRUPTED_NOTE
        assert message.pending is False
        assert h.server.fallback_bodies == []

    async def test_eof_without_done_after_content_is_interrupted(self):
        h = Harness(FakeChatServer(stream=body(STARTED, frame({"content": "cut"}))))
        message = await h.consume()

        assert message.interrupted is True
        assert message.content == "cut"
        assert h.server.fallback_bodies == []

    async def test_stall_without_content_falls_back_once(self):
        h = Harness(FakeChatServer(stream=hanging(STARTED)))
        message = await h.consume(watchdog=quick_watchdog())

        assert message.pending is False
        assert message.content == "Hi there"
        assert len(h.server.fallback_bodies) == 1

    async def test_stall_after_content_is_interrupted(self):
        h = Harness(FakeChatServer(stream=hanging(STARTED, frame({"content": "slow "}))))
        message = await h.consume(watchdog=quick_watchdog())

        assert message.interrupted is True
        assert message.content == "slow "
        assert h.server.fallback_bodies == []

    async def test_error_frame_falls_back_even_after_content(self):
        h = Harness(
            FakeChatServer(stream=body(STARTED, frame({"content": "half"}), frame({"error": "provider failed"}), DONE))
        )
        message = await h.consume()

        assert len(h.server.fallback_bodies) == 1
        assert message.content == "Hi there"
        assert message.error is None
        assert message.pending is False

    async def test_done_without_content_falls_back(self):
        h = Harness(FakeChatServer(stream=body(STARTED, DONE)))
        message = await h.consume()
        assert message.content == "Hi there"

    async def test_done_after_only_empty_fragments_falls_back(self):
        h = Harness(FakeChatServer(stream=body(STARTED, frame({"content": ""}), frame({"content": ""}), DONE)))
        message = await h.consume()

        assert len(h.server.fallback_bodies) == 1
        assert message.content == "Hi there"
        assert message.interrupted is False

    async def test_open_failure_posts_notice_and_falls_back(self):
        h = Harness(FakeChatServer(stream=httpx.Response(503)))
        message = await h.consume()

        assert message.content == "Hi there"
        assert [n.text for n in h.notices.active()] == ["Streaming failed (503), retrying with fallback."]

    async def test_connection_refused_falls_back(self):
        h = Harness(FakeChatServer(stream=httpx.ConnectError("refused")))
        message = await h.consume()
        assert message.content == "Hi there"

    async def test_folding_rules(self):
        h = Harness(
            FakeChatServer(
                stream=body(
                    STARTED,
                    frame({"reasoning": "step 1. "}),
                    b"data: {not json}\n\n",
                    frame({"reasoning": "step 2."}),
                    frame({"reasoning_details": [{"v": 1}]}),
                    frame({"reasoning_details": [{"v": 2}]}),
                    frame({"meta": {"cost": 0.5}}),
                    frame({"meta": {"cost": "1.5"}}),
                    frame({"meta": {"cost": True}}),
                    frame({"meta": {"ping": 1}}),
                    frame({"content": "answer"}),
                    DONE,
                )
            )
        )
        message = await h.consume()

        assert message.reasoning == "step 1. step 2."
        assert message.reasoning_details == [{"v": 2}]
        assert message.cost == 0.5
        assert message.content == "answer"

    async def test_every_fold_rerenders_the_pending_message(self):
        h = Harness(FakeChatServer(stream=body(STARTED, frame({"content": "a"}), frame({"content": "b"}), DONE)))
        seen = []

        def render(_thread_id, message):
            seen.append((message.content, message.pending))

        h.store.subscribe(render)
        await h.consume()

        # the started meta frame is folded too
        assert seen == [("", True), ("a", True), ("ab", True), ("ab", False)]

    async def test_caller_cancel_is_treated_like_transport_failure(self):
        cancel = asyncio.Event()
        h = Harness(FakeChatServer(stream=hanging(STARTED, frame({"content": "so far"}))))
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        message = await h.consume(cancel=cancel)

        assert message.interrupted is True
        assert message.content == "so far"


class TestSSEDecoder:
    def test_split_chunks_and_crlf(self):
        decoder = SSEDecoder()
        raw = 'data: {"content": "héllo"}\r\n\r\ndata: [DONE]\r\n\r\n'.encode()
        payloads = []
        for i in range(len(raw)):
            payloads.extend(decoder.feed(raw[i : i + 1]))
        assert payloads == ['{"content": "héllo"}', "[DONE]"]

    def test_frames_without_data_lines_are_ignored(self):
        assert SSEDecoder().feed(b": comment\n\nevent: x\n\n") == []


class TestStallWatchdog:
    @pytest.mark.parametrize("deep_search, threshold, period", [(False, 45, 7.5), (True, 120, 20)])
    def test_period_per_mode(self, configuration, deep_search, threshold, period):
        watchdog = StallWatchdog.for_mode(configuration.get_client_config(), deep_search)
        assert watchdog.threshold == threshold
        assert watchdog.period == period

    def test_period_has_a_floor(self):
        assert StallWatchdog(12).period == 5

    def test_fires_once_after_threshold(self):
        now = [0.0]
        fired = []
        watchdog = StallWatchdog(45, clock=lambda: now[0], on_stall=lambda: fired.append(now[0]))

        now[0] = 40
        assert watchdog.check() is False
        watchdog.touch()
        now[0] = 85
        assert watchdog.check() is False
        now[0] = 86
        assert watchdog.check() is True
        assert watchdog.check() is True
        assert fired == [86]


class TestFallbackExecutor:
    async def test_runs_at_most_once_per_message(self):
        h = Harness(FakeChatServer())
        first = await h.fallback.run("t", h.pending.id, PAYLOAD)
        second = await h.fallback.run("t", h.pending.id, PAYLOAD)
        await h.http.aclose()

        assert first.content == second.content == "Hi there"
        assert len(h.server.fallback_bodies) == 1

    async def test_failure_finalizes_with_error_and_notice(self):
        h = Harness(FakeChatServer(fallback=httpx.ConnectError("server unreachable")))
        message = await h.fallback.run("t", h.pending.id, PAYLOAD)
        await h.http.aclose()

        assert message.content == "Error: server unreachable"
        assert message.error == "server unreachable"
        assert message.pending is False
        assert len(h.notices.active()) == 1

    async def test_error_body_is_surfaced(self):
        fallback = httpx.Response(200, json={"content": "Error: Missing OpenRouter API key", "error": "Missing OpenRouter API key"})
        h = Harness(FakeChatServer(fallback=fallback))
        message = await h.fallback.run("t", h.pending.id, PAYLOAD)
        await h.http.aclose()

        assert message.content == "Error: Missing OpenRouter API key"
        assert message.error == "Missing OpenRouter API key"
        assert len(h.notices.active()) == 1

    async def test_success_copies_reasoning_and_cost(self):
        fallback = httpx.Response(200, json={"content": "ok", "reasoning": "r", "reasoning_details": {"k": 1}, "cost": 0.2})
        h = Harness(FakeChatServer(fallback=fallback))
        message = await h.fallback.run("t", h.pending.id, PAYLOAD)
        await h.http.aclose()

        assert (message.content, message.reasoning, message.reasoning_details, message.cost) == ("ok", "r", {"k": 1}, 0.2)


class TestThreadStore:
    def test_only_one_pending_assistant(self):
        store = ThreadStore()
        store.append("t", ThreadMessage(role="assistant", pending=True))
        with pytest.raises(ThreadStateError):
            store.append("t", ThreadMessage(role="assistant", pending=True))
        store.append("other", ThreadMessage(role="assistant", pending=True))

    def test_request_messages_skip_pending(self):
        store = ThreadStore()
        store.append("t", ThreadMessage(role="user", content="q"))
        store.append("t", ThreadMessage(role="assistant", pending=True))
        assert store.request_messages("t") == [{"role": "user", "content": "q"}]

    def test_update_replaces_whole_message(self):
        store = ThreadStore()
        original = store.append("t", ThreadMessage(role="assistant", pending=True))
        updated = store.update("t", original.id, content="x", pending=False)
        assert original.pending is True
        assert store.thread("t") == [updated]
        with pytest.raises(KeyError):
            store.update("t", "missing", content="y")

    def test_unsubscribe(self):
        store = ThreadStore()
        seen = []
        unsubscribe = store.subscribe(lambda tid, msg: seen.append(msg.id))
        store.append("t", ThreadMessage())
        unsubscribe()
        store.append("t", ThreadMessage())
        assert len(seen) == 1


def test_notice_board_dismiss_and_expiry():
    now = [0.0]
    board = NoticeBoard(ttl_seconds=5, clock=lambda: now[0])
    first = board.post("one")
    board.post("two")
    assert board.dismiss(first.id) is True
    assert board.dismiss(first.id) is False
    now[0] = 10
    assert board.active() == []


class TestUserContent:
    def test_prefix_rules(self):
        assert apply_search_prefix("rust news", False) == "Search for: rust news"
        assert apply_search_prefix("Search: rust news", False) == "Search: rust news"
        assert apply_search_prefix("search for: x", False) == "search for: x"
        assert apply_search_prefix("", True) == "Search for: information related to the attached files"
        assert apply_search_prefix("", False) == ""

    def test_single_text_collapses(self):
        assert build_user_content("hello", [], "local") == "hello"

    def test_attachments(self):
        attachments = [
            Attachment(kind="image", name="cat.png", data_url="data:image/png;base64,AAA"),
            Attachment(kind="text", name="notes.txt", text="line"),
            Attachment(kind="note", text="remember this"),
        ]
        assert build_user_content("look", attachments, "openrouter") == [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}},
            {"type": "text", "text": "File notes.txt:\nline"},
            {"type": "text", "text": "remember this"},
        ]
        local = build_user_content("", attachments[:1], "local")
        assert local == "[Image attached: cat.png]"


class TestChatSession:
    async def test_send_streams_reply_into_thread(self, configuration):
        server = FakeChatServer(stream=body(STARTED, frame({"content": "Hel"}), frame({"content": "lo"}), DONE))
        store, notices = ThreadStore(), NoticeBoard()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://chat.test") as http:
            settings = ClientSettings(provider="openrouter", model="openai/gpt-4o", api_key="sk", deep_search=True)
            session = ChatSession(store, notices, http, settings, configuration.get_client_config())
            reply = await session.send("t", "latest rust release")

        assert reply.content == "Hello"
        assert [m.role for m in store.thread("t")] == ["user", "assistant"]
        sent = server.stream_bodies[0]
        assert sent["messages"] == [{"role": "user", "content": "Search for: latest rust release"}]
        assert sent["deepSearch"] is True
        assert sent["apiKey"] == "sk"
        assert sent["systemPrompt"] == DEEP_SEARCH_PROMPT

    async def test_send_falls_back_when_stream_drops(self, configuration):
        server = FakeChatServer(stream=dropping(STARTED))
        store, notices = ThreadStore(), NoticeBoard()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://chat.test") as http:
            session = ChatSession(store, notices, http, ClientSettings(), configuration.get_client_config())
            reply = await session.send("t", "hi")

        assert reply.content == "Hi there"
        assert server.fallback_bodies == server.stream_bodies

    async def test_send_refuses_while_reply_pending(self, configuration):
        server = FakeChatServer()
        store, notices = ThreadStore(), NoticeBoard()
        in_progress = store.append("t", ThreadMessage(role="assistant", pending=True))
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            session = ChatSession(store, notices, http, ClientSettings(), configuration.get_client_config())
            reply = await session.send("t", "again")

        assert reply == in_progress
        assert [m.role for m in store.thread("t")] == ["assistant"]
        assert [n.text for n in notices.active()] == ["A reply is still in progress."]
        assert server.stream_bodies == []

    @pytest.mark.parametrize("text", ["", "   \n"])
    async def test_blank_send_without_attachments_is_ignored(self, configuration, text):
        server = FakeChatServer()
        store = ThreadStore()
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            settings = ClientSettings(deep_search=True)
            session = ChatSession(store, NoticeBoard(), http, settings, configuration.get_client_config())
            reply = await session.send("t", text)

        assert reply is None
        assert store.thread("t") == []
        assert server.stream_bodies == []

    def test_settings_from_defaults(self, configuration):
        settings = ClientSettings.from_defaults(configuration.defaults, provider="nanogpt", model=None)
        assert settings.provider == "nanogpt"
        assert settings.model == "moonshotai/kimi-k2-thinking"
