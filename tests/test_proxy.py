"""
Tests for the chat-turn orchestrator and the LangChain provider wrappers.
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from redis.exceptions import LockNotOwnedError

from memory_proxy.errors import (
    BadRequestError,
    EmbeddingUnavailableError,
    ErrorKind,
    StoreError,
    TokenCountError,
    UpstreamError,
)
from memory_proxy.memory.config import MemoryConfig, RecallStrategy
from memory_proxy.memory.store import InMemorySessionStore, RedisSessionStore
from memory_proxy.memory.token_budget import EstimatingTokenCounter
from memory_proxy.providers import (
    ChatModelCompletionProvider,
    ChatModelTokenCounter,
    LangChainEmbeddingProvider,
    create_embedding_provider,
    create_token_counter,
    get_credentials,
)
from memory_proxy.proxy import (
    NOT_PERSISTED_WARNING,
    MemoryProxy,
    TurnReply,
    TurnRequest,
    resolve_model_alias,
)


def build_proxy(store, completion=None, counter=None, embedder=None, **config_kwargs):
    config = MemoryConfig(
        **{"token_budget": 100_000, "stb_max_items": 4, "ttl_seconds": 60, **config_kwargs}
    )
    if completion is None:
        completion = AsyncMock()
        completion.complete.return_value = "Hi there"
    return MemoryProxy(
        config, store, completion, counter or EstimatingTokenCounter(), embedder
    )


def system_of(completion, call_index=-1) -> str:
    return completion.complete.await_args_list[call_index].args[1]


class LeasedLocks:
    """Redis lock semantics: held until released or until the lease runs out."""

    def __init__(self):
        self.owners = {}
        self.leases = []

    def lock(self, name, timeout, blocking_timeout):
        self.leases.append(timeout)
        return LeasedLock(self, name, timeout, blocking_timeout)


class LeasedLock:
    def __init__(self, locks, name, lease, wait):
        self.locks = locks
        self.name = name
        self.lease = lease
        self.wait = wait

    async def acquire(self):
        loop = asyncio.get_running_loop()
        give_up = loop.time() + self.wait
        while True:
            now = loop.time()
            owner = self.locks.owners.get(self.name)
            if owner is None or owner[1] <= now:
                self.locks.owners[self.name] = (self, now + self.lease)
                return True
            if now >= give_up:
                return False
            await asyncio.sleep(0.005)

    async def release(self):
        owner = self.locks.owners.get(self.name)
        if owner is None or owner[0] is not self:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.locks.owners[self.name]


def leased_redis_store():
    """RedisSessionStore whose data lives in memory and whose locks expire."""
    backing = InMemorySessionStore()
    client = MagicMock()
    for op in ("type", "delete", "rpush", "lrange", "ltrim", "llen", "get", "set", "expire"):
        setattr(client, op, getattr(backing, op))
    locks = LeasedLocks()
    client.lock = locks.lock
    return RedisSessionStore(client), locks


# ── Request / Reply Tests ──


class TestTurnRequest:
    def test_from_dict_camel_case(self):
        request = TurnRequest.from_dict(
            {"coreId": "c", "sessionId": "s", "userMessage": "hi", "locale": "de"}
        )
        assert (request.core_id, request.session_id, request.user_message) == ("c", "s", "hi")
        assert request.locale == "de"

    def test_from_dict_snake_case(self):
        request = TurnRequest.from_dict({"core_id": "c", "session_id": "s", "prompt": "hi"})
        assert request.user_message == "hi"
        assert request.model is None

    def test_missing_fields(self):
        with pytest.raises(BadRequestError) as exc_info:
            TurnRequest.from_dict({"coreId": "c", "userMessage": "   "})
        assert exc_info.value.context["missing"] == ["session_id", "user_message"]

    def test_body_must_be_object(self):
        with pytest.raises(BadRequestError):
            TurnRequest.from_dict(["not", "an", "object"])

    def test_reply_to_dict(self):
        reply = TurnReply("c", "s", "en", "hello", persisted=False, warning="careful")
        data = reply.to_dict()
        assert data["coreId"] == "c"
        assert data["persisted"] is False
        assert data["warning"] == "careful"
        assert "warning" not in TurnReply("c", "s", "en", "hello").to_dict()


class TestModelAlias:
    def test_aliases_resolve_to_default(self):
        assert resolve_model_alias("hanna-core", "default-model") == "default-model"
        assert resolve_model_alias("WebUI", "default-model") == "default-model"
        assert resolve_model_alias(None, "default-model") == "default-model"
        assert resolve_model_alias("  ", "default-model") == "default-model"

    def test_concrete_model_kept(self):
        assert resolve_model_alias("gpt-4o", "default-model") == "gpt-4o"


# ── Turn Tests ──


class TestMemoryProxy:
    @pytest.mark.asyncio
    async def test_single_turn(self, store, session):
        proxy = build_proxy(store)
        reply = await proxy.handle_turn(TurnRequest("core-1", "sess-1", "  Hello  ", locale="en"))

        assert reply.reply == "Hi there"
        assert reply.persisted is True
        assert reply.locale == "en"
        assert reply.diagnostics["history_count"] == 0
        assert reply.diagnostics["within_budget"] is True

        history = await proxy.history("core-1", "sess-1")
        assert [(e.role, e.content, e.locale) for e in history] == [
            ("user", "Hello", "en"),
            ("assistant", "Hi there", "en"),
        ]

    @pytest.mark.asyncio
    async def test_prior_turns_sent_as_history(self, store):
        completion = AsyncMock()
        completion.complete.return_value = "ok"
        proxy = build_proxy(store, completion)
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "first"))
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "second"))

        messages = completion.complete.await_args.args[2]
        assert [m.content for m in messages] == ["first", "ok", "second"]
        assert isinstance(messages[1], AIMessage)
        assert isinstance(messages[2], HumanMessage)

    @pytest.mark.asyncio
    async def test_rollover_across_turns(self, store, session):
        proxy = build_proxy(store, stb_max_items=4)
        replies = []
        for i in range(3):
            replies.append(await proxy.handle_turn(TurnRequest("core-1", "sess-1", f"message {i}")))

        stb = await proxy.buffer.read_all(session)
        ltm = await proxy.archive.read_recent(session, 100)
        assert [e.content for e in stb if e.role == "user"] == ["message 1", "message 2"]
        assert [e.content for e in ltm] == ["message 0", "Hi there"]
        assert [r.diagnostics["rolled_over"] for r in replies] == [0, 0, 2]

    @pytest.mark.asyncio
    async def test_summary_feeds_next_turn(self, store, session):
        completion = AsyncMock()
        completion.complete.return_value = "Nice to meet you"
        proxy = build_proxy(store, completion)
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "My name is Alice."))
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "Do you remember me"))

        assert await store.get(session.summary) == "My name is Alice"
        assert "[Memory Summary]\nMy name is Alice" in system_of(completion)
        assert "[Memory Summary]" not in system_of(completion, 0)

    @pytest.mark.asyncio
    async def test_summary_disabled(self, store, session):
        completion = AsyncMock()
        completion.complete.return_value = "ok"
        proxy = build_proxy(store, completion, enable_summary=False)
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "My name is Alice."))
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "again"))

        assert await store.get(session.summary) is None
        assert "[Memory Summary]" not in system_of(completion)

    @pytest.mark.asyncio
    async def test_archived_turn_is_recalled(self, store):
        completion = AsyncMock()
        completion.complete.return_value = "ok"
        proxy = build_proxy(store, completion, stb_max_items=2)
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "I adopted a cat named Tom"))
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "hello again"))
        reply = await proxy.handle_turn(TurnRequest("core-1", "sess-1", "what is my cat called"))

        assert "- user: I adopted a cat named Tom" in system_of(completion)
        assert reply.diagnostics["recall_count"] == 1

    @pytest.mark.asyncio
    async def test_core_prompt_in_system(self, store):
        completion = AsyncMock()
        completion.complete.return_value = "Arr"
        proxy = build_proxy(store, completion, core_system_prompt="Talk like a pirate.")
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "hi", locale="fr"))

        system = system_of(completion)
        assert "Talk like a pirate." in system
        assert "locale hint: fr" in system

    @pytest.mark.asyncio
    async def test_model_alias_uses_configured_model(self, store):
        completion = AsyncMock()
        completion.complete.return_value = "ok"
        proxy = build_proxy(store, completion, model="claude-3-haiku-20240307")
        reply = await proxy.handle_turn(TurnRequest("core-1", "sess-1", "hi", model="hanna-core"))

        assert completion.complete.await_args.args[0] == "claude-3-haiku-20240307"
        assert reply.diagnostics["model"] == "claude-3-haiku-20240307"

    @pytest.mark.asyncio
    async def test_input_cap(self, store):
        proxy = build_proxy(store, max_input_chars=5)
        await proxy.handle_turn(TurnRequest("core-1", "sess-1", "abcdefghij"))
        history = await proxy.history("core-1", "sess-1")
        assert history[0].content == "abcde"

    @pytest.mark.asyncio
    async def test_upstream_failure_stores_nothing(self, store, session):
        completion = AsyncMock()
        completion.complete.side_effect = UpstreamError("provider down")
        proxy = build_proxy(store, completion)

        with pytest.raises(UpstreamError):
            await proxy.handle_turn(TurnRequest("core-1", "sess-1", "My name is Alice."))

        for key in session.data_keys:
            assert await store.type(key) == "none"

    @pytest.mark.asyncio
    async def test_token_count_failure_is_fatal(self, store, session):
        completion = AsyncMock()
        counter = AsyncMock()
        counter.count_tokens.side_effect = TokenCountError("counter down")
        proxy = build_proxy(store, completion, counter)

        with pytest.raises(TokenCountError):
            await proxy.handle_turn(TurnRequest("core-1", "sess-1", "hello"))

        completion.complete.assert_not_awaited()
        assert await store.type(session.stb) == "none"

    @pytest.mark.asyncio
    async def test_store_failure_after_reply(self, store):
        proxy = build_proxy(store)
        proxy.buffer.append = AsyncMock(side_effect=StoreError("write failed"))

        reply = await proxy.handle_turn(TurnRequest("core-1", "sess-1", "hello"))

        assert reply.reply == "Hi there"
        assert reply.persisted is False
        assert reply.warning == NOT_PERSISTED_WARNING
        assert reply.to_dict()["warning"] == NOT_PERSISTED_WARNING

    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialized(self, store, session):
        async def echo(model, system, messages, max_output_tokens, temperature):
            await asyncio.sleep(0.01)
            return "echo: " + messages[-1].content

        completion = AsyncMock()
        completion.complete.side_effect = echo
        proxy = build_proxy(store, completion, stb_max_items=10)

        await asyncio.gather(
            proxy.handle_turn(TurnRequest("core-1", "sess-1", "one")),
            proxy.handle_turn(TurnRequest("core-1", "sess-1", "two")),
        )

        history = await proxy.history("core-1", "sess-1")
        assert len(history) == 4
        assert history[1].content == "echo: " + history[0].content
        assert history[3].content == "echo: " + history[2].content
        # The second turn saw the first turn's exchange
        assert len(completion.complete.await_args_list[1].args[2]) == 3

    @pytest.mark.asyncio
    async def test_slow_turn_keeps_redis_lock(self):
        store, locks = leased_redis_store()
        seen = []

        async def slow(model, system, messages, max_output_tokens, temperature):
            seen.append(len(messages))
            await asyncio.sleep(0.4)
            return "done"

        completion = AsyncMock()
        completion.complete.side_effect = slow
        # The turn outlasts the lock wait; the lease must still cover it
        proxy = build_proxy(store, completion, lock_timeout_seconds=0.3, timeout_seconds=1.0)

        async def second_turn():
            await asyncio.sleep(0.25)
            return await proxy.handle_turn(TurnRequest("c", "s", "second"))

        first, second = await asyncio.gather(
            proxy.handle_turn(TurnRequest("c", "s", "first")), second_turn()
        )

        assert seen == [1, 3]
        assert first.persisted and second.persisted
        assert min(locks.leases) == proxy.config.get_lock_lease()
        assert locks.owners == {}

    @pytest.mark.asyncio
    async def test_purge(self, store, session):
        proxy = build_proxy(store, stb_max_items=2)
        for i in range(3):
            await proxy.handle_turn(TurnRequest("core-1", "sess-1", f"My hobby is chess {i}"))

        await proxy.purge("core-1", "sess-1")

        for key in session.data_keys:
            assert await store.type(key) == "none"

    @pytest.mark.asyncio
    async def test_embedding_strategy_without_embedder_downgrades(self, store):
        proxy = build_proxy(store, recall_strategy=RecallStrategy.EMBEDDING)
        assert proxy.retriever.strategy is RecallStrategy.KEYWORD

    @pytest.mark.asyncio
    async def test_embedding_strategy_embeds_archived_entries(self, store, session):
        embedder = AsyncMock()
        embedder.embed.return_value = [0.5, 0.5]
        proxy = build_proxy(
            store, embedder=embedder, stb_max_items=2,
            recall_strategy=RecallStrategy.EMBEDDING,
        )
        for i in range(2):
            await proxy.handle_turn(TurnRequest("core-1", "sess-1", f"turn {i}"))

        ltm = await proxy.archive.read_recent(session, 10)
        assert [e.embedding for e in ltm] == [(0.5, 0.5), (0.5, 0.5)]


class TestHandle:
    @pytest.mark.asyncio
    async def test_success_dict(self, store):
        proxy = build_proxy(store)
        data = await proxy.handle({"coreId": "c", "sessionId": "s", "userMessage": "hi"})
        assert data["reply"] == "Hi there"
        assert data["persisted"] is True
        assert "elapsed_ms" in data["diagnostics"]

    @pytest.mark.asyncio
    async def test_bad_request_dict(self, store):
        completion = AsyncMock()
        proxy = build_proxy(store, completion)
        data = await proxy.handle({"coreId": "c"})
        assert data["error"] == "bad_request"
        completion.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upstream_error_dict(self, store):
        completion = AsyncMock()
        completion.complete.side_effect = UpstreamError("timed out")
        proxy = build_proxy(store, completion)
        data = await proxy.handle({"coreId": "c", "sessionId": "s", "userMessage": "hi"})
        assert data == {"error": "upstream_error", "detail": "timed out"}


# ── Provider Wrapper Tests ──


class TestChatModelCompletionProvider:
    @pytest.mark.asyncio
    async def test_complete(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content="hello"))
        provider = ChatModelCompletionProvider(llm, timeout_seconds=1.0)

        text = await provider.complete("m", "sys", [HumanMessage(content="hi")], 100, 0.2)

        assert text == "hello"
        sent, = llm.ainvoke.await_args.args
        assert isinstance(sent[0], SystemMessage)
        assert sent[0].content == "sys"
        configurable = llm.ainvoke.await_args.kwargs["config"]["configurable"]
        assert configurable == {"model": "m", "max_tokens": 100, "temperature": 0.2}

    @pytest.mark.asyncio
    async def test_block_content(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(
            return_value=AIMessage(content=[{"type": "text", "text": "block reply"}])
        )
        provider = ChatModelCompletionProvider(llm, timeout_seconds=1.0)
        assert await provider.complete("m", "", [], 10, 0.0) == "block reply"

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        llm = MagicMock()
        llm.ainvoke = slow
        provider = ChatModelCompletionProvider(llm, timeout_seconds=0.01)

        with pytest.raises(UpstreamError, match="timed out"):
            await provider.complete("m", "sys", [], 10, 0.0)

    @pytest.mark.asyncio
    async def test_provider_exception(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("500"))
        provider = ChatModelCompletionProvider(llm, timeout_seconds=1.0)

        with pytest.raises(UpstreamError) as exc_info:
            await provider.complete("m", "sys", [], 10, 0.0)
        assert isinstance(exc_info.value.original_error, RuntimeError)

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content=""))
        provider = ChatModelCompletionProvider(llm, timeout_seconds=1.0)

        with pytest.raises(UpstreamError):
            await provider.complete("m", "sys", [], 10, 0.0)


class TestChatModelTokenCounter:
    @pytest.mark.asyncio
    async def test_counts_with_cached_model(self):
        llm = MagicMock()
        llm.get_num_tokens_from_messages.return_value = 42
        factory = MagicMock(return_value=llm)
        counter = ChatModelTokenCounter(1.0, llm_factory=factory, api_key="k")

        assert await counter.count_tokens("sys", [HumanMessage(content="hi")], "m") == 42
        assert await counter.count_tokens("sys", [], "m") == 42

        factory.assert_called_once_with("m", api_key="k")
        sent = llm.get_num_tokens_from_messages.call_args_list[0].args[0]
        assert isinstance(sent[0], SystemMessage)

    @pytest.mark.asyncio
    async def test_timeout_raises_token_count_error(self):
        llm = MagicMock()
        llm.get_num_tokens_from_messages.side_effect = lambda messages: time.sleep(0.2)
        counter = ChatModelTokenCounter(0.01, llm_factory=MagicMock(return_value=llm))

        with pytest.raises(TokenCountError, match="timed out"):
            await counter.count_tokens("sys", [], "m")

    @pytest.mark.asyncio
    async def test_failure_raises_token_count_error(self):
        llm = MagicMock()
        llm.get_num_tokens_from_messages.side_effect = NotImplementedError("no tokenizer")
        counter = ChatModelTokenCounter(1.0, llm_factory=MagicMock(return_value=llm))

        with pytest.raises(TokenCountError) as exc_info:
            await counter.count_tokens("sys", [], "m")
        assert exc_info.value.kind is ErrorKind.TOKEN_COUNT_FAILURE


class TestEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_embed(self):
        model = MagicMock()
        model.aembed_query = AsyncMock(return_value=[0.1, 0.2])
        assert await LangChainEmbeddingProvider(model).embed("text") == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_embed_failure(self):
        model = MagicMock()
        model.aembed_query = AsyncMock(side_effect=ConnectionError("offline"))
        with pytest.raises(EmbeddingUnavailableError):
            await LangChainEmbeddingProvider(model).embed("text")

    def test_keyword_strategy_needs_no_embedder(self):
        assert create_embedding_provider(MemoryConfig()) is None


class TestFactories:
    def test_estimate_token_counter(self):
        counter = create_token_counter(MemoryConfig(token_counter="estimate"))
        assert isinstance(counter, EstimatingTokenCounter)

    def test_get_credentials_priority(self, monkeypatch):
        monkeypatch.setenv("API_KEY", "primary")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "secondary")
        monkeypatch.delenv("API_BASE_URL", raising=False)
        monkeypatch.setenv("ANTHROPIC_BASE_URL", "https://example.invalid")
        assert get_credentials() == ("primary", "https://example.invalid")


class TestErrors:
    def test_to_dict(self):
        assert StoreError("disk full").to_dict() == {"error": "store_failure", "detail": "disk full"}

    def test_str_includes_cause(self):
        error = UpstreamError("failed", original_error=RuntimeError("boom"))
        assert str(error) == "[upstream_error] failed\nCause: boom"
