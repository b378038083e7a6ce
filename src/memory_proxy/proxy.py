"""
Memory proxy: one chat turn through the memory tiers.

Per turn, under the session lock:
  assemble context (STB + summary + recall, fitted to the token budget)
  → completion call
  → STB append → rollover into LTM → summary refresh → TTL refresh

Nothing is written unless the completion succeeds. A store failure after a
successful completion still returns the reply, flagged ``persisted=False``.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from .errors import BadRequestError, MemoryProxyError, StoreError, UpstreamError
from .memory.archive import LongTermArchive
from .memory.assembler import ContextAssembler
from .memory.buffer import ShortTermBuffer
from .memory.condenser import clean_user_message
from .memory.config import MemoryConfig, RecallStrategy
from .memory.embeddings import EmbeddingProvider
from .memory.entries import ASSISTANT, DEFAULT_LOCALE, USER, ConversationEntry
from .memory.retriever import MemoryRetriever
from .memory.store import SessionKey, SessionStore, open_session_store
from .memory.summarizer import ConversationSummarizer
from .memory.token_budget import TokenCounter
from .providers import (
    CompletionProvider,
    create_completion_provider,
    create_embedding_provider,
    create_token_counter,
)

logger = logging.getLogger(__name__)


# Load .env (override=True lets the .env file win over the process environment)
load_dotenv(override=True)


# Aliases a UI may send instead of a concrete model id
MODEL_ALIASES = frozenset({"hanna-core", "hanna", "default", "webui"})

NOT_PERSISTED_WARNING = (
    "The reply was generated but the conversation history could not be stored."
)


def resolve_model_alias(requested: Optional[str], fallback: str) -> str:
    if not requested or not requested.strip():
        return fallback
    if requested.strip().lower() in MODEL_ALIASES:
        return fallback
    return requested


def _first(data: dict, *names: str):
    for name in names:
        value = data.get(name)
        if value is not None:
            return value
    return None


@dataclass
class TurnRequest:
    core_id: str
    session_id: str
    user_message: str
    locale: Optional[str] = None
    model: Optional[str] = None

    def __post_init__(self):
        missing = [
            name
            for name in ("core_id", "session_id", "user_message")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise BadRequestError(
                f"Missing required fields: {', '.join(missing)}",
                context={"missing": missing},
            )

    @classmethod
    def from_dict(cls, data: Any) -> "TurnRequest":
        """Accept camelCase or snake_case field names from a request body."""
        if not isinstance(data, dict):
            raise BadRequestError("Request body must be a JSON object")
        return cls(
            core_id=str(_first(data, "coreId", "core_id") or ""),
            session_id=str(_first(data, "sessionId", "session_id") or ""),
            user_message=str(_first(data, "userMessage", "user_message", "prompt") or ""),
            locale=_first(data, "locale"),
            model=_first(data, "model"),
        )


@dataclass
class TurnReply:
    core_id: str
    session_id: str
    locale: str
    reply: str
    persisted: bool = True
    warning: Optional[str] = None
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "coreId": self.core_id,
            "sessionId": self.session_id,
            "locale": self.locale,
            "reply": self.reply,
            "persisted": self.persisted,
            "diagnostics": self.diagnostics,
        }
        if self.warning:
            data["warning"] = self.warning
        return data


class MemoryProxy:
    """
    Chat-turn orchestrator over the tiered conversation memory.

    Usage:
        proxy = await MemoryProxy.create()
        reply = await proxy.handle_turn(TurnRequest("core", "sess-1", "Hello"))
        print(reply.reply)
    """

    def __init__(
        self,
        config: MemoryConfig,
        store: SessionStore,
        completion_provider: CompletionProvider,
        token_counter: TokenCounter,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.config = config
        self._store = store
        self._completion = completion_provider

        strategy = config.recall_strategy
        if strategy is RecallStrategy.EMBEDDING and embedder is None:
            logger.warning("No embedding provider configured, recall will use keyword scoring")
            strategy = RecallStrategy.KEYWORD
        if strategy is RecallStrategy.KEYWORD:
            embedder = None

        self.buffer = ShortTermBuffer(store, config.stb_max_items, config.ttl_seconds)
        self.archive = LongTermArchive(store, embedder, config.ttl_seconds)
        self.retriever = MemoryRetriever(
            self.archive,
            strategy=strategy,
            embedder=embedder,
            scan_limit=config.ltm_scan_limit,
            top_k=config.recall_top_k,
        )
        self.summarizer = ConversationSummarizer(
            store,
            max_chars=config.summary_max_chars,
            max_facts=config.summary_max_facts,
            ttl_seconds=config.ttl_seconds,
        )
        self.assembler = ContextAssembler(
            config,
            self.buffer,
            token_counter,
            summarizer=self.summarizer,
            retriever=self.retriever,
        )

    @classmethod
    async def create(cls, config: Optional[MemoryConfig] = None) -> "MemoryProxy":
        """Build a proxy with the store and providers the config selects."""
        config = config or MemoryConfig.from_env()
        store = await open_session_store(config)
        return cls(
            config,
            store,
            create_completion_provider(config),
            create_token_counter(config),
            create_embedding_provider(config),
        )

    async def handle_turn(self, request: TurnRequest) -> TurnReply:
        started = time.monotonic()
        message = clean_user_message(request.user_message, self.config.max_input_chars)
        if not message:
            raise BadRequestError("User message is empty")

        session = SessionKey(request.core_id, request.session_id)
        locale = request.locale or DEFAULT_LOCALE
        model = resolve_model_alias(request.model, self.config.model)
        user_entry = ConversationEntry.create(USER, message, locale)

        async with self._lock(session):
            context = await self.assembler.assemble(session, locale, user_entry, model)
            reply = await self._completion.complete(
                model,
                context.system,
                context.messages,
                self.config.max_output_tokens,
                self.config.temperature,
            )
            assistant_entry = ConversationEntry.create(ASSISTANT, reply, locale)
            persisted, rolled_over = await self._persist(
                session, [user_entry, assistant_entry]
            )

        return TurnReply(
            core_id=request.core_id,
            session_id=request.session_id,
            locale=locale,
            reply=reply,
            persisted=persisted,
            warning=None if persisted else NOT_PERSISTED_WARNING,
            diagnostics={
                "elapsed_ms": int((time.monotonic() - started) * 1000),
                "model": model,
                "has_summary": context.has_summary,
                "history_count": context.history_count,
                "recall_count": context.recall_count,
                "token_count": context.token_count,
                "within_budget": context.within_budget,
                "trimmed_entries": context.trimmed_entries,
                "dropped_recall": context.dropped_recall,
                "dropped_summary": context.dropped_summary,
                "rolled_over": rolled_over,
            },
        )

    def _lock(self, session: SessionKey):
        return self._store.lock(
            session.lock,
            self.config.lock_timeout_seconds,
            lease=self.config.get_lock_lease(),
        )

    async def _persist(
        self, session: SessionKey, entries: list[ConversationEntry]
    ) -> tuple[bool, int]:
        """Append → rollover → summary refresh → TTL refresh, in that order."""
        try:
            await self.buffer.append(session, entries)
            moved = await self.archive.rollover(session, self.buffer)
            if self.config.enable_summary:
                await self.summarizer.refresh(session, entries)
            await self._touch(session)
        except StoreError as e:
            logger.warning(
                "Reply generated but not persisted for %s:%s: %s",
                session.core_id, session.session_id, e,
            )
            return False, 0
        return True, len(moved)

    async def _touch(self, session: SessionKey) -> None:
        if self.config.ttl_seconds <= 0:
            return
        for key in (session.ltm, session.summary):
            await self._store.expire(key, self.config.ttl_seconds)

    async def handle(self, payload: Any) -> dict[str, Any]:
        """Request-handler entry point: a reply dict or a structured error dict."""
        try:
            reply = await self.handle_turn(TurnRequest.from_dict(payload))
        except BadRequestError as e:
            logger.info("Rejected request: %s", e.message)
            return e.to_dict()
        except UpstreamError as e:
            logger.error("Upstream failure: %s", e)
            return e.to_dict()
        except MemoryProxyError as e:
            logger.error("Turn failed: %s", e)
            return e.to_dict()
        return reply.to_dict()

    async def history(self, core_id: str, session_id: str) -> list[ConversationEntry]:
        """Entries currently in the short-term buffer, oldest first."""
        return await self.buffer.read_all(SessionKey(core_id, session_id))

    async def purge(self, core_id: str, session_id: str) -> None:
        """Delete the session's STB, LTM and summary."""
        session = SessionKey(core_id, session_id)
        async with self._lock(session):
            for key in session.data_keys:
                await self._store.delete(key)
        logger.info("Purged session %s:%s", core_id, session_id)

    async def close(self) -> None:
        await self._store.close()
