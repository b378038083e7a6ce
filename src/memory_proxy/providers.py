"""
External collaborators backed by LangChain.

- Completion provider: chat model via ``init_chat_model``
- Token-counting oracle: the chat model's own token counter
- Embedding provider: OpenAI-compatible embeddings (optional)

Each wrapper converts provider exceptions into the proxy's error taxonomy.
"""

import asyncio
import logging
import os
from typing import Optional, Protocol, Sequence

from langchain.chat_models import init_chat_model
from langchain_core.messages import BaseMessage, SystemMessage

from .errors import EmbeddingUnavailableError, TokenCountError, UpstreamError
from .memory.condenser import content_text
from .memory.embeddings import EmbeddingProvider
from .memory.config import MemoryConfig, RecallStrategy
from .memory.token_budget import EstimatingTokenCounter, TokenCounter

logger = logging.getLogger(__name__)


def get_credentials() -> tuple[str | None, str | None]:
    """
    Resolve API credentials.

    - API Key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def _chat_init_kwargs(config: MemoryConfig) -> dict:
    api_key, base_url = get_credentials()
    kwargs = {}
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["base_url"] = base_url
    if config.model_provider:
        kwargs["model_provider"] = config.model_provider
    return kwargs


def _with_system(system: str, messages: Sequence[BaseMessage]) -> list[BaseMessage]:
    if system:
        return [SystemMessage(content=system), *messages]
    return list(messages)


class CompletionProvider(Protocol):
    async def complete(
        self,
        model: str,
        system: str,
        messages: Sequence[BaseMessage],
        max_output_tokens: int,
        temperature: float,
    ) -> str: ...


class ChatModelCompletionProvider:
    """Completion provider over a configurable LangChain chat model."""

    def __init__(self, llm, timeout_seconds: float):
        self._llm = llm
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "ChatModelCompletionProvider":
        llm = init_chat_model(
            config.model,
            configurable_fields=("model", "max_tokens", "temperature"),
            **_chat_init_kwargs(config),
        )
        return cls(llm, config.timeout_seconds)

    async def complete(
        self,
        model: str,
        system: str,
        messages: Sequence[BaseMessage],
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        run_config = {
            "configurable": {
                "model": model,
                "max_tokens": max_output_tokens,
                "temperature": temperature,
            }
        }
        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke(_with_system(system, messages), config=run_config),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"Completion timed out after {self.timeout_seconds}s",
                context={"model": model},
                original_error=e,
            ) from e
        except Exception as e:
            raise UpstreamError(
                "Completion provider failed", context={"model": model}, original_error=e
            ) from e

        text = content_text(getattr(response, "content", response))
        if not text:
            raise UpstreamError("Completion provider returned no text", context={"model": model})
        return text


class ChatModelTokenCounter:
    """TokenCounter that asks the chat model integration to count tokens."""

    def __init__(self, timeout_seconds: float, llm_factory=None, **init_kwargs):
        self.timeout_seconds = timeout_seconds
        self._llm_factory = llm_factory or init_chat_model
        self._init_kwargs = init_kwargs
        self._models: dict[str, object] = {}

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "ChatModelTokenCounter":
        return cls(config.timeout_seconds, **_chat_init_kwargs(config))

    def _model_for(self, model: str):
        if model not in self._models:
            self._models[model] = self._llm_factory(model, **self._init_kwargs)
        return self._models[model]

    async def count_tokens(
        self, system: str, messages: Sequence[BaseMessage], model: str
    ) -> int:
        try:
            llm = self._model_for(model)
            # On timeout only the wait is abandoned; the worker thread (and any
            # HTTP call it makes) runs to completion in the background.
            count = await asyncio.wait_for(
                asyncio.to_thread(
                    llm.get_num_tokens_from_messages, _with_system(system, messages)
                ),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TokenCountError(
                f"Token counting timed out after {self.timeout_seconds}s",
                context={"model": model},
                original_error=e,
            ) from e
        except Exception as e:
            raise TokenCountError(
                "Token counting failed", context={"model": model}, original_error=e
            ) from e
        return int(count)


class LangChainEmbeddingProvider:
    """EmbeddingProvider over any LangChain ``Embeddings`` implementation."""

    def __init__(self, embedding_model):
        self._embedding_model = embedding_model

    async def embed(self, text: str) -> Optional[list[float]]:
        try:
            vector = await self._embedding_model.aembed_query(text)
        except Exception as e:
            raise EmbeddingUnavailableError("Embedding failed", original_error=e) from e
        return list(vector) if vector else None


def create_completion_provider(config: MemoryConfig) -> CompletionProvider:
    return ChatModelCompletionProvider.from_config(config)


def create_token_counter(config: MemoryConfig) -> TokenCounter:
    if config.token_counter == "estimate":
        return EstimatingTokenCounter()
    return ChatModelTokenCounter.from_config(config)


def create_embedding_provider(config: MemoryConfig) -> Optional[EmbeddingProvider]:
    """Create the embedding provider when the embedding recall strategy is selected."""
    if config.recall_strategy is not RecallStrategy.EMBEDDING:
        return None

    from langchain_openai import OpenAIEmbeddings

    api_key, base_url = get_credentials()
    # Embedding credentials: dedicated env vars > general credentials
    embed_api_key = config.embedding_api_key or os.getenv("OPENAI_API_KEY") or api_key
    embed_base_url = config.embedding_base_url or base_url
    embed_kwargs = {}
    if embed_api_key:
        embed_kwargs["api_key"] = embed_api_key
    if embed_base_url:
        embed_kwargs["base_url"] = embed_base_url
    try:
        embedding_model = OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)
    except Exception as e:
        logger.warning(
            "Failed to create embedding model, recall will use keyword scoring: %s", e
        )
        return None
    return LangChainEmbeddingProvider(embedding_model)
