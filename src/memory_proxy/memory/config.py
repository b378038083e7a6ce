"""
Memory configuration and model context window mappings.
"""

import os
from dataclasses import dataclass
from enum import Enum

# Model → context window size (tokens)
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-sonnet-4-20250514": 200_000,
    "claude-opus-4-20250514": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI compatible
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-reasoner": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000
DEFAULT_MODEL = "claude-3-haiku-20240307"


class RecallStrategy(Enum):
    """How LTM candidates are scored during recall."""
    KEYWORD = "keyword"
    EMBEDDING = "embedding"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for the tiered conversation memory."""

    # Short-term buffer
    stb_max_items: int = 10

    # Long-term archive / recall
    ltm_scan_limit: int = 200
    recall_top_k: int = 5
    recall_strategy: RecallStrategy = RecallStrategy.KEYWORD

    # Summary compaction
    enable_summary: bool = True
    summary_max_chars: int = 1200
    summary_max_facts: int = 8

    # Token budget (0 = auto-detect from model name)
    token_budget: int = 0
    max_output_tokens: int = 300
    token_counter: str = "model"  # "model" or "estimate"

    # Completion
    model: str = DEFAULT_MODEL
    model_provider: str = ""
    temperature: float = 0.2
    timeout_seconds: float = 30.0

    # Prompt composition
    core_system_prompt: str = ""
    max_input_chars: int = 0  # 0 = unlimited

    # Persistence
    ttl_seconds: int = 60 * 60 * 24 * 7
    redis_url: str = ""  # empty = in-process store
    lock_timeout_seconds: float = 30.0  # wait for the session lock
    lock_lease_seconds: float = 0.0  # 0 = derived from the longest possible turn

    # Embeddings (only used with RecallStrategy.EMBEDDING)
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            stb_max_items=int(os.getenv("MEMORY_STB_MAX_ITEMS", "10")),
            ltm_scan_limit=int(os.getenv("MEMORY_LTM_SCAN_LIMIT", "200")),
            recall_top_k=int(os.getenv("MEMORY_RECALL_TOP_K", "5")),
            recall_strategy=RecallStrategy(
                os.getenv("MEMORY_RECALL_STRATEGY", "keyword").lower()
            ),
            enable_summary=_env_bool("MEMORY_ENABLE_SUMMARY", "true"),
            summary_max_chars=int(os.getenv("MEMORY_SUMMARY_MAX_CHARS", "1200")),
            summary_max_facts=int(os.getenv("MEMORY_SUMMARY_MAX_FACTS", "8")),
            token_budget=int(os.getenv("MEMORY_TOKEN_BUDGET", "0")),
            max_output_tokens=int(os.getenv("MAX_OUTPUT_TOKENS", "300")),
            token_counter=os.getenv("MEMORY_TOKEN_COUNTER", "model").lower(),
            model=os.getenv("ANTHROPIC_MODEL", DEFAULT_MODEL),
            model_provider=os.getenv("MODEL_PROVIDER", ""),
            temperature=float(os.getenv("TEMPERATURE", "0.2")),
            timeout_seconds=int(os.getenv("TIMEOUT_MS", "30000")) / 1000,
            core_system_prompt=os.getenv("CORE_SYSTEM_PROMPT", ""),
            max_input_chars=int(os.getenv("MAX_INPUT_CHARS", "0")),
            ttl_seconds=int(os.getenv("TTL_SECONDS", str(60 * 60 * 24 * 7))),
            redis_url=os.getenv("REDIS_URL", ""),
            lock_timeout_seconds=float(os.getenv("MEMORY_LOCK_TIMEOUT", "30")),
            lock_lease_seconds=float(os.getenv("MEMORY_LOCK_LEASE", "0")),
            embedding_model=os.getenv(
                "MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"
            ),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
        )

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from the model name."""
        # Try exact match first, then prefix match
        if model_name in MODEL_CONTEXT_WINDOWS:
            return MODEL_CONTEXT_WINDOWS[model_name]
        for key, size in MODEL_CONTEXT_WINDOWS.items():
            if model_name.startswith(key) or key.startswith(model_name):
                return size
        return DEFAULT_CONTEXT_WINDOW

    def get_token_budget(self, model_name: str) -> int:
        """Resolve the token budget from config or the model's context window."""
        if self.token_budget > 0:
            return self.token_budget
        return self.get_context_window(model_name)

    def get_lock_lease(self) -> float:
        """
        Lease on the session lock; the lock must outlive the longest turn.

        A turn makes at most ``stb_max_items + 3`` token counts and one
        completion call, each bounded by ``timeout_seconds``.
        """
        if self.lock_lease_seconds > 0:
            return self.lock_lease_seconds
        calls = self.stb_max_items + 4
        return self.timeout_seconds * calls + self.lock_timeout_seconds
