"""
Token counting for budget enforcement.

``TokenCounter`` is the oracle the context assembler consults. The model-backed
implementation lives in ``memory_proxy.providers``; the estimator here needs no
network and is used for tests and offline runs.
"""

from typing import Protocol, Sequence

from langchain_core.messages import BaseMessage

from .condenser import content_text

MESSAGE_OVERHEAD_TOKENS = 4


class TokenCounter(Protocol):
    async def count_tokens(
        self, system: str, messages: Sequence[BaseMessage], model: str
    ) -> int: ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // 3)


def estimate_message_tokens(msg: BaseMessage) -> int:
    """Estimate tokens for a LangChain message."""
    return estimate_tokens(content_text(msg.content)) + MESSAGE_OVERHEAD_TOKENS


class EstimatingTokenCounter:
    """Character-based TokenCounter."""

    async def count_tokens(
        self, system: str, messages: Sequence[BaseMessage], model: str = ""
    ) -> int:
        return estimate_tokens(system) + sum(
            estimate_message_tokens(m) for m in messages
        )


def fits_budget(token_count: int, max_output_tokens: int, budget: int) -> bool:
    """Prompt tokens plus the reserved output must stay within the budget."""
    return token_count + max_output_tokens <= budget
