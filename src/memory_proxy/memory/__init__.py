"""
Tiered conversation memory with token-budget context assembly.

- Short-term buffer (STB): bounded window of recent turns, sent verbatim
- Long-term archive (LTM): turns rolled out of the STB, optionally embedded
- Summary: one durable blob of facts distilled from user turns
- Recall: top-K archived turns relevant to the current message

The context assembler combines the tiers and degrades the payload until it
fits the configured token budget.
"""

from .archive import LongTermArchive
from .assembler import AssembledContext, ContextAssembler
from .buffer import ShortTermBuffer
from .config import MemoryConfig, RecallStrategy
from .entries import ConversationEntry, decode_item, encode_entry
from .retriever import MemoryRetriever, RecallHit
from .store import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionKey,
    SessionStore,
    open_session_store,
)
from .summarizer import ConversationSummarizer, extract_facts, merge_summary
from .token_budget import EstimatingTokenCounter, TokenCounter, estimate_tokens

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "ConversationEntry",
    "ConversationSummarizer",
    "EstimatingTokenCounter",
    "InMemorySessionStore",
    "LongTermArchive",
    "MemoryConfig",
    "MemoryRetriever",
    "RecallHit",
    "RecallStrategy",
    "RedisSessionStore",
    "SessionKey",
    "SessionStore",
    "ShortTermBuffer",
    "TokenCounter",
    "decode_item",
    "encode_entry",
    "estimate_tokens",
    "extract_facts",
    "merge_summary",
    "open_session_store",
]
