"""
Memory proxy between a chat client and an LLM completion API.

Keeps per-conversation memory so a model with a bounded context window can
follow arbitrarily long dialogues.
"""

from .errors import ErrorKind, MemoryProxyError
from .proxy import MemoryProxy, TurnReply, TurnRequest

__all__ = [
    "ErrorKind",
    "MemoryProxy",
    "MemoryProxyError",
    "TurnReply",
    "TurnRequest",
]
