"""
Shared test setup.

Puts ``src`` on the module search path so tests import ``memory_proxy``
without an install, and provides an in-process store and small helpers.
"""

import sys
from pathlib import Path

import pytest

# Add src to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from memory_proxy.memory.entries import ASSISTANT, USER, ConversationEntry  # noqa: E402
from memory_proxy.memory.store import InMemorySessionStore, SessionKey  # noqa: E402


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def session():
    return SessionKey("core-1", "sess-1")


def make_pair(i: int) -> list[ConversationEntry]:
    """One user/assistant exchange with distinct content."""
    return [
        ConversationEntry(role=USER, content=f"user message {i}", timestamp=2 * i),
        ConversationEntry(role=ASSISTANT, content=f"assistant reply {i}", timestamp=2 * i + 1),
    ]
