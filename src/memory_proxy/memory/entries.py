"""
Conversation entries and their stored encoding.

Each list item in the store is exactly one JSON object. Older writers
sometimes pushed a JSON array of entries as a single item; those are
flattened at decode time only, and ``encode_entry`` never produces them.
"""

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)
DEFAULT_LOCALE = "auto"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ConversationEntry:
    """One completed turn half (user message or assistant reply)."""

    role: str
    content: str
    timestamp: int = 0
    locale: str = DEFAULT_LOCALE
    embedding: Optional[tuple[float, ...]] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role!r}")

    @classmethod
    def create(cls, role: str, content: str, locale: str = DEFAULT_LOCALE):
        """Build a fresh entry stamped with the current time."""
        return cls(role=role, content=content, timestamp=now_ms(), locale=locale)

    def with_embedding(self, vector: Iterable[float]) -> "ConversationEntry":
        return replace(self, embedding=tuple(float(v) for v in vector))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "locale": self.locale,
        }
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationEntry":
        embedding = data.get("embedding")
        return cls(
            role=data["role"],
            content=str(data["content"]),
            timestamp=int(data.get("timestamp") or 0),
            locale=data.get("locale") or DEFAULT_LOCALE,
            embedding=tuple(float(v) for v in embedding) if embedding else None,
        )

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Composite key used to collapse duplicate recall hits."""
        return (self.role, self.content[:120])


def encode_entry(entry: ConversationEntry) -> str:
    """Encode one entry as one list item."""
    return json.dumps(entry.to_dict(), ensure_ascii=False)


def _normalize(value: Any) -> list[dict]:
    """Flatten legacy nested-array items into a list of entry dicts."""
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        flat = []
        for item in value:
            flat.extend(_normalize(item))
        return flat
    return []


def decode_item(raw: Any) -> list[ConversationEntry]:
    """
    Decode one stored list item.

    Returns zero or more entries: a canonical item yields one entry, a legacy
    array item yields all entries it contains, anything undecodable yields none.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable stored item: %.80s", raw)
            return []
    else:
        value = raw

    entries = []
    for data in _normalize(value):
        try:
            entries.append(ConversationEntry.from_dict(data))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed stored entry: %s", e)
    return entries


def decode_items(raw_items: Iterable[Any]) -> list[ConversationEntry]:
    """Decode a list range, preserving insertion order."""
    entries: list[ConversationEntry] = []
    for raw in raw_items:
        entries.extend(decode_item(raw))
    return entries
