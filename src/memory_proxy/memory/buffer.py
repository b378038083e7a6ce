"""
Short-term buffer (STB): the bounded window of recent turns sent verbatim
to the completion provider.
"""

import logging

from .entries import ConversationEntry, decode_item, decode_items, encode_entry
from .store import SessionKey, SessionStore

logger = logging.getLogger(__name__)


async def ensure_list_key(store: SessionStore, key: str) -> None:
    """Drop a legacy key that holds a non-list value before list writes."""
    kind = await store.type(key)
    if kind not in ("list", "none"):
        logger.warning("Deleting legacy %s value at list key %s", kind, key)
        await store.delete(key)


class ShortTermBuffer:
    """Append-only bounded list of the most recent entries for a session."""

    def __init__(self, store: SessionStore, max_items: int, ttl_seconds: int = 0):
        if max_items < 1:
            raise ValueError("max_items must be >= 1")
        self._store = store
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds

    async def append(self, session: SessionKey, entries: list[ConversationEntry]) -> int:
        """Write each entry as its own list item and refresh the TTL."""
        if not entries:
            return await self.length(session)
        await ensure_list_key(self._store, session.stb)
        length = await self._store.rpush(
            session.stb, *(encode_entry(e) for e in entries)
        )
        if self.ttl_seconds > 0:
            await self._store.expire(session.stb, self.ttl_seconds)
        return length

    async def read_all(self, session: SessionKey) -> list[ConversationEntry]:
        """All buffered entries, oldest first."""
        return decode_items(await self._store.lrange(session.stb, 0, -1))

    async def read_oldest(self, session: SessionKey, count: int) -> list[ConversationEntry]:
        if count <= 0:
            return []
        return decode_items(await self._store.lrange(session.stb, 0, count - 1))

    async def length(self, session: SessionKey) -> int:
        return await self._store.llen(session.stb)

    async def trim_to_capacity(self, session: SessionKey, max_items: int | None = None) -> None:
        """Keep only the newest ``max_items`` list items; below 1 empties the buffer."""
        keep = max_items if max_items is not None else self.max_items
        if keep < 1:
            await self._store.delete(session.stb)
            return
        await self._store.ltrim(session.stb, -keep, -1)

    async def normalize(self, session: SessionKey) -> bool:
        """
        Rewrite legacy multi-entry items as one item per entry.

        Capacity is counted in list items, so this runs before the buffer is
        measured. Undecodable items are dropped. Returns True on a rewrite.
        """
        raw_items = await self._store.lrange(session.stb, 0, -1)
        decoded = [decode_item(raw) for raw in raw_items]
        if all(len(entries) == 1 for entries in decoded):
            return False

        entries = [entry for group in decoded for entry in group]
        await self._store.delete(session.stb)
        if entries:
            await self._store.rpush(session.stb, *(encode_entry(e) for e in entries))
            if self.ttl_seconds > 0:
                await self._store.expire(session.stb, self.ttl_seconds)
        logger.info(
            "Normalized STB for %s:%s (%d items -> %d entries)",
            session.core_id, session.session_id, len(raw_items), len(entries),
        )
        return True
