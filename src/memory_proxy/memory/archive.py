"""
Long-term memory (LTM) archive.

Receives entries evicted from the short-term buffer. The archive only grows;
entries leave it through TTL expiry or a full session purge.

Rollover:
  legacy STB items split into one item per entry
  → STB over capacity → oldest ``excess`` items read → embedded (optional)
  → appended to LTM → STB trimmed to capacity

Every entry present before rollover is afterwards either still in the STB
or in the LTM.
"""

import logging
from typing import Optional

from ..errors import EmbeddingUnavailableError
from .embeddings import EmbeddingProvider
from .buffer import ShortTermBuffer, ensure_list_key
from .entries import ConversationEntry, decode_items, encode_entry
from .store import SessionKey, SessionStore

logger = logging.getLogger(__name__)


class LongTermArchive:
    """Append-only, TTL-bounded list of archived entries for a session."""

    def __init__(
        self,
        store: SessionStore,
        embedder: Optional[EmbeddingProvider] = None,
        ttl_seconds: int = 0,
    ):
        self._store = store
        self._embedder = embedder
        self.ttl_seconds = ttl_seconds

    async def append(self, session: SessionKey, entries: list[ConversationEntry]) -> int:
        if not entries:
            return await self.length(session)
        await ensure_list_key(self._store, session.ltm)
        length = await self._store.rpush(
            session.ltm, *(encode_entry(e) for e in entries)
        )
        if self.ttl_seconds > 0:
            await self._store.expire(session.ltm, self.ttl_seconds)
        return length

    async def read_recent(self, session: SessionKey, limit: int) -> list[ConversationEntry]:
        """The newest ``limit`` archived entries, oldest first."""
        if limit <= 0:
            return []
        return decode_items(await self._store.lrange(session.ltm, -limit, -1))

    async def length(self, session: SessionKey) -> int:
        return await self._store.llen(session.ltm)

    async def _enrich(self, entry: ConversationEntry) -> ConversationEntry:
        """Attach an embedding; on failure the entry is archived without one."""
        if self._embedder is None or entry.embedding is not None:
            return entry
        try:
            vector = await self._embedder.embed(entry.content)
        except EmbeddingUnavailableError as e:
            logger.warning("Archiving entry without embedding: %s", e)
            return entry
        return entry.with_embedding(vector) if vector else entry

    async def rollover(self, session: SessionKey, buffer: ShortTermBuffer) -> list[ConversationEntry]:
        """
        Move STB overflow into the archive.

        Returns the entries that were moved (with embeddings where available).
        """
        await buffer.normalize(session)
        length = await buffer.length(session)
        excess = length - buffer.max_items
        if excess <= 0:
            return []

        overflow = await buffer.read_oldest(session, excess)
        enriched = [await self._enrich(entry) for entry in overflow]
        await self.append(session, enriched)
        await buffer.trim_to_capacity(session)

        logger.info(
            "Rolled %d entries from STB into LTM for %s:%s",
            len(enriched), session.core_id, session.session_id,
        )
        return enriched
