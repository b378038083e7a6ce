"""
Recall over the long-term archive.

Scans a sliding window of the newest ``ltm_scan_limit`` archived entries,
scores each against the query, and returns a deduplicated top-K.

Scoring strategy (chosen at configuration time):
  - KEYWORD: normalized token overlap, |A ∩ B| / sqrt(|A| * |B|)
  - EMBEDDING: cosine similarity between the query vector and the stored
    vector; candidates without a stored vector fall back to keyword overlap,
    and if the query cannot be embedded the whole pass uses keyword overlap
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

from ..errors import EmbeddingUnavailableError
from .archive import LongTermArchive
from .config import RecallStrategy
from .embeddings import EmbeddingProvider, cosine_similarity
from .entries import ConversationEntry
from .store import SessionKey

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")


def tokenize(text: str) -> set[str]:
    """Lower-cased word tokens of two or more characters."""
    return {t for t in _WORD.findall(text.lower()) if len(t) >= 2}


def keyword_score(query_tokens: set[str], text: str) -> float:
    candidate = tokenize(text)
    if not query_tokens or not candidate:
        return 0.0
    shared = len(query_tokens & candidate)
    return shared / math.sqrt(len(query_tokens) * len(candidate))


@dataclass(frozen=True)
class RecallHit:
    entry: ConversationEntry
    score: float


class MemoryRetriever:
    """Scores and ranks archived entries for the current query."""

    def __init__(
        self,
        archive: LongTermArchive,
        strategy: RecallStrategy = RecallStrategy.KEYWORD,
        embedder: Optional[EmbeddingProvider] = None,
        scan_limit: int = 200,
        top_k: int = 5,
    ):
        if strategy is RecallStrategy.EMBEDDING and embedder is None:
            raise ValueError("Embedding recall requires an embedding provider")
        self._archive = archive
        self.strategy = strategy
        self._embedder = embedder
        self.scan_limit = scan_limit
        self.top_k = top_k

    async def _embed_query(self, query: str) -> Optional[list[float]]:
        if self.strategy is not RecallStrategy.EMBEDDING:
            return None
        try:
            return await self._embedder.embed(query)
        except EmbeddingUnavailableError as e:
            logger.warning("Query embedding failed, using keyword scoring: %s", e)
            return None

    def score(
        self,
        entry: ConversationEntry,
        query_tokens: set[str],
        query_vector: Optional[list[float]],
    ) -> float:
        if query_vector and entry.embedding:
            return cosine_similarity(query_vector, entry.embedding)
        return keyword_score(query_tokens, entry.content)

    def rank(
        self,
        candidates: list[ConversationEntry],
        query: str,
        query_vector: Optional[list[float]] = None,
    ) -> list[RecallHit]:
        """
        Rank candidates by descending score and keep the top-K distinct hits.

        Distinctness is by (role, first 120 chars of content); the
        highest-scoring occurrence wins. Zero-score candidates are dropped.
        """
        query_tokens = tokenize(query)
        scored = [
            RecallHit(entry, self.score(entry, query_tokens, query_vector))
            for entry in candidates
        ]
        # Stable sort: ties keep archive order
        scored.sort(key=lambda hit: hit.score, reverse=True)

        hits: list[RecallHit] = []
        seen: set[tuple[str, str]] = set()
        for hit in scored:
            if len(hits) >= self.top_k or hit.score <= 0:
                break
            if hit.entry.dedup_key in seen:
                continue
            seen.add(hit.entry.dedup_key)
            hits.append(hit)
        return hits

    async def search(self, session: SessionKey, query: str) -> list[RecallHit]:
        if self.top_k <= 0 or not query.strip():
            return []
        candidates = await self._archive.read_recent(session, self.scan_limit)
        if not candidates:
            return []
        query_vector = await self._embed_query(query)
        return self.rank(candidates, query, query_vector)

    async def recall(self, session: SessionKey, query: str) -> list[ConversationEntry]:
        """The most relevant archived entries for ``query`` (at most top-K)."""
        hits = await self.search(session, query)
        logger.debug(
            "Recalled %d entries for %s:%s", len(hits), session.core_id, session.session_id
        )
        return [hit.entry for hit in hits]
