"""
Conversation summary compaction.

Keeps one durable text blob of distilled facts per session. Facts are pulled
heuristically from user-authored entries (first-person statements, possessive
phrases, "key: value" / "key is value" shapes) and merged line by line.

Merging is exact-line deduplication, not semantic matching. Re-stated facts
move to the end; when the blob exceeds its cap, whole lines are dropped from
the oldest end. Applying the same facts twice yields the same blob.
"""

import logging
import re
from typing import Optional

from .condenser import sanitize
from .entries import USER, ConversationEntry
from .store import SessionKey, SessionStore

logger = logging.getLogger(__name__)

MIN_FACT_CHARS = 6
MAX_FACT_CHARS = 160

_FRAGMENT = re.compile(r"[^.!?;\n]+[.!?;]?")
_FACT_PATTERNS = (
    # First-person statements
    re.compile(r"^(i|i'm|i am|i've|i have|i'd|we|we're|we are)\b", re.IGNORECASE),
    # Possessive phrases
    re.compile(r"\b(my|our|mine)\b", re.IGNORECASE),
    # key: value
    re.compile(r"^[\w][\w\s\-]{0,40}:\s*\S"),
    # key is value
    re.compile(r"^[\w][\w\s\-]{0,40}\s(is|are|=)\s+\S", re.IGNORECASE),
)


def extract_facts(entries: list[ConversationEntry], max_facts: int) -> list[str]:
    """Short self-referential fragments from user entries, in order, deduplicated."""
    facts: list[str] = []
    for entry in entries:
        if entry.role != USER:
            continue
        for match in _FRAGMENT.finditer(entry.content):
            fragment = match.group().strip()
            if fragment.endswith("?"):
                continue
            fact = " ".join(fragment.rstrip(".!;").split())
            if not MIN_FACT_CHARS <= len(fact) <= MAX_FACT_CHARS:
                continue
            if fact in facts:
                continue
            if any(p.search(fact) for p in _FACT_PATTERNS):
                facts.append(fact)
                if len(facts) >= max_facts:
                    return facts
    return facts


def merge_summary(existing: str, facts: list[str], max_chars: int) -> str:
    """
    Merge ``facts`` into ``existing`` as deduplicated lines.

    Lines already present that are re-stated move to the end. The result is
    cut to the newest lines that fit in ``max_chars``.
    """
    new_lines: list[str] = []
    for fact in facts:
        line = fact.strip()
        if line and line not in new_lines:
            new_lines.append(line)

    lines: list[str] = []
    for line in (existing or "").splitlines():
        line = line.strip()
        if line and line not in new_lines and line not in lines:
            lines.append(line)
    lines.extend(new_lines)

    kept: list[str] = []
    size = 0
    for line in reversed(lines):
        added = len(line) + (1 if kept else 0)
        if size + added > max_chars:
            break
        kept.append(line)
        size += added
    kept.reverse()
    return "\n".join(kept)


class ConversationSummarizer:
    """Maintains the per-session summary blob."""

    def __init__(
        self,
        store: SessionStore,
        max_chars: int = 1200,
        max_facts: int = 8,
        ttl_seconds: int = 0,
    ):
        self._store = store
        self.max_chars = max_chars
        self.max_facts = max_facts
        self.ttl_seconds = ttl_seconds

    async def load_summary(self, session: SessionKey) -> Optional[str]:
        summary = await self._store.get(session.summary)
        return summary or None

    async def save_summary(self, session: SessionKey, summary: str) -> None:
        await self._store.set(session.summary, summary)
        if self.ttl_seconds > 0:
            await self._store.expire(session.summary, self.ttl_seconds)

    async def refresh(self, session: SessionKey, recent_entries: list[ConversationEntry]) -> bool:
        """
        Fold facts from ``recent_entries`` into the stored summary.

        Writes only when the merged text differs from the stored value.
        Returns True when a write happened.
        """
        facts = extract_facts(recent_entries, self.max_facts)
        if not facts:
            return False

        existing = await self.load_summary(session) or ""
        merged = sanitize(merge_summary(existing, facts, self.max_chars))
        if merged == existing:
            logger.debug("Summary unchanged for %s:%s", session.core_id, session.session_id)
            return False

        await self.save_summary(session, merged)
        logger.info(
            "Summary updated for %s:%s (%d facts, %d chars)",
            session.core_id, session.session_id, len(facts), len(merged),
        )
        return True
