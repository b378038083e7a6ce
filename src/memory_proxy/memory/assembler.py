"""
Context assembly under a token budget.

Builds the system prompt and message list for one completion call from the
three memory tiers, then degrades the payload until

    token_count(system, messages) + max_output_tokens <= token_budget

Degradation ladder (fixed order, each step only removes content):
  1. Full candidate: base prompt + locale + summary + recall, STB + new entry
  2. Drop STB entries one at a time, oldest first
  3. Drop the recall block
  4. Drop the summary block

The new user entry and the base prompt are never removed. If the budget is
still exceeded after step 4, the minimal payload is returned as-is and the
completion provider decides.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from .buffer import ShortTermBuffer
from .condenser import sanitize
from .config import MemoryConfig
from .entries import ASSISTANT, DEFAULT_LOCALE, ConversationEntry
from .retriever import MemoryRetriever
from .store import SessionKey
from .summarizer import ConversationSummarizer
from .token_budget import TokenCounter, fits_budget

logger = logging.getLogger(__name__)

IDENTITY_PROMPT = "You are a helpful assistant with long-term conversation memory."
BASE_RULES = (
    "Use Memory Summary (if present) and recent history as ground truth. "
    "Do not re-ask facts unless conflicting. Be concise."
)


def build_base_prompt(core_system_prompt: str = "") -> str:
    """Identity, ground-truth rules and the operator prompt."""
    return "\n".join(
        part for part in (IDENTITY_PROMPT, BASE_RULES, sanitize(core_system_prompt)) if part
    )


def locale_line(locale: Optional[str]) -> str:
    return f"Reply in the user's language (locale hint: {locale or DEFAULT_LOCALE})."


def summary_block(summary: Optional[str]) -> str:
    if not summary:
        return ""
    return f"[Memory Summary]\n{summary}"


def recall_block(recalled: list[ConversationEntry]) -> str:
    if not recalled:
        return ""
    lines = [f"- {entry.role}: {entry.content}" for entry in recalled]
    return "[Relevant Earlier Conversation]\n" + "\n".join(lines)


def to_message(entry: ConversationEntry) -> BaseMessage:
    if entry.role == ASSISTANT:
        return AIMessage(content=entry.content)
    return HumanMessage(content=entry.content)


@dataclass
class AssembledContext:
    """The payload for one completion call plus how it was obtained."""

    system: str
    messages: list[BaseMessage]
    token_count: int
    within_budget: bool
    history_count: int
    recall_count: int
    has_summary: bool
    trimmed_entries: int = 0
    dropped_recall: bool = False
    dropped_summary: bool = False
    steps: int = 0


class ContextAssembler:
    """
    Composes the completion payload from STB, summary and recall output.

    Usage:
        assembler = ContextAssembler(config, buffer, counter, summarizer, retriever)
        context = await assembler.assemble(session, locale, user_entry)
    """

    def __init__(
        self,
        config: MemoryConfig,
        buffer: ShortTermBuffer,
        token_counter: TokenCounter,
        summarizer: Optional[ConversationSummarizer] = None,
        retriever: Optional[MemoryRetriever] = None,
    ):
        self.config = config
        self._buffer = buffer
        self._token_counter = token_counter
        self._summarizer = summarizer
        self._retriever = retriever
        self.base_prompt = build_base_prompt(config.core_system_prompt)

    async def assemble(
        self,
        session: SessionKey,
        locale: Optional[str],
        user_entry: ConversationEntry,
        model: Optional[str] = None,
    ) -> AssembledContext:
        history = await self._buffer.read_all(session)
        summary = None
        if self._summarizer and self.config.enable_summary:
            summary = await self._summarizer.load_summary(session)
        recalled = []
        if self._retriever:
            recalled = await self._retriever.recall(session, user_entry.content)
        return await self.fit(
            locale, history, summary, recalled, user_entry, model or self.config.model
        )

    def compose_system(
        self, locale: Optional[str], summary: str, recall: str
    ) -> str:
        return "\n\n".join(
            part for part in (self.base_prompt, locale_line(locale), summary, recall) if part
        )

    async def fit(
        self,
        locale: Optional[str],
        history: list[ConversationEntry],
        summary: Optional[str],
        recalled: list[ConversationEntry],
        user_entry: ConversationEntry,
        model: str,
    ) -> AssembledContext:
        """Run the degradation ladder over an already-loaded candidate."""
        budget = self.config.get_token_budget(model)
        reserve = self.config.max_output_tokens
        summary_text = summary_block(summary)
        recall_text = recall_block(recalled)
        history_messages = [to_message(entry) for entry in history]
        new_message = to_message(user_entry)

        context = AssembledContext(
            system="",
            messages=[],
            token_count=0,
            within_budget=False,
            history_count=len(history),
            recall_count=len(recalled),
            has_summary=bool(summary_text),
        )

        async def measure() -> bool:
            context.system = self.compose_system(locale, summary_text, recall_text)
            context.messages = [*history_messages, new_message]
            context.token_count = await self._token_counter.count_tokens(
                context.system, context.messages, model
            )
            context.within_budget = fits_budget(context.token_count, reserve, budget)
            return context.within_budget

        if await measure():
            logger.debug(
                "Context fits budget (%d + %d / %d tokens)",
                context.token_count, reserve, budget,
            )
            return context

        while history_messages:
            history_messages.pop(0)
            context.trimmed_entries += 1
            context.steps += 1
            if await measure():
                break

        if not context.within_budget and recall_text:
            recall_text = ""
            context.dropped_recall = True
            context.steps += 1
            await measure()

        if not context.within_budget and summary_text:
            summary_text = ""
            context.dropped_summary = True
            context.steps += 1
            await measure()

        log = logger.info if context.within_budget else logger.warning
        log(
            "Degraded context to %d tokens (budget %d, reserve %d): trimmed=%d "
            "dropped_recall=%s dropped_summary=%s within_budget=%s",
            context.token_count, budget, reserve, context.trimmed_entries,
            context.dropped_recall, context.dropped_summary, context.within_budget,
        )
        return context
