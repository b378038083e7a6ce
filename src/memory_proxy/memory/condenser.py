"""
Text condensing for prompts and stored values.

Flattens LangChain message content to plain text, strips noise from
operator-supplied prompt text and normalizes incoming user messages.
"""

import re

MAX_SANITIZED_CHARS = 8000

_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_HORIZONTAL_WS = re.compile(r"[^\S\r\n]+")
_SPACE_RUNS = re.compile(r" {2,}")


def content_text(content) -> str:
    """Plain text of a message content value (string or block list)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if block.get("type", "text") == "text" and block.get("text"):
                    parts.append(block["text"])
        return "".join(parts)
    return str(content) if content else ""


def sanitize(text: str, max_chars: int = MAX_SANITIZED_CHARS) -> str:
    """
    Strip fenced code blocks and NUL characters, collapse horizontal
    whitespace, trim, and cap the length.
    """
    text = _CODE_FENCE.sub("", str(text or ""))
    text = text.replace("\u0000", "")
    text = _HORIZONTAL_WS.sub(" ", text)
    return text.strip()[:max_chars]


def clean_user_message(text: str, max_chars: int = 0) -> str:
    """Normalize an incoming user message; ``max_chars`` <= 0 means no cap."""
    text = str(text or "").replace("\r", "").replace("\t", " ")
    text = _SPACE_RUNS.sub(" ", text).strip()
    if max_chars > 0 and len(text) > max_chars:
        text = text[:max_chars]
    return text
