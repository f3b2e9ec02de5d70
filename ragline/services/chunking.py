"""Text cleaning and word-window chunking service."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Estimated tokens per word is 1.3; kept as a 13/10 ratio so that
# conversions stay in integer arithmetic.
_TOKENS_PER_WORD_NUM = 13
_TOKENS_PER_WORD_DEN = 10

DEFAULT_MAX_TOKENS = 700
DEFAULT_OVERLAP_TOKENS = 120

# Lines that are only a page marker ("Page 12") or a bare footer number ("12")
_PAGE_LINE = re.compile(r"^\s*(?:page\s+\d+|\d+)\s*$", re.IGNORECASE)
# Lines that are only a chapter/section header ("Chapter 3", "Section 2.1")
_HEADER_LINE = re.compile(r"^\s*(?:chapter|section)\s+\d+(?:\.\d+)*\.?\s*$", re.IGNORECASE)
_BLANK_LINES = re.compile(r"\n\s*\n")


@dataclass
class TextChunk:
    """A chunk of text with its position index."""
    index: int
    content: str
    token_count: int


def clean_text(text: str) -> str:
    """Strip page/header lines, collapse whitespace, keep one blank line between paragraphs."""
    lines = [
        line
        for line in text.splitlines()
        if not _PAGE_LINE.match(line) and not _HEADER_LINE.match(line)
    ]
    paragraphs = _BLANK_LINES.split("\n".join(lines))
    collapsed = (" ".join(p.split()) for p in paragraphs)
    return "\n\n".join(p for p in collapsed if p).strip()


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` as ceil(words × 1.3)."""
    words = len(text.split())
    return -(-words * _TOKENS_PER_WORD_NUM // _TOKENS_PER_WORD_DEN)


def tokens_to_words(tokens: int) -> int:
    """Convert a token budget into a word budget, rounding down."""
    return tokens * _TOKENS_PER_WORD_DEN // _TOKENS_PER_WORD_NUM


def chunk_text(
    text: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> list[TextChunk]:
    """Split text into overlapping windows of whitespace-delimited words.

    Each window holds at most ``max_tokens / 1.3`` words. The next window
    starts ``overlap_tokens / 1.3`` words before the previous one ended, so
    adjacent chunks share exactly that many words. Iteration stops once a
    window reaches the end of the text.

    Args:
        text: Cleaned input text.
        max_tokens: Token budget per chunk.
        overlap_tokens: Tokens carried over from the end of one chunk into the next.

    Returns:
        List of TextChunk objects, indexed in emission order.

    Raises:
        ValueError: If the budgets leave no room for the window to advance.
    """
    max_words = tokens_to_words(max_tokens)
    overlap_words = tokens_to_words(overlap_tokens)
    if max_words < 1:
        raise ValueError(f"max_tokens={max_tokens} is smaller than one word")
    if overlap_words < 0 or overlap_words >= max_words:
        raise ValueError(
            f"overlap of {overlap_words} words must be smaller than the {max_words}-word window"
        )

    words = text.split()
    chunks: list[TextChunk] = []
    start = 0

    while start < len(words):
        end = min(start + max_words, len(words))
        content = " ".join(words[start:end]).strip()
        if content:
            chunks.append(TextChunk(
                index=len(chunks),
                content=content,
                token_count=estimate_tokens(content),
            ))
        if end >= len(words):
            break
        start = end - overlap_words

    return chunks
