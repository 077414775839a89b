"""Answer length budgeting (core domain)."""

from __future__ import annotations

MAX_MESSAGE_LENGTH = 800
PUNCTUATION_MARKS = (".", "!", "?", ";", ":", ",")


def trim_to_last_punctuation(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Fit ``text`` into ``max_length`` characters without cutting mid-sentence.

    The cut happens right after the last punctuation mark inside the allowed
    prefix. A mark in the very first position does not count, and with no
    usable mark the prefix is hard-cut at ``max_length``.
    """

    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_index = max(truncated.rfind(mark) for mark in PUNCTUATION_MARKS)
    if last_index > 0:
        return truncated[: last_index + 1]
    return truncated
