"""Message classification rules (core domain)."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Single-asterisk spans only; ``**bold**`` markup is left alone.
_MONOLOGUE_RE = re.compile(r"(?<!\*)\*(?!\*)[^*]+?(?<!\*)\*(?!\*)")
_RUNS_OF_SPACES_RE = re.compile(r"[ \t]{2,}")


@dataclass(frozen=True)
class Classification:
    stripped_text: str
    is_question: bool


def strip_inner_monologue(text: str) -> str:
    """Remove ``*narration*`` spans and trim the result."""

    stripped = _MONOLOGUE_RE.sub(" ", text)
    return _RUNS_OF_SPACES_RE.sub(" ", stripped).strip()


def classify(text: str) -> Classification:
    """Classify a character message.

    A message is a question iff the text left after removing inner monologue
    ends with ``?`` once surrounding whitespace is trimmed.
    """

    stripped = strip_inner_monologue(text)
    return Classification(stripped_text=stripped, is_question=stripped.endswith("?"))


def is_question(text: str) -> bool:
    return classify(text).is_question
