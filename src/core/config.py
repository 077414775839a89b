"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

POLL_MODE_HISTORY = "history"
POLL_MODE_REQUEST = "request"


@dataclass(frozen=True)
class PollConfig:
    """Settings for the poll pipeline."""

    mode: str = POLL_MODE_HISTORY
    max_answer_chars: int = 800
    # Sent back for non-questions. Empty means record without replying.
    fallback_prompt: str = "Ask me a question"
    poll_all_when_unselected: bool = True

    def __post_init__(self) -> None:
        if self.mode not in {POLL_MODE_HISTORY, POLL_MODE_REQUEST}:
            raise ValueError(f"Unsupported poll mode: {self.mode}")


@dataclass(frozen=True)
class RoomConfig:
    """Defaults for the logical room the bridge manages."""

    name: str = "Inquisitorium"
    backchanneling_enabled: bool = True
    note: str = "Inquisitorium room for automated Q&A"


@dataclass(frozen=True)
class BridgeOptions:
    """Everything needed to wire a bridge, apart from credentials."""

    nomi_base_url: str = "https://api.nomi.ai/v1"
    llm_base_url: str = "https://api.groq.com/openai/v1"
    http_timeout_seconds: float = 20.0
    poll: PollConfig = field(default_factory=PollConfig)
    room: RoomConfig = field(default_factory=RoomConfig)


@dataclass(frozen=True)
class Credentials:
    """Credentials resolved once per request or poll tick.

    ``llm_key_is_shared`` marks the system-wide LLM key fallback so callers can
    log which key was used without logging the key itself.
    """

    nomi_api_key: str
    llm_api_key: str
    llm_model: str
    llm_key_is_shared: bool = False
    user_id: Optional[str] = None
