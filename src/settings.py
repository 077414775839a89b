"""Static configuration for the Nomi bridge.

All non-secret settings (endpoints, polling, room, server, logging) live in a
single JSON file for quick edits without touching Python. API keys come from
the environment (see client.py) or the per-user credential table.
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.getenv("NOMI_BRIDGE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database (message log, selections, credentials).
DB_PATH = _resolve_path(_CONFIG.get("db_path", "nomi_bridge.db"))

# Upstream endpoints. Every upstream call is bounded by HTTP_TIMEOUT_SECONDS.
_nomi = _CONFIG.get("nomi", {})
NOMI_BASE_URL = _nomi.get("base_url", "https://api.nomi.ai/v1")

_llm = _CONFIG.get("llm", {})
LLM_BASE_URL = _llm.get("base_url", "https://api.groq.com/openai/v1")
LLM_DEFAULT_MODEL = _llm.get("default_model", "llama-3.1-8b-instant")

HTTP_TIMEOUT_SECONDS = float(_CONFIG.get("http_timeout_seconds", 20))

# Poll pipeline controls.
# - POLL_MODE: "history" (read chat history) or "request" (ask for a reply)
# - POLL_FALLBACK_PROMPT: reply to non-questions; "" records them silently
# - POLL_ALL_WHEN_UNSELECTED: poll every character when no selection is stored
_poll = _CONFIG.get("poll", {})
POLL_INTERVAL_SECONDS = float(_poll.get("interval_seconds", 60))
POLL_MODE = _poll.get("mode", "history")
POLL_MAX_ANSWER_CHARS = int(_poll.get("max_answer_chars", 800))
POLL_FALLBACK_PROMPT = _poll.get("fallback_prompt", "Ask me a question")
POLL_ALL_WHEN_UNSELECTED = bool(_poll.get("poll_all_when_unselected", True))

# The logical room the bridge manages.
_room = _CONFIG.get("room", {})
ROOM_NAME = _room.get("name", "Inquisitorium")
ROOM_BACKCHANNELING = bool(_room.get("backchanneling_enabled", True))
ROOM_NOTE = _room.get("note", "Inquisitorium room for automated Q&A")

# HTTP server and the optional in-process scheduler it starts.
_server = _CONFIG.get("server", {})
SERVER_HOST = _server.get("host", "127.0.0.1")
SERVER_PORT = int(_server.get("port", 8000))
SCHEDULER_ENABLED = bool(_server.get("scheduler_enabled", False))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
