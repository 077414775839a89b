"""Client factories and credential resolution for the Nomi bridge.

Credentials are resolved once per request or poll tick and passed into the
clients explicitly; nothing below the composition layer reads the environment.

Resolution rules:
- no caller identity (operator context, CLI): NOMI_API_KEY / LLM_API_KEY /
  LLM_MODEL from the environment, loaded via python-dotenv
- a caller identity: keys and model from the user_credentials table; when the
  user has no LLM key, the process-wide LLM_API_KEY is used instead. That key
  is shared by every user of this deployment.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Mapping, Optional, Protocol

from dotenv import load_dotenv

from adapters.answer_engine import OpenAIAnswerEngine
from adapters.nomi_client import NomiClient
from core.config import BridgeOptions, Credentials
from core.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


class CredentialSource(Protocol):
    def get_credentials(self, user_id: str) -> Optional[dict[str, Any]]:
        ...


class CredentialResolver:
    """Resolve per-caller credentials with the shared LLM key as fallback."""

    def __init__(
        self,
        source: CredentialSource,
        default_model: str,
        environ: Optional[Mapping[str, str]] = None,
        on_resolved: Optional[Callable[[Credentials], None]] = None,
    ) -> None:
        if environ is None:
            load_dotenv()
            environ = os.environ
        self._source = source
        self._default_model = default_model
        self._environ = environ
        self._on_resolved = on_resolved

    def resolve(self, user_id: Optional[str] = None) -> Credentials:
        shared_llm_key = self._environ.get("LLM_API_KEY", "")
        llm_key_is_shared = False

        if user_id is None:
            nomi_key = self._environ.get("NOMI_API_KEY", "")
            llm_key = shared_llm_key
            model = self._environ.get("LLM_MODEL") or self._default_model
        else:
            stored = self._source.get_credentials(user_id) or {}
            nomi_key = stored.get("nomi_api_key") or ""
            llm_key = stored.get("llm_api_key") or ""
            model = stored.get("llm_model") or self._default_model
            if not llm_key and shared_llm_key:
                llm_key = shared_llm_key
                llm_key_is_shared = True
                LOGGER.info("Using the shared LLM key for user %s", user_id)

        # Fail fast so a request never runs half-configured.
        owner = f" for user {user_id}" if user_id else ""
        if not nomi_key:
            raise ConfigurationError(f"Nomi API key is not configured{owner}")
        if not llm_key:
            raise ConfigurationError(f"LLM API key is not configured{owner}")

        credentials = Credentials(
            nomi_api_key=nomi_key,
            llm_api_key=llm_key,
            llm_model=model,
            llm_key_is_shared=llm_key_is_shared,
            user_id=user_id,
        )
        if self._on_resolved is not None:
            self._on_resolved(credentials)
        return credentials


def build_chat_client(credentials: Credentials, options: BridgeOptions) -> NomiClient:
    LOGGER.debug("Initializing Nomi client")
    return NomiClient(
        api_key=credentials.nomi_api_key,
        base_url=options.nomi_base_url,
        timeout=options.http_timeout_seconds,
        room_note=options.room.note,
    )


def build_answer_engine(credentials: Credentials, options: BridgeOptions) -> OpenAIAnswerEngine:
    LOGGER.debug("Initializing answer engine (%s)", credentials.llm_model)
    return OpenAIAnswerEngine(
        api_key=credentials.llm_api_key,
        model=credentials.llm_model,
        base_url=options.llm_base_url,
        timeout=options.http_timeout_seconds,
    )
