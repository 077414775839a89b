"""Core poll pipeline.

This module is integration-agnostic. It only relies on ports for the chat API,
the LLM, and storage. Each poll pass walks the tracked character/room pairs
strictly one after another:

1) Fetch recent messages (or request a reply in request mode)
2) Drop user messages and anything already recorded under the dedup key
3) Strip inner monologue and classify question vs statement
4) Answer (LLM + truncation) or send the fixed prompt
5) Record the outcome; the insert is what marks a message as handled

Characters are not processed in parallel to stay under upstream rate limits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from core.classifier import classify
from core.config import POLL_MODE_REQUEST, PollConfig
from core.errors import UpstreamError
from core.membership import RoomMembershipManager
from core.models import (
    MessageKind,
    MessageOrigin,
    PollReport,
    PollSelection,
    ProcessedMessageRecord,
    RemoteMessage,
)
from core.ports import AnswerEnginePort, ChatClientPort, MessageStorePort, SelectionStorePort
from core.truncation import trim_to_last_punctuation

LOGGER = logging.getLogger(__name__)


def _error_entry(selection: PollSelection, exc: Exception) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "nomiUuid": selection.character_id,
        "nomiName": selection.character_name,
        "roomId": selection.room_id,
        "error": str(exc),
    }
    if isinstance(exc, UpstreamError) and exc.status_code is not None:
        entry["upstreamStatus"] = exc.status_code
    return entry


class PollOrchestrator:
    """Orchestrates fetch, dedup, answering, replying, and persistence."""

    def __init__(
        self,
        chat: ChatClientPort,
        engine: AnswerEnginePort,
        store: MessageStorePort,
        selections: SelectionStorePort,
        config: PollConfig,
        rooms: Optional[RoomMembershipManager] = None,
    ) -> None:
        self._chat = chat
        self._engine = engine
        self._store = store
        self._selections = selections
        self._config = config
        self._rooms = rooms

    async def run_pass(self) -> PollReport:
        """Run one poll tick over every tracked pair.

        A failing pair is logged and reported, never fatal for the pass.
        """

        report = PollReport()
        try:
            selections = await self._tracked_selections()
        except UpstreamError as exc:
            LOGGER.error("Could not list characters to poll: %s", exc)
            report.success = False
            report.errors.append({"error": str(exc), "upstreamStatus": exc.status_code})
            report.finished_at = datetime.now(timezone.utc)
            return report

        for selection in selections:
            report.total_characters_checked += 1
            LOGGER.info(
                "Polling %s in %s",
                selection.character_name or selection.character_id,
                selection.room_name or selection.room_id or "default",
            )
            try:
                await self.poll_selection(selection, report)
            except UpstreamError as exc:
                LOGGER.error("Polling %s failed: %s", selection.character_id, exc)
                report.errors.append(_error_entry(selection, exc))
            except Exception as exc:
                LOGGER.exception("Unexpected error while polling %s", selection.character_id)
                report.errors.append(_error_entry(selection, exc))

        report.finished_at = datetime.now(timezone.utc)
        LOGGER.info(
            "Poll pass complete: characters=%s, messages=%s, processed=%s, errors=%s",
            report.total_characters_checked,
            report.messages_found,
            report.messages_processed,
            len(report.errors),
        )
        return report

    async def poll_selection(self, selection: PollSelection, report: PollReport) -> None:
        """Fetch and handle messages for one pair, appending records to ``report``."""

        messages = await self._fetch(selection)
        if (
            not messages
            and selection.room_id
            and self._rooms is not None
            and self._config.mode != POLL_MODE_REQUEST
        ):
            # An empty room history may mean the room was recreated under a new id.
            refreshed = await self._rooms.refresh_selection(selection)
            if refreshed is not None:
                selection = refreshed
                messages = await self._fetch(selection)
        report.messages_found += len(messages)
        for message in messages:
            record = await self.handle_message(selection, message)
            if record is not None:
                report.processed_records.append(record)

    async def process_message(
        self,
        character_id: str,
        text: str,
        character_name: str = "",
        room_id: Optional[str] = None,
    ) -> Optional[ProcessedMessageRecord]:
        """Handle a single pushed message, letting every error propagate."""

        selection = PollSelection(
            character_id=character_id,
            room_id=room_id,
            character_name=character_name,
        )
        message = RemoteMessage(id=None, text=text, origin=MessageOrigin.CHARACTER)
        return await self.handle_message(selection, message)

    async def handle_message(
        self, selection: PollSelection, message: RemoteMessage
    ) -> Optional[ProcessedMessageRecord]:
        """Process one remote message; returns the new record or None if skipped."""

        if message.origin is MessageOrigin.USER:
            return None
        if not message.text or not message.text.strip():
            return None

        if message.sender_id and message.sender_id != selection.character_id:
            # Another member's line in a room-wide history; their own selection owns it.
            return None
        if self._already_processed(selection, message):
            LOGGER.debug(
                "Message already processed, skipping: %r", message.text[:50]
            )
            return None

        classification = classify(message.text)
        if classification.is_question:
            question = classification.stripped_text
            LOGGER.info("Question from %s: %s", selection.character_id, question)
            raw_answer = await self._engine.answer(question)
            answer = trim_to_last_punctuation(raw_answer, self._config.max_answer_chars)
            if len(answer) < len(raw_answer):
                LOGGER.info(
                    "Answer trimmed from %s to %s characters", len(raw_answer), len(answer)
                )
            await self._chat.send_message(selection.character_id, selection.room_id, answer)
            record = self._record(
                selection,
                message,
                MessageKind.QUESTION_ANSWERED,
                extracted_question=question,
                answer=answer,
            )
        elif classification.stripped_text and self._config.fallback_prompt:
            prompt = self._config.fallback_prompt
            await self._chat.send_message(selection.character_id, selection.room_id, prompt)
            record = self._record(selection, message, MessageKind.REGULAR, answer=prompt)
        else:
            # Monologue-only text, or replies to statements are switched off.
            record = self._record(selection, message, MessageKind.PASSTHROUGH)

        return self._persist(record)

    def _already_processed(self, selection: PollSelection, message: RemoteMessage) -> bool:
        # Dedup key is the raw text, the only identity every fetch path exposes.
        # Room-wide lines with no named speaker are keyed by room so that
        # several selections in one room reply at most once.
        if message.room_wide and not message.sender_id and selection.room_id:
            return self._store.exists_by_room_and_text(selection.room_id, message.text)
        return self._store.exists_by_character_and_text(selection.character_id, message.text)

    async def _tracked_selections(self) -> list[PollSelection]:
        selections = self._selections.list_selections()
        if selections or not self._config.poll_all_when_unselected:
            return selections

        characters = await self._chat.list_characters()
        LOGGER.info("No selections stored; polling all %s characters", len(characters))
        return [
            PollSelection(character_id=character.id, character_name=character.name)
            for character in characters
        ]

    async def _fetch(self, selection: PollSelection) -> list[RemoteMessage]:
        if self._config.mode == POLL_MODE_REQUEST and selection.room_id:
            outcome = await self._chat.request_reply(selection.room_id, selection.character_id)
            if outcome.pending:
                LOGGER.info("%s is not ready to reply yet", selection.character_id)
                return []
            if outcome.message is None:
                LOGGER.info("No reply message received from %s", selection.character_id)
                return []
            return [outcome.message]

        return await self._chat.fetch_messages(
            room_id=selection.room_id, character_id=selection.character_id
        )

    def _record(
        self,
        selection: PollSelection,
        message: RemoteMessage,
        kind: MessageKind,
        extracted_question: Optional[str] = None,
        answer: Optional[str] = None,
    ) -> ProcessedMessageRecord:
        return ProcessedMessageRecord(
            character_id=selection.character_id,
            character_name=selection.character_name,
            original_text=message.text,
            kind=kind,
            extracted_question=extracted_question,
            answer=answer,
            room_id=selection.room_id,
        )

    def _persist(self, record: ProcessedMessageRecord) -> ProcessedMessageRecord:
        try:
            stored = self._store.insert(record)
        except Exception:
            # The reply (if any) already went out; the next tick will see the
            # message as new and may reply once more.
            LOGGER.error(
                "Record not stored for %s (%s); the next tick may reply again",
                record.character_id,
                record.kind.value,
            )
            raise
        LOGGER.info("Recorded %s message from %s", record.kind.value, record.character_id)
        return stored
